from __future__ import annotations

import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import typer

from .config import GarmentConfig, load_config
from .controller import (
    CommandError,
    GarmentConnectionError,
    GarmentController,
    GarmentError,
    discover_garments,
)
from .frames import iterate_hex_stream
from .processing import AnalogPipeline, FrameCallback, FrameRecorder, SensorFrame, filter_metadata

logger = logging.getLogger(__name__)

STAT_KEYS = ("processed", "notifications", "snapshots", "deltas", "repeats", "short_payloads", "releases")


PRESETS: Dict[str, Dict[str, Any]] = {
    "responsive": {
        "filter": {"hold_frames": 4, "decay_rate": 0.1, "idle_release_ms": 30.0},
    },
    "default": {
        "filter": {"hold_frames": 10, "decay_rate": 0.025, "idle_release_ms": 50.0},
    },
    "sticky": {
        "filter": {"hold_frames": 30, "decay_rate": 0.01, "idle_release_ms": 150.0},
    },
}


def preset_overrides(preset: str) -> list[str]:
    data = PRESETS[preset]["filter"]
    overrides = [
        f"filter.hold_frames={data['hold_frames']}",
        f"filter.decay_rate={data['decay_rate']}",
        f"filter.idle_release_ms={data['idle_release_ms']}",
    ]
    return overrides


async def _wait_any(*events: asyncio.Event, timeout: Optional[float] = None) -> None:
    tasks = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        await asyncio.wait(tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()


class GarmentHost:
    """Host-side orchestrator: keeps a garment connected and records its frames."""

    def __init__(
        self,
        config: GarmentConfig,
        controller_factory: Optional[Callable[[GarmentConfig], GarmentController]] = None,
    ):
        self.config = config
        self._controller_factory = controller_factory or GarmentController
        self.recorder = FrameRecorder(config.output_csv) if config.output_csv else None
        if self.recorder:
            self.recorder.set_metadata(filter_metadata(config.filter))
        self._callbacks: List[FrameCallback] = []
        self._totals: Dict[str, int] = {key: 0 for key in STAT_KEYS}
        self._reconnects = 0
        self._connected_once = False
        self.last_exception: Optional[Exception] = None

    def register_callback(self, callback: FrameCallback) -> None:
        self._callbacks.append(callback)

    def stats(self, pipeline: Optional[AnalogPipeline] = None) -> Dict[str, int]:
        stats = dict(self._totals)
        if pipeline is not None:
            for key, value in pipeline.stats().items():
                stats[key] = stats.get(key, 0) + value
        stats["reconnects"] = self._reconnects
        return stats

    def _on_frame(self, frame: SensorFrame) -> None:
        if self.recorder:
            try:
                self.recorder.append(frame)
            except Exception:
                logger.exception("Failed to record frame")
        for callback in self._callbacks:
            try:
                callback(frame)
            except Exception:
                logger.exception("Frame callback failed")

    def _accumulate(self, pipeline: Optional[AnalogPipeline]) -> None:
        if pipeline is None:
            return
        for key, value in pipeline.stats().items():
            self._totals[key] = self._totals.get(key, 0) + value

    def _log_stats(self, prefix: str, stats: Dict[str, int]) -> None:
        logger.info(
            "%sprocessed=%d notifications=%d deltas=%d repeats=%d short_payloads=%d releases=%d reconnects=%d",
            prefix,
            stats.get("processed", 0),
            stats.get("notifications", 0),
            stats.get("deltas", 0),
            stats.get("repeats", 0),
            stats.get("short_payloads", 0),
            stats.get("releases", 0),
            stats.get("reconnects", 0),
        )

    async def run(self, stop: Optional[asyncio.Event] = None) -> Dict[str, int]:
        stop = stop or asyncio.Event()
        host = self.config.host
        initial_delay = max(host.reconnect_initial_sec, 0.01)
        max_delay = max(host.reconnect_max_sec, initial_delay)
        backoff = initial_delay
        try:
            while not stop.is_set():
                controller = self._controller_factory(self.config)
                disconnected = asyncio.Event()
                controller.on_analog_input(self._on_frame)
                controller.on_disconnected(disconnected.set)
                try:
                    await controller.connect()
                except GarmentConnectionError as exc:
                    self.last_exception = exc
                    logger.warning("Connection failed: %s", exc)
                else:
                    if self._connected_once:
                        self._reconnects += 1
                        logger.info("Reconnected to garment")
                    else:
                        logger.info("Connected to garment")
                        self._connected_once = True
                    self.last_exception = None
                    backoff = initial_delay
                    pipeline = controller.pipeline
                    try:
                        await self._greet(controller)
                        await self._serve(pipeline, disconnected, stop)
                    finally:
                        self._accumulate(pipeline)
                        await controller.disconnect()
                if stop.is_set() or not host.reconnect:
                    break
                wait_time = min(backoff, max_delay)
                logger.info("Reconnecting in %.1fs", wait_time)
                await _wait_any(stop, timeout=wait_time)
                backoff = min(backoff * 2, max_delay)
        finally:
            final_stats = self.stats()
            self._log_stats("Final stats: ", final_stats)
            self.close()
        return final_stats

    async def _greet(self, controller: GarmentController) -> None:
        led = self.config.led
        if not led.on_connect:
            return
        try:
            await controller.set_led_pattern(led.type, led.duration, led.brightness)
        except CommandError as exc:
            logger.warning("LED greeting failed: %s", exc)

    async def _serve(
        self,
        pipeline: Optional[AnalogPipeline],
        disconnected: asyncio.Event,
        stop: asyncio.Event,
    ) -> None:
        interval_sec = max(float(self.config.host.stats_log_interval), 1.0)
        next_log = time.monotonic() + interval_sec
        while not (disconnected.is_set() or stop.is_set()):
            await _wait_any(disconnected, stop, timeout=max(next_log - time.monotonic(), 0.0))
            if time.monotonic() >= next_log:
                self._log_stats("", self.stats(pipeline))
                next_log = time.monotonic() + interval_sec

    async def replay(self, notifications: Iterable[bytes]) -> List[SensorFrame]:
        """Feed recorded notifications through a fresh pipeline and collect the output."""
        frames: List[SensorFrame] = []

        def collect(frame: SensorFrame) -> None:
            frames.append(frame)
            self._on_frame(frame)

        pipeline = AnalogPipeline(self.config.filter, collect, asyncio.get_running_loop())
        try:
            for raw in notifications:
                pipeline.feed(raw)
            # Wait past the idle timeout so the trailing release frame fires.
            await asyncio.sleep(self.config.filter.idle_release_ms / 1000.0 * 2)
        finally:
            pipeline.close()
            self._accumulate(pipeline)
        self._log_stats("Replayed: ", self.stats())
        return frames

    def close(self) -> None:
        if self.recorder:
            self.recorder.close()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_config(
    config_path: Optional[Path],
    preset: Optional[str],
    override: Optional[list[str]],
    extra: list[str],
) -> GarmentConfig:
    preset_overrides_list: list[str] = []
    if preset:
        key = preset.lower()
        if key not in PRESETS:
            raise typer.BadParameter(f"Unknown preset '{preset}'. Expected one of {list(PRESETS)}")
        preset_overrides_list = preset_overrides(key)
    combined = preset_overrides_list + (override or []) + extra
    try:
        return load_config(config_path, combined or None)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc


app = typer.Typer(add_completion=False, help="Jacquard sleeve host utilities.")


@app.command()
def run(
    address: Optional[str] = typer.Option(None, "--address", "-a", help="BLE address of the garment."),
    name: Optional[str] = typer.Option(None, "--name", help="Advertised name to match when scanning."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to sleeve host config."),
    preset: Optional[str] = typer.Option(
        None, "--preset", "-P", help="Apply filter preset (responsive|default|sticky) before other overrides."
    ),
    override: Optional[list[str]] = typer.Option(
        None, "--set", help="Override config keys, e.g. --set filter.idle_release_ms=80"
    ),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Record frames to this CSV file."),
    led: bool = typer.Option(False, "--led/--no-led", help="Flash the LED pattern after connecting."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every frame."),
):
    """Connect to the garment and stream smoothed touch frames until Ctrl+C."""

    _configure_logging(verbose)
    extra: list[str] = []
    if address:
        extra.append(f"device.address={address}")
    if name:
        extra.append(f"device.name={name}")
    if out:
        extra.append(f"output_csv={out}")
    if led:
        extra.append("led.on_connect=true")
    cfg = _build_config(config_path, preset, override, extra)
    if preset:
        logger.info(
            "Applied preset %s (hold_frames=%d, decay_rate=%g, idle_release_ms=%.0f)",
            preset.lower(),
            cfg.filter.hold_frames,
            cfg.filter.decay_rate,
            cfg.filter.idle_release_ms,
        )
    host = GarmentHost(cfg)
    try:
        asyncio.run(host.run())
    except KeyboardInterrupt:
        logger.info("Stopping host (Ctrl+C)")
    finally:
        host.close()


@app.command()
def replay(
    input_path: str = typer.Option("-", "--in", help="Hex notification log, one payload per line. '-' reads stdin."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to sleeve host config."),
    override: Optional[list[str]] = typer.Option(None, "--set", help="Override config keys."),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Record frames to this CSV file."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every frame."),
):
    """Decode a recorded notification stream without a garment."""

    _configure_logging(verbose)
    cfg = _build_config(config_path, None, override, [f"output_csv={out}"] if out else [])
    host = GarmentHost(cfg)
    try:
        if input_path == "-":
            frames = asyncio.run(host.replay(iterate_hex_stream(sys.stdin)))
        else:
            with open(input_path, "r", encoding="utf-8") as handle:
                frames = asyncio.run(host.replay(iterate_hex_stream(handle)))
    except ValueError as exc:
        raise typer.BadParameter(f"Malformed notification log: {exc}") from exc
    finally:
        host.close()
    typer.echo(f"Decoded {len(frames)} frames")


@app.command()
def led(
    address: Optional[str] = typer.Option(None, "--address", "-a", help="BLE address of the garment."),
    pattern: int = typer.Option(0x10, "--type", "-t", help="Pattern type, 0..33 (0x21)."),
    duration: int = typer.Option(0x08, "--duration", "-d", help="Pattern duration, 0..255."),
    brightness: int = typer.Option(0xFF, "--brightness", "-b", help="LED brightness, 0..255."),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to sleeve host config."),
):
    """Show an LED pattern on the garment and disconnect."""

    _configure_logging(False)
    cfg = _build_config(config_path, None, None, [f"device.address={address}"] if address else [])

    async def _send() -> None:
        controller = GarmentController(cfg)
        await controller.connect()
        try:
            await controller.set_led_pattern(pattern, duration, brightness)
        finally:
            await controller.disconnect()

    try:
        asyncio.run(_send())
    except GarmentError as exc:
        typer.echo(f"LED command failed: {exc}")
        raise typer.Exit(code=1) from exc
    typer.echo(f"Sent LED pattern 0x{pattern:02X}")


@app.command()
def scan(
    timeout: float = typer.Option(10.0, "--timeout", help="Scan duration (seconds)."),
    name: str = typer.Option("Jacquard", "--name", help="Advertised name to match."),
):
    """List nearby garments."""

    devices = asyncio.run(discover_garments(name, timeout))
    if not devices:
        typer.echo("No garments found")
        raise typer.Exit(code=1)
    for device in devices:
        typer.echo(f"{device.name}  {device.address}")
