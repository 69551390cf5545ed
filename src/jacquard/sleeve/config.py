from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence


@dataclass
class DeviceConfig:
    name: str = "Jacquard"
    address: Optional[str] = None
    scan_timeout: float = 10.0
    connect_timeout: float = 10.0


@dataclass
class FilterConfig:
    saturation: int = 128
    hold_frames: int = 10
    decay_rate: float = 0.025
    idle_release_ms: float = 50.0

    def validate(self) -> None:
        if not 0 < self.saturation <= 0xFF:
            raise ValueError("filter.saturation must be within 1..255")
        if self.hold_frames < 0:
            raise ValueError("filter.hold_frames may not be negative")
        if self.decay_rate < 0:
            raise ValueError("filter.decay_rate may not be negative")
        if self.idle_release_ms <= 0:
            raise ValueError("filter.idle_release_ms must be positive")


@dataclass
class LedConfig:
    type: int = 0x10
    duration: int = 0x08
    brightness: int = 0xFF
    on_connect: bool = False


@dataclass
class HostRuntime:
    reconnect: bool = True
    reconnect_initial_sec: float = 0.5
    reconnect_max_sec: float = 5.0
    stats_log_interval: float = 60.0


@dataclass
class GarmentConfig:
    device: DeviceConfig = field(default_factory=DeviceConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    led: LedConfig = field(default_factory=LedConfig)
    host: HostRuntime = field(default_factory=HostRuntime)
    output_csv: Path | None = None


def _load_json(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {**base}
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = _merge(base[key], value)  # type: ignore[index]
        else:
            merged[key] = value
    return merged


def load_config(path: Path | str | None = None, overrides: Sequence[str] | None = None) -> GarmentConfig:
    """
    Load the sleeve host configuration from JSON and apply CLI-style overrides.

    Overrides are expressed as dotted `key=value` pairs, e.g.:
        ["filter.idle_release_ms=80", "device.address=C4:7F:51:00:00:01"]

    Passing ``path=None`` starts from built-in defaults.
    """
    data = _load_json(Path(path)) if path is not None else {}
    override_data: Dict[str, Any] = {}
    for override in overrides or []:
        key, raw_value = _parse_override(override)
        _assign_nested(override_data, key, raw_value)
    merged = _merge(data, override_data)
    device_data = merged.get("device") or {}
    filter_data = merged.get("filter") or {}
    led_data = merged.get("led") or {}
    host_data = merged.get("host") or {}
    address = device_data.get("address")
    config = GarmentConfig(
        device=DeviceConfig(
            name=str(device_data.get("name", "Jacquard")),
            address=str(address) if address else None,
            scan_timeout=float(device_data.get("scan_timeout", 10.0)),
            connect_timeout=float(device_data.get("connect_timeout", 10.0)),
        ),
        filter=FilterConfig(
            saturation=int(filter_data.get("saturation", 128)),
            hold_frames=int(filter_data.get("hold_frames", 10)),
            decay_rate=float(filter_data.get("decay_rate", 0.025)),
            idle_release_ms=float(filter_data.get("idle_release_ms", 50.0)),
        ),
        led=LedConfig(
            type=_coerce_byte(led_data.get("type", 0x10)),
            duration=_coerce_byte(led_data.get("duration", 0x08)),
            brightness=_coerce_byte(led_data.get("brightness", 0xFF)),
            on_connect=bool(led_data.get("on_connect", False)),
        ),
        host=HostRuntime(
            reconnect=bool(host_data.get("reconnect", True)),
            reconnect_initial_sec=float(host_data.get("reconnect_initial_sec", 0.5)),
            reconnect_max_sec=float(host_data.get("reconnect_max_sec", 5.0)),
            stats_log_interval=float(host_data.get("stats_log_interval", 60.0)),
        ),
        output_csv=Path(merged["output_csv"]) if merged.get("output_csv") else None,
    )
    config.filter.validate()
    return config


def _coerce_byte(value: Any) -> int:
    # JSON has no hex literals, so "0x10" arrives as a string.
    if isinstance(value, str):
        return int(value, 0)
    return int(value)


def _parse_override(item: str) -> tuple[str, Any]:
    if "=" not in item:
        raise ValueError(f"Override '{item}' must use key=value syntax")
    key, raw_value = item.split("=", 1)
    key = key.strip()
    if not key:
        raise ValueError("Override key may not be empty")
    value = _coerce_value(raw_value.strip())
    return key, value


def _coerce_value(raw: str) -> Any:
    if raw.lower() in {"true", "false"}:
        return raw.lower() == "true"
    if raw.lower().startswith("0x"):
        try:
            return int(raw, 16)
        except ValueError:
            pass
    try:
        if "." in raw or "e" in raw.lower():
            return float(raw)
        return int(raw)
    except ValueError:
        pass
    if raw.startswith("[") and raw.endswith("]"):
        return json.loads(raw)
    if raw.startswith("{") and raw.endswith("}"):
        return json.loads(raw)
    return raw


def _assign_nested(target: Dict[str, Any], dotted_key: str, value: Any) -> None:
    cursor = target
    parts = dotted_key.split(".")
    for part in parts[:-1]:
        cursor = cursor.setdefault(part, {})
    cursor[parts[-1]] = value
