from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .config import DeviceConfig, GarmentConfig
from .processing import AnalogPipeline, FrameCallback, SensorFrame

logger = logging.getLogger(__name__)

# UUIDs must stay lowercase.
UUID_SERVICE = "d45c2000-4270-a125-a25d-ee458c085001"
UUID_ANALOG = "d45c2010-4270-a125-a25d-ee458c085001"
UUID_GESTURE = "d45c2030-4270-a125-a25d-ee458c085001"
UUID_LED_PATTERN = "d45c2080-4270-a125-a25d-ee458c085001"

LED_TYPE_DEFAULT = 0x10
LED_DURATION_DEFAULT = 0x08
LED_BRIGHTNESS_DEFAULT = 0xFF
LED_TYPE_MAX = 0x21


class GarmentError(Exception):
    pass


class NotConnectedError(GarmentError):
    pass


class GarmentConnectionError(GarmentError):
    pass


class CommandError(GarmentError):
    pass


def encode_led_pattern(
    type: Optional[int] = None,
    duration: Optional[int] = None,
    brightness: Optional[int] = None,
) -> bytes:
    """Build the 3-byte LED command; falsy arguments fall back to the defaults."""
    pattern = type or LED_TYPE_DEFAULT
    duration = duration or LED_DURATION_DEFAULT
    brightness = brightness or LED_BRIGHTNESS_DEFAULT
    if not 0 <= pattern <= LED_TYPE_MAX:
        raise CommandError(f"LED pattern type must be within 0x00..0x{LED_TYPE_MAX:02X}, got {pattern}")
    for label, value in (("duration", duration), ("brightness", brightness)):
        if not 0 <= value <= 0xFF:
            raise CommandError(f"LED {label} must be within 0x00..0xFF, got {value}")
    return bytes([pattern, duration, brightness])


def _matches_name(name_hint: str) -> Callable[[BLEDevice, AdvertisementData], bool]:
    hint = name_hint.lower()

    def _filter(device: BLEDevice, adv: AdvertisementData) -> bool:
        name = adv.local_name or device.name or ""
        return hint in name.lower()

    return _filter


async def discover_garments(name_hint: str = "Jacquard", timeout: float = 10.0) -> List[BLEDevice]:
    devices = await BleakScanner.discover(timeout=timeout)
    hint = name_hint.lower()
    return [device for device in devices if device.name and hint in device.name.lower()]


class BleakTransport:
    """GATT access to one garment through bleak."""

    def __init__(self, settings: DeviceConfig):
        self.settings = settings
        self._client: Optional[BleakClient] = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def connect(self, on_disconnect: Callable[[], None]) -> None:
        device = await self._find_device()
        if device is None:
            target = self.settings.address or self.settings.name
            raise GarmentConnectionError(f"No garment found matching '{target}'")
        logger.info("Connecting to %s (%s)", device.name or "?", device.address)
        self._client = BleakClient(
            device,
            disconnected_callback=lambda _client: on_disconnect(),
            timeout=self.settings.connect_timeout,
        )
        await self._client.connect()

    async def _find_device(self) -> Optional[BLEDevice]:
        if self.settings.address:
            return await BleakScanner.find_device_by_address(
                self.settings.address, timeout=self.settings.scan_timeout
            )
        return await BleakScanner.find_device_by_filter(
            _matches_name(self.settings.name), timeout=self.settings.scan_timeout
        )

    def characteristic(self, service_uuid: str, char_uuid: str) -> Optional[Any]:
        if self._client is None:
            return None
        service = self._client.services.get_service(service_uuid)
        if service is None:
            return None
        return service.get_characteristic(char_uuid)

    async def start_notify(self, characteristic: Any, handler: Callable[[bytes], None]) -> None:
        if self._client is None:
            raise NotConnectedError("No connection to the garment.")
        await self._client.start_notify(characteristic, lambda _sender, data: handler(bytes(data)))

    async def write(self, characteristic: Any, payload: bytes) -> None:
        if self._client is None:
            raise NotConnectedError("No connection to the garment.")
        await self._client.write_gatt_char(characteristic, payload, response=True)

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.disconnect()


TransportFactory = Callable[[DeviceConfig], Any]


def _log_analog_input(frame: SensorFrame) -> None:
    logger.debug("proximity=%d lines=%s", frame.proximity, ",".join(str(value) for value in frame.lines))


def _log_disconnected() -> None:
    logger.info("Garment disconnected")


class GarmentController:
    """
    Connect/command/subscribe surface for a Jacquard garment.

    Every connection gets a fresh analog pipeline; a disconnect drops it and
    cancels any pending release frame before the disconnect callback runs.
    """

    def __init__(
        self,
        config: Optional[GarmentConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
    ):
        self.config = config or GarmentConfig()
        self._transport_factory = transport_factory or BleakTransport
        self._transport: Optional[Any] = None
        self._led_characteristic: Optional[Any] = None
        self._analog_characteristic: Optional[Any] = None
        self._pipeline: Optional[AnalogPipeline] = None
        self._on_analog_input: FrameCallback = _log_analog_input
        self._on_disconnected: Callable[[], None] = _log_disconnected

    @property
    def is_connected(self) -> bool:
        return self._transport is not None

    @property
    def pipeline(self) -> Optional[AnalogPipeline]:
        return self._pipeline

    async def connect(self) -> None:
        if self._transport is not None:
            await self.disconnect()
        transport = self._transport_factory(self.config.device)
        try:
            await transport.connect(lambda: self._handle_disconnect(transport))
            led = transport.characteristic(UUID_SERVICE, UUID_LED_PATTERN)
            analog = transport.characteristic(UUID_SERVICE, UUID_ANALOG)
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            raise GarmentConnectionError(f"Unable to connect to garment: {exc}") from exc
        if led is None or analog is None:
            await transport.disconnect()
            raise GarmentConnectionError("Garment does not expose the Jacquard sensor service")
        self._transport = transport
        self._led_characteristic = led
        self._analog_characteristic = analog
        try:
            await self.attach_analog_listener()
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            await self.disconnect()
            raise GarmentConnectionError(f"Unable to subscribe to analog data: {exc}") from exc

    async def attach_analog_listener(self) -> None:
        if self._analog_characteristic is None or self._transport is None:
            raise NotConnectedError("No connection to the garment.")
        if self._pipeline is not None:
            self._pipeline.close()
        self._pipeline = AnalogPipeline(self.config.filter, self._dispatch, asyncio.get_running_loop())
        await self._transport.start_notify(self._analog_characteristic, self.feed)

    async def set_led_pattern(
        self,
        type: Optional[int] = None,
        duration: Optional[int] = None,
        brightness: Optional[int] = None,
    ) -> None:
        if self._led_characteristic is None or self._transport is None:
            raise NotConnectedError("No connection to the garment.")
        payload = encode_led_pattern(type, duration, brightness)
        try:
            await self._transport.write(self._led_characteristic, payload)
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            raise CommandError(f"LED pattern write failed: {exc}") from exc

    def on_analog_input(self, callback: Optional[FrameCallback]) -> None:
        self._on_analog_input = callback or _log_analog_input

    def on_disconnected(self, callback: Optional[Callable[[], None]]) -> None:
        self._on_disconnected = callback or _log_disconnected

    def feed(self, raw: bytes) -> List[SensorFrame]:
        if self._pipeline is None:
            return []
        return self._pipeline.feed(raw)

    def stats(self) -> Dict[str, int]:
        return self._pipeline.stats() if self._pipeline is not None else {}

    async def disconnect(self) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.disconnect()
        finally:
            self._handle_disconnect(transport)

    def _dispatch(self, frame: SensorFrame) -> None:
        self._on_analog_input(frame)

    def _handle_disconnect(self, transport: Any) -> None:
        if transport is not self._transport:
            return
        if self._pipeline is not None:
            self._pipeline.close()
        self._pipeline = None
        self._transport = None
        self._led_characteristic = None
        self._analog_characteristic = None
        self._on_disconnected()
