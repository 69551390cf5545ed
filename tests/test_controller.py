from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

import pytest
from bleak.exc import BleakError

from jacquard.sleeve.config import GarmentConfig
from jacquard.sleeve.controller import (
    UUID_ANALOG,
    UUID_LED_PATTERN,
    UUID_SERVICE,
    CommandError,
    GarmentConnectionError,
    GarmentController,
    NotConnectedError,
    encode_led_pattern,
)
from jacquard.sleeve.processing import SensorFrame

SNAPSHOT = (0).to_bytes(2, "little") + bytes([12] + [40] * 15)


class FakeTransport:
    def __init__(
        self,
        settings,
        *,
        fail: Optional[Exception] = None,
        characteristics: bool = True,
        write_error: Optional[Exception] = None,
        notify_error: Optional[Exception] = None,
    ):
        self.settings = settings
        self.fail = fail
        self.characteristics = characteristics
        self.write_error = write_error
        self.notify_error = notify_error
        self.connected = False
        self.handler: Optional[Callable[[bytes], None]] = None
        self.writes: List[tuple] = []
        self._on_disconnect: Optional[Callable[[], None]] = None

    async def connect(self, on_disconnect: Callable[[], None]) -> None:
        if self.fail is not None:
            raise self.fail
        self._on_disconnect = on_disconnect
        self.connected = True

    def characteristic(self, service_uuid: str, char_uuid: str):
        if not self.characteristics or service_uuid != UUID_SERVICE:
            return None
        return char_uuid

    async def start_notify(self, characteristic, handler) -> None:
        assert characteristic == UUID_ANALOG
        if self.notify_error is not None:
            raise self.notify_error
        self.handler = handler

    async def write(self, characteristic, payload: bytes) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((characteristic, payload))

    async def disconnect(self) -> None:
        self.drop()

    def drop(self) -> None:
        if self.connected:
            self.connected = False
            assert self._on_disconnect is not None
            self._on_disconnect()


class TransportRecorder:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.instances: List[FakeTransport] = []

    def __call__(self, settings) -> FakeTransport:
        transport = FakeTransport(settings, **self.kwargs)
        self.instances.append(transport)
        return transport


def test_encode_led_pattern_defaults_and_bounds():
    assert encode_led_pattern() == bytes([0x10, 0x08, 0xFF])
    assert encode_led_pattern(0, 0, 0) == bytes([0x10, 0x08, 0xFF])
    assert encode_led_pattern(0x21, 0x01, 0x80) == bytes([0x21, 0x01, 0x80])
    with pytest.raises(CommandError):
        encode_led_pattern(0x22)
    with pytest.raises(CommandError):
        encode_led_pattern(0x05, 0x100)
    with pytest.raises(CommandError):
        encode_led_pattern(0x05, 0x01, -1)


def test_commands_before_connect_raise_not_connected():
    controller = GarmentController(transport_factory=TransportRecorder())
    with pytest.raises(NotConnectedError):
        asyncio.run(controller.set_led_pattern())
    with pytest.raises(NotConnectedError):
        asyncio.run(controller.attach_analog_listener())
    assert controller.feed(SNAPSHOT) == []


def test_connect_subscribes_and_dispatches_frames():
    transports = TransportRecorder()
    controller = GarmentController(GarmentConfig(), transport_factory=transports)
    received: List[SensorFrame] = []
    controller.on_analog_input(received.append)

    async def scenario() -> None:
        await controller.connect()
        transport = transports.instances[0]
        assert transport.handler is not None
        transport.handler(SNAPSHOT)
        transport.handler((2).to_bytes(2, "little") + bytes(16))
        await controller.set_led_pattern(0x03, None, 0x40)
        assert transport.writes == [(UUID_LED_PATTERN, bytes([0x03, 0x08, 0x40]))]
        await controller.disconnect()

    asyncio.run(scenario())
    assert len(received) == 3
    assert received[0].proximity == 12
    assert received[0].lines == (40,) * 15


def test_subscriber_can_be_replaced_at_runtime():
    transports = TransportRecorder()
    controller = GarmentController(transport_factory=transports)
    first: List[SensorFrame] = []
    second: List[SensorFrame] = []

    async def scenario() -> None:
        controller.on_analog_input(first.append)
        await controller.connect()
        controller.feed(SNAPSHOT)
        controller.on_analog_input(second.append)
        controller.feed((2).to_bytes(2, "little") + bytes(16))
        controller.on_analog_input(None)
        controller.feed((4).to_bytes(2, "little") + bytes(16))
        await controller.disconnect()

    asyncio.run(scenario())
    assert len(first) == 1
    assert len(second) == 2


def test_transport_failure_surfaces_as_connection_error():
    controller = GarmentController(transport_factory=TransportRecorder(fail=BleakError("no adapter")))
    with pytest.raises(GarmentConnectionError) as excinfo:
        asyncio.run(controller.connect())
    assert isinstance(excinfo.value.__cause__, BleakError)
    assert not controller.is_connected


def test_missing_characteristics_fail_connect():
    transports = TransportRecorder(characteristics=False)
    controller = GarmentController(transport_factory=transports)
    with pytest.raises(GarmentConnectionError):
        asyncio.run(controller.connect())
    assert transports.instances[0].connected is False
    with pytest.raises(NotConnectedError):
        asyncio.run(controller.set_led_pattern())


def test_led_write_failure_is_command_error():
    transports = TransportRecorder(write_error=BleakError("write rejected"))
    controller = GarmentController(transport_factory=transports)

    async def scenario() -> None:
        await controller.connect()
        try:
            await controller.set_led_pattern()
        finally:
            await controller.disconnect()

    with pytest.raises(CommandError):
        asyncio.run(scenario())


def test_disconnect_tears_down_state_and_cancels_release():
    transports = TransportRecorder()
    controller = GarmentController(transport_factory=transports)
    received: List[SensorFrame] = []
    disconnects: List[int] = []
    controller.on_analog_input(received.append)
    controller.on_disconnected(lambda: disconnects.append(1))

    async def scenario() -> None:
        await controller.connect()
        controller.feed(SNAPSHOT)
        pipeline = controller.pipeline
        assert pipeline is not None and pipeline.filter.release_pending
        transports.instances[0].drop()
        assert controller.pipeline is None
        assert not pipeline.filter.release_pending
        await asyncio.sleep(0.15)
        await controller.disconnect()

    asyncio.run(scenario())
    assert len(received) == 1
    assert not any(frame.released for frame in received)
    assert disconnects == [1]
    assert not controller.is_connected
    with pytest.raises(NotConnectedError):
        asyncio.run(controller.set_led_pattern())


def test_reconnect_starts_from_clean_state():
    transports = TransportRecorder()
    controller = GarmentController(transport_factory=transports)
    received: List[SensorFrame] = []
    controller.on_analog_input(received.append)

    async def scenario() -> None:
        await controller.connect()
        controller.feed(SNAPSHOT)
        controller.feed((2).to_bytes(2, "little") + bytes([0x11] * 16))
        await controller.disconnect()
        await controller.connect()
        # Without a fresh snapshot nothing can be decoded
        assert controller.feed((2).to_bytes(2, "little") + bytes(16)) == []
        controller.feed(SNAPSHOT)
        await controller.disconnect()

    asyncio.run(scenario())
    assert len(transports.instances) == 2
    # The post-reconnect snapshot is seen as a change, not a held value
    assert received[-1].lines == (40,) * 15


def test_subscribe_timeout_disconnects_and_surfaces_as_connection_error():
    transports = TransportRecorder(notify_error=asyncio.TimeoutError())
    controller = GarmentController(transport_factory=transports)
    with pytest.raises(GarmentConnectionError) as excinfo:
        asyncio.run(controller.connect())
    assert isinstance(excinfo.value.__cause__, asyncio.TimeoutError)
    assert not controller.is_connected
    assert controller.pipeline is None
    assert transports.instances[0].connected is False
