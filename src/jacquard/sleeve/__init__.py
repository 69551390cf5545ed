"""
Host-side support for the Jacquard sleeve: touch-line telemetry over BLE.

The subpackage exposes configuration models, the notification decoder, the
touch smoothing filter and the controller used by the command line host.
"""

from .config import DeviceConfig, FilterConfig, GarmentConfig, HostRuntime, LedConfig, load_config
from .controller import (
    CommandError,
    GarmentConnectionError,
    GarmentController,
    GarmentError,
    NotConnectedError,
    encode_led_pattern,
)
from .frames import DECODE_TABLE, FragmentSequencer, unpack_deltas
from .processing import AnalogPipeline, FrameRecorder, SensorFrame, TouchFilter
from .runner import GarmentHost

__all__ = [
    "DeviceConfig",
    "FilterConfig",
    "GarmentConfig",
    "HostRuntime",
    "LedConfig",
    "load_config",
    "CommandError",
    "GarmentConnectionError",
    "GarmentController",
    "GarmentError",
    "NotConnectedError",
    "encode_led_pattern",
    "DECODE_TABLE",
    "FragmentSequencer",
    "unpack_deltas",
    "AnalogPipeline",
    "FrameRecorder",
    "SensorFrame",
    "TouchFilter",
    "GarmentHost",
]
