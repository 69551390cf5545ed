from __future__ import annotations

from pathlib import Path

import pytest

from jacquard.sleeve.config import GarmentConfig, load_config
from jacquard.sleeve.runner import preset_overrides


def test_load_config_overrides(tmp_path: Path) -> None:
    cfg_path = tmp_path / "config.json"
    cfg_path.write_text(
        """
        {
          "device": {"name": "Jacquard", "scan_timeout": 5},
          "filter": {"hold_frames": 10, "decay_rate": 0.025},
          "led": {"type": "0x05"}
        }
        """,
        encoding="utf-8",
    )
    cfg = load_config(cfg_path, overrides=["filter.idle_release_ms=80", "device.address=C4:7F:51:00:00:01", "led.brightness=0x40"])
    assert isinstance(cfg, GarmentConfig)
    assert cfg.filter.idle_release_ms == 80.0
    assert cfg.device.address == "C4:7F:51:00:00:01"
    assert cfg.device.scan_timeout == 5.0
    assert cfg.led.type == 0x05
    assert cfg.led.brightness == 0x40
    assert cfg.output_csv is None


def test_shipped_config_matches_defaults() -> None:
    cfg = load_config(Path("host/config.json"))
    assert cfg == GarmentConfig()


def test_defaults_without_file() -> None:
    cfg = load_config(None, overrides=preset_overrides("sticky") + ["output_csv=out/frames.csv"])
    assert cfg.filter.hold_frames == 30
    assert cfg.filter.saturation == 128
    assert cfg.output_csv == Path("out/frames.csv")


def test_invalid_filter_rejected() -> None:
    with pytest.raises(ValueError):
        load_config(None, overrides=["filter.idle_release_ms=0"])
    with pytest.raises(ValueError):
        load_config(None, overrides=["filter.saturation=300"])
    with pytest.raises(ValueError):
        load_config(None, overrides=["filter"])
