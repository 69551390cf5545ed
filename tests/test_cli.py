from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from jacquard.cli import app as main_app
from jacquard.demo import create_demo_stream, create_demo_targets, write_stream
from jacquard.sleeve.runner import app as sleeve_app

runner = CliRunner()


def test_replay_and_summary_commands(tmp_path: Path) -> None:
    stream = tmp_path / "stream.hex"
    write_stream(stream, create_demo_stream(create_demo_targets(frames=11)))
    frames_csv = tmp_path / "frames.csv"

    result = runner.invoke(sleeve_app, ["replay", "--in", str(stream), "--out", str(frames_csv)])
    assert result.exit_code == 0, result.output
    # 11 decoded frames plus the trailing release
    assert "Decoded 12 frames" in result.output
    assert frames_csv.exists()

    report_dir = tmp_path / "report"
    result = runner.invoke(main_app, ["summary", "--in", str(frames_csv), "--report", str(report_dir)])
    assert result.exit_code == 0, result.output
    assert (report_dir / "report.md").exists()


def test_replay_rejects_malformed_log(tmp_path: Path) -> None:
    stream = tmp_path / "bad.hex"
    stream.write_text("not-hex\n", encoding="utf-8")
    result = runner.invoke(sleeve_app, ["replay", "--in", str(stream)])
    assert result.exit_code != 0


def test_run_rejects_unknown_preset() -> None:
    result = runner.invoke(sleeve_app, ["run", "--preset", "bogus"])
    assert result.exit_code != 0
