"""Command line interface for the jacquard package."""
from __future__ import annotations

from pathlib import Path

import typer

from .analysis import compute_line_metrics, load_recording
from .demo import run_demo
from .reporting import export_summary

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})


@app.command()
def summary(
    input_path: Path = typer.Option(..., "--in", help="Frame recording CSV."),
    report_dir: Path = typer.Option(..., "--report", help="Output directory for reports."),
) -> None:
    """Compute per-line touch metrics for a recorded session."""

    try:
        recording = load_recording(input_path)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--in") from exc

    result = compute_line_metrics(recording)
    export_summary(result, report_dir, input_path=input_path)
    typer.echo(f"Report written to {report_dir}")


@app.command()
def demo(
    out_dir: Path = typer.Option(Path("demo_output"), "--out", help="Target directory for demo output."),
) -> None:
    """Generate a synthetic notification stream, decode it and report on it."""

    run_demo(out_dir)
    typer.echo(f"Demo stream, frames and report written to {out_dir}")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
