"""Report writers for recorded sleeve sessions."""
from __future__ import annotations

from pathlib import Path

import numpy as np

from .analysis import LineSummary


def export_summary(
    summary: LineSummary,
    output_dir: Path,
    *,
    input_path: Path | None = None,
) -> None:
    """Persist per-line metrics and a markdown report to *output_dir*."""

    output_dir.mkdir(parents=True, exist_ok=True)
    summary.lines.to_csv(output_dir / "line_metrics.csv", index=False)
    _write_report_md(summary, output_dir, input_path=input_path)


def _write_report_md(summary: LineSummary, output_dir: Path, *, input_path: Path | None) -> None:
    lines: list[str] = []
    lines.append("# Jacquard Session Report")
    if input_path is not None:
        lines.append(f"*Input file:* `{input_path}`  ")
    lines.append(f"*Frames:* {summary.frames}  ")
    lines.append(f"*Duration:* {summary.duration_s:.3f} s  ")
    lines.append(f"*Release frames:* {summary.releases}  ")
    lines.append("")

    lines.append("## Lines")
    lines.append("| Line | Peak | Active % | Touches | Mean hold (frames) |")
    lines.append("| ---: | ---: | ---: | ---: | ---: |")
    for row in summary.lines.itertuples(index=False):
        hold = "-" if np.isnan(row.mean_hold_frames) else f"{row.mean_hold_frames:.1f}"
        lines.append(
            f"| {row.line} | {row.peak} | {row.active_ratio * 100.0:.1f} | {row.touches} | {hold} |"
        )
    lines.append("")

    lines.append("### Notes")
    lines.append("- A touch starts whenever a line leaves zero.")
    lines.append("- Values are post-smoothing, so held touches fade before the release frame.")

    (output_dir / "report.md").write_text("\n".join(lines), encoding="utf-8")
