from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping

from .scoring import COMPLETENESS_MAX, CORRECTNESS_MAX, GROUP_MAX, QUALITY_MAX, GroupScore, ScoreReport

logger = logging.getLogger(__name__)

JSON_NAME = "grade.json"
TEXT_NAME = "grade.txt"


def _group_heading(group: GroupScore) -> str:
    label = group.name.replace("_", " ")
    if group.title and group.title != group.name:
        label = f"{label}: {group.title}"
    return f"## {label} - {group.points}/{GROUP_MAX}"


def _section(group: GroupScore) -> list[str]:
    band = group.band
    lines = [
        _group_heading(group),
        f"Completeness: {band.completeness}/{COMPLETENESS_MAX}, "
        f"Correctness: {band.correctness}/{CORRECTNESS_MAX}, "
        f"Quality: {band.quality}/{QUALITY_MAX}",
    ]
    if group.notes:
        lines.extend(n.render() for n in group.notes)
    else:
        lines.append("-")
    lines.append("")
    return lines


def _late_line(report: ScoreReport) -> str:
    is_late = report.meta.is_late
    if is_late is None:
        return f"Late submission? n/a ({report.submission_points}/{report.submission_max})"
    answer = "Yes" if is_late else "No"
    return f"Late submission? {answer} ({report.submission_points}/{report.submission_max})"


def render_text(report: ScoreReport) -> str:
    """Human-readable summary: header, per-group points, totals, then per-group feedback."""

    meta = report.meta
    title = meta.title or "Lab"
    lines = [
        f"==== {title} - Grade Summary ====",
        f"Graded at (UTC): {meta.graded_at_utc}",
        f"Deadline: {meta.deadline or 'none'}",
        _late_line(report),
        f"Detected base URL: {meta.detected_base_url or 'N/A'}",
    ]
    if meta.command_used:
        lines.append(f"Command used: {meta.command_used}")
    lines.append("")

    lines.append("Per-group Points:")
    lines.extend(f"- {g.name}: {g.points}/{GROUP_MAX}" for g in report.groups)
    lines.append("")
    lines.append(f"Lab Points: {report.lab_points}/{report.lab_max}")
    lines.append(f"Submission Points: {report.submission_points}/{report.submission_max}")
    lines.append(f"TOTAL: {report.total_points}/{report.total_max}")
    lines.append("")

    if meta.notes:
        lines.append("Harness notes:")
        lines.extend(n.render() for n in meta.notes)
        lines.append("")

    lines.append("Per-group Feedback (what you implemented vs. what's missing)")
    for group in report.groups:
        lines.extend(_section(group))
    return "\n".join(lines)


def write_report(report: ScoreReport, out_dir: Path) -> tuple[Path, Path]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    json_path = out_dir / JSON_NAME
    text_path = out_dir / TEXT_NAME
    json_path.write_text(report.to_json(), encoding="utf-8")
    text_path.write_text(render_text(report), encoding="utf-8")
    logger.info("wrote %s and %s", json_path, text_path)
    return json_path, text_path


def append_step_summary(report: ScoreReport, environ: Mapping[str, str] | None = None) -> bool:
    """Append the summary to $GITHUB_STEP_SUMMARY when set. Returns whether anything was written."""

    environ = os.environ if environ is None else environ
    target = environ.get("GITHUB_STEP_SUMMARY")
    if not target:
        return False
    title = report.meta.title or "Lab"
    block = [f"## {title} - Grade Summary", "", "```txt", render_text(report), "```", ""]
    if report.meta.project_dir:
        block.extend([f"**Project dir:** {report.meta.project_dir}", ""])
    try:
        with open(target, "a", encoding="utf-8") as fh:
            fh.write("\n".join(block))
    except OSError as exc:
        logger.warning("could not append step summary to %s: %s", target, exc)
        return False
    return True
