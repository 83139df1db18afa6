from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from lab_grader import __version__

logger = logging.getLogger("lab_grader")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _overrides(args: argparse.Namespace) -> dict[str, Any]:
    out: dict[str, Any] = {
        "request_timeout_s": args.timeout,
        "startup_timeout_s": getattr(args, "startup_timeout", None),
        "scan_base_port": getattr(args, "scan_base_port", None),
        "scan_port_count": getattr(args, "scan_ports", None),
        "initial_port": getattr(args, "port", None),
        "profile": getattr(args, "profile", None),
        "deadline": getattr(args, "deadline", None),
        "suite": getattr(args, "suite", None),
    }
    subdirs = getattr(args, "subdir", None)
    if subdirs:
        out["project_subdirs"] = subdirs
    return out


def _emit(text: str, *, out_path: str | None = None) -> None:
    if out_path is None:
        sys.stdout.write(text if text.endswith("\n") else text + "\n")
        return
    Path(out_path).write_text(text, encoding="utf-8")
    sys.stdout.write(f"Wrote report: {out_path}\n")


def _publish(report: Any, args: argparse.Namespace) -> None:
    from lab_grader.report import append_step_summary, render_text, write_report

    if args.out_dir:
        write_report(report, Path(args.out_dir))
    if args.step_summary:
        append_step_summary(report)
    _emit(report.to_json() if args.format == "json" else render_text(report))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="lab-grader")
    parser.add_argument("--version", action="version", version=f"lab-grader {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_common_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--config", type=str, help="YAML settings file")
        p.add_argument("--suite", type=str, help="Built-in suite name or path to a suite YAML file")
        p.add_argument("--timeout", type=float, help="Per-request timeout in seconds")
        p.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    def add_launch_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("project", nargs="?", default=".", help="Project directory (default: .)")
        p.add_argument("--subdir", action="append", default=[], help="Repeatable sub-folder to look in")
        p.add_argument("--profile", choices=["node", "python"])
        p.add_argument("--port", type=int, help="Port to try first when the child announces none")
        p.add_argument("--startup-timeout", type=float)
        p.add_argument("--scan-base-port", type=int)
        p.add_argument("--scan-ports", type=int)

    def add_report_flags(p: argparse.ArgumentParser) -> None:
        p.add_argument("--deadline", type=str, help="ISO-8601 deadline with UTC offset")
        p.add_argument("--format", default="text", choices=["text", "json"])
        p.add_argument("--out-dir", type=str, help="Write grade.json and grade.txt here")
        p.add_argument("--step-summary", action="store_true", help="Append to $GITHUB_STEP_SUMMARY")

    grade_p = sub.add_parser("grade", help="Launch a project and grade it")
    add_common_flags(grade_p)
    add_launch_flags(grade_p)
    add_report_flags(grade_p)

    probe_p = sub.add_parser("probe", help="Grade a service that is already running")
    add_common_flags(probe_p)
    add_report_flags(probe_p)
    probe_p.add_argument("--url", required=True)

    discover_p = sub.add_parser("discover", help="Launch a project and print where it answers")
    add_common_flags(discover_p)
    add_launch_flags(discover_p)

    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    from lab_grader import api
    from lab_grader.config import GraderSettings
    from lab_grader.errors import GraderError

    try:
        settings = GraderSettings.resolve(
            config_path=Path(args.config) if args.config else None,
            overrides=_overrides(args),
        )
        if args.command == "discover":
            found = api.discover(Path(args.project), settings=settings)
            _emit(json.dumps(found.to_dict(), indent=2))
            return 0
        if args.command == "probe":
            _publish(api.probe(args.url, settings=settings), args)
            return 0
        outcome = api.grade(Path(args.project), settings=settings)
        if outcome.startup_logs:
            logger.debug("child output:\n%s", outcome.startup_logs)
        _publish(outcome.report, args)
        return 0
    except GraderError as exc:
        sys.stderr.write(f"Grader crashed: {exc}\n")
        return 1
    except Exception as exc:  # noqa: BLE001 - top-level crash report
        logger.debug("unhandled error", exc_info=True)
        sys.stderr.write(f"Grader crashed: {exc.__class__.__name__}: {exc}\n")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
