from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable
from urllib.parse import urlsplit

from .config import GraderSettings
from .discovery import DiscoveryResult, discover
from .errors import ChildUnreachable, EntryNotFound
from .fetch import Fetcher, fetch
from .launcher import NO_ENTRY_COMMAND, LaunchProfile, LaunchResult, get_profile, launch
from .probes import Note, fail, warn
from .scoring import INTERNAL_ERROR_CODE, GroupScore, ReportMeta, ScoreReport, ScoringEngine, aggregate, unreachable_group
from .suite import ProbeSuite, resolve_suite
from .timing import SubmissionTiming, timing_for, utc_now

logger = logging.getLogger(__name__)

EXTERNAL_COMMAND = "(external service)"


class Stage(str, enum.Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    DISCOVERING = "discovering"
    PROBING = "probing"
    REPORTING = "reporting"
    TERMINATING = "terminating"
    DONE = "done"


_ORDER = {stage: idx for idx, stage in enumerate(Stage)}


@dataclass
class GradingContext:
    """Mutable state of one grading run, owned by the controller and threaded through each stage."""

    settings: GraderSettings
    suite: ProbeSuite
    timing: SubmissionTiming
    project_dir: Path | None = None
    stage: Stage = Stage.IDLE
    history: list[Stage] = field(default_factory=lambda: [Stage.IDLE])
    launch: LaunchResult | None = None
    discovery: DiscoveryResult | None = None
    group_scores: list[GroupScore] = field(default_factory=list)
    report: ScoreReport | None = None
    notes: list[Note] = field(default_factory=list)
    graded_at_utc: str = ""

    def advance(self, stage: Stage) -> None:
        if _ORDER[stage] <= _ORDER[self.stage]:
            raise RuntimeError(f"Illegal lifecycle transition {self.stage.value} -> {stage.value}")
        logger.debug("stage %s -> %s", self.stage.value, stage.value)
        self.stage = stage
        self.history.append(stage)

    def used_command(self) -> str:
        if self.discovery is not None and self.discovery.used_command:
            return self.discovery.used_command
        if self.launch is not None:
            return self.launch.used_command
        return ""


@dataclass(frozen=True)
class GradingOutcome:
    report: ScoreReport
    discovery: DiscoveryResult
    stages: tuple[Stage, ...]
    startup_logs: str = ""


class LifecycleController:
    """launch -> discover -> probe -> report -> terminate, always in that order.

    Target misbehaviour is turned into notes and zero credit. Teardown runs no matter what
    happens. Only a bug in the controller itself propagates, after teardown.
    """

    def __init__(
        self,
        settings: GraderSettings | None = None,
        *,
        suite: ProbeSuite | None = None,
        timing: SubmissionTiming | None = None,
        profile: LaunchProfile | None = None,
        fetcher: Fetcher = fetch,
        launcher: Callable[[Path, LaunchProfile], LaunchResult] = launch,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings or GraderSettings()
        self.suite = suite or resolve_suite(self.settings.suite)
        self.timing = timing or timing_for(
            self.settings.deadline,
            on_time_points=self.settings.on_time_points,
            late_points=self.settings.late_points,
        )
        self.profile = profile or get_profile(self.settings.profile)
        self._fetcher = fetcher
        self._launcher = launcher
        self._clock = clock
        self._sleep = sleep

    def run(self, project_dir: Path | None = None, *, base_url: str | None = None) -> GradingOutcome:
        """Grade `project_dir`, or the already-running service at `base_url` when given."""

        ctx = GradingContext(
            settings=self.settings,
            suite=self.suite,
            timing=self.timing,
            project_dir=None if project_dir is None else Path(project_dir),
            graded_at_utc=utc_now().isoformat(),
        )
        try:
            ctx.advance(Stage.LAUNCHING)
            if base_url is None:
                self._launch(ctx)
            ctx.advance(Stage.DISCOVERING)
            self._discover(ctx, base_url)
            ctx.advance(Stage.PROBING)
            self._probe(ctx)
            ctx.advance(Stage.REPORTING)
            self._report(ctx)
        finally:
            ctx.advance(Stage.TERMINATING)
            self._terminate(ctx)
            ctx.advance(Stage.DONE)

        if ctx.report is None or ctx.discovery is None:
            raise RuntimeError("grading run finished without a report")
        return GradingOutcome(
            report=ctx.report,
            discovery=ctx.discovery,
            stages=tuple(ctx.history),
            startup_logs=self._startup_logs(ctx),
        )

    def _launch(self, ctx: GradingContext) -> None:
        if ctx.project_dir is None:
            raise ValueError("project_dir is required when no base_url is given")
        ctx.launch = self._launcher(ctx.project_dir, self.profile)
        if not ctx.launch.launched:
            code = EntryNotFound.code if ctx.launch.used_command == NO_ENTRY_COMMAND else ChildUnreachable.code
            message = ctx.launch.startup_logs or "No entry file or start script."
            ctx.notes.append(fail(message, code=code))

    def _discover(self, ctx: GradingContext, base_url: str | None) -> None:
        if base_url is not None:
            parts = urlsplit(base_url)
            ctx.discovery = DiscoveryResult(
                base_url=base_url.rstrip("/"),
                detected_port=parts.port,
                used_command=EXTERNAL_COMMAND,
            )
            return

        used_command = ctx.used_command()
        handle = None if ctx.launch is None else ctx.launch.handle
        if handle is None:
            ctx.discovery = DiscoveryResult(base_url=None, detected_port=None, used_command=used_command)
            return

        s = self.settings
        try:
            ctx.discovery = discover(
                handle,
                s.initial_port,
                used_command=used_command,
                host=s.host,
                base_port=s.scan_base_port,
                port_count=s.scan_port_count,
                startup_budget_s=s.startup_timeout_s,
                poll_interval_s=s.poll_interval_s,
                request_timeout_s=s.request_timeout_s,
                fetcher=self._fetcher,
                clock=self._clock,
                sleep=self._sleep,
            )
        except Exception as exc:  # noqa: BLE001 - discovery failure only costs the grade
            logger.exception("endpoint discovery failed")
            ctx.notes.append(fail(f"Endpoint discovery failed: {exc.__class__.__name__}: {exc}", code=INTERNAL_ERROR_CODE))
            ctx.discovery = DiscoveryResult(base_url=None, detected_port=None, used_command=used_command)
            return

        if not ctx.discovery.reachable:
            exit_status = handle.exit_status
            detail = f"process exited with status {exit_status}" if exit_status is not None else "process still running"
            err = ChildUnreachable("Service did not answer on any candidate port", detail=detail)
            logger.warning("%s", err)
            ctx.notes.append(fail(f"{err}.", code=err.code))
        else:
            found = ctx.discovery
            if found.sniffed_port is not None and found.detected_port != found.sniffed_port:
                ctx.notes.append(warn(f"Announced port {found.sniffed_port} did not answer; found a service on {found.detected_port}."))
            if found.root_status == 404:
                ctx.notes.append(warn(f"`/` on {found.base_url} answered 404; treating it as the service (routing differs)."))

    def _probe(self, ctx: GradingContext) -> None:
        base_url = None if ctx.discovery is None else ctx.discovery.base_url
        engine = ScoringEngine(fetcher=self._fetcher, timeout_s=self.settings.request_timeout_s)
        try:
            ctx.group_scores = engine.run(self.suite.groups, base_url)
        except Exception as exc:  # noqa: BLE001 - probing failure only costs the grade
            logger.exception("probing failed")
            message = f"Probing aborted: {exc.__class__.__name__}: {exc}"
            ctx.notes.append(fail(message, code=INTERNAL_ERROR_CODE))
            ctx.group_scores = [unreachable_group(g, message) for g in self.suite.groups]

    def _report(self, ctx: GradingContext) -> None:
        found = ctx.discovery or DiscoveryResult(base_url=None, detected_port=None, used_command=ctx.used_command())
        meta = ReportMeta(
            title=self.suite.title,
            graded_at_utc=ctx.graded_at_utc,
            project_dir=None if ctx.project_dir is None else str(ctx.project_dir),
            command_used=ctx.used_command(),
            detected_base_url=found.base_url,
            detected_port=found.detected_port,
            deadline=self.timing.describe(),
            is_late=self.timing.is_late(),
            stages=tuple(s.value for s in ctx.history),
            notes=tuple(ctx.notes),
        )
        ctx.report = aggregate(
            ctx.group_scores,
            submission_points=self.timing.points(),
            submission_max=self.timing.max_points,
            floor=self.settings.lab_floor,
            meta=meta,
        )

    def _terminate(self, ctx: GradingContext) -> None:
        handle = None if ctx.launch is None else ctx.launch.handle
        if handle is None:
            return
        try:
            handle.terminate(sig=self.settings.signal_number(), reap_timeout_s=self.settings.reap_timeout_s)
        except Exception:  # noqa: BLE001 - the child may already be gone
            logger.debug("terminate raised", exc_info=True)

    @staticmethod
    def _startup_logs(ctx: GradingContext) -> str:
        if ctx.launch is None:
            return ""
        if ctx.launch.handle is not None:
            return ctx.launch.handle.logs().strip()
        return ctx.launch.startup_logs
