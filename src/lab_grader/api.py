from __future__ import annotations

import logging
from pathlib import Path

from .config import GraderSettings
from .discovery import DiscoveryResult, discover as discover_endpoint
from .launcher import get_profile, launch
from .lifecycle import GradingOutcome, LifecycleController
from .project import locate_project
from .scoring import ScoreReport
from .suite import ProbeSuite
from .timing import SubmissionTiming

logger = logging.getLogger(__name__)


def grade(
    project_dir: Path,
    *,
    settings: GraderSettings | None = None,
    suite: ProbeSuite | None = None,
    timing: SubmissionTiming | None = None,
) -> GradingOutcome:
    """
    Launch the project, find its port, probe it, score it, and tear it down.

    `project_dir` may be a repository root; the runnable folder is located with
    `settings.project_subdirs`.
    """

    settings = settings or GraderSettings()
    profile = get_profile(settings.profile)
    target = locate_project(Path(project_dir), settings.project_subdirs, profile)
    controller = LifecycleController(settings, suite=suite, timing=timing, profile=profile)
    return controller.run(target)


def probe(
    base_url: str,
    *,
    settings: GraderSettings | None = None,
    suite: ProbeSuite | None = None,
    timing: SubmissionTiming | None = None,
) -> ScoreReport:
    """Score a service that is already running at `base_url`. Nothing is launched or killed."""

    controller = LifecycleController(settings, suite=suite, timing=timing)
    return controller.run(base_url=base_url).report


def discover(project_dir: Path, *, settings: GraderSettings | None = None) -> DiscoveryResult:
    """Launch the project and report where it answers, without probing or scoring it."""

    settings = settings or GraderSettings()
    profile = get_profile(settings.profile)
    target = locate_project(Path(project_dir), settings.project_subdirs, profile)
    started = launch(target, profile)
    if started.handle is None:
        return DiscoveryResult(base_url=None, detected_port=None, used_command=started.used_command)
    try:
        return discover_endpoint(
            started.handle,
            settings.initial_port,
            used_command=started.used_command,
            host=settings.host,
            base_port=settings.scan_base_port,
            port_count=settings.scan_port_count,
            startup_budget_s=settings.startup_timeout_s,
            poll_interval_s=settings.poll_interval_s,
            request_timeout_s=settings.request_timeout_s,
        )
    except Exception:  # noqa: BLE001 - a discovery failure leaves the service unreachable
        logger.exception("endpoint discovery failed")
        return DiscoveryResult(base_url=None, detected_port=None, used_command=started.used_command)
    finally:
        started.handle.terminate(sig=settings.signal_number(), reap_timeout_s=settings.reap_timeout_s)
