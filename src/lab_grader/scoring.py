from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from .errors import ProbeUnreachable
from .fetch import Fetcher, fetch
from .probes import Note, ProbeGroup, ProbeOutcome, execute_probe, fail, unreachable_outcome

logger = logging.getLogger(__name__)

COMPLETENESS_MAX = 8
CORRECTNESS_MAX = 4
QUALITY_MAX = 4
GROUP_MAX = COMPLETENESS_MAX + CORRECTNESS_MAX + QUALITY_MAX
DEFAULT_LAB_FLOOR = 60

INTERNAL_ERROR_CODE = "internal_error"


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


@dataclass(frozen=True, slots=True)
class BandScore:
    completeness: int = 0
    correctness: int = 0
    quality: int = 0

    def __post_init__(self) -> None:
        for name, value, cap in (
            ("completeness", self.completeness, COMPLETENESS_MAX),
            ("correctness", self.correctness, CORRECTNESS_MAX),
            ("quality", self.quality, QUALITY_MAX),
        ):
            if not 0 <= value <= cap:
                raise ValueError(f"{name} must be within [0, {cap}], got {value}")

    @classmethod
    def clamped(cls, completeness: int, correctness: int, quality: int) -> "BandScore":
        return cls(
            completeness=clamp(completeness, 0, COMPLETENESS_MAX),
            correctness=clamp(correctness, 0, CORRECTNESS_MAX),
            quality=clamp(quality, 0, QUALITY_MAX),
        )

    @property
    def total(self) -> int:
        return self.completeness + self.correctness + self.quality

    def to_dict(self) -> dict[str, int]:
        return {
            "completeness": self.completeness,
            "correctness": self.correctness,
            "quality": self.quality,
            "points": self.total,
        }


class BandTally:
    """Mutable per-group accumulator; sums freely, clamps each band once on `freeze()`."""

    def __init__(self) -> None:
        self.completeness = 0
        self.correctness = 0
        self.quality = 0

    def add(self, *, completeness: int = 0, correctness: int = 0, quality: int = 0) -> None:
        self.completeness += completeness
        self.correctness += correctness
        self.quality += quality

    def freeze(self) -> BandScore:
        return BandScore.clamped(self.completeness, self.correctness, self.quality)


def probe_share(probe_count: int) -> BandScore:
    """Band points one probe can earn when a group splits its caps evenly."""
    n = max(1, probe_count)
    return BandScore(COMPLETENESS_MAX // n, CORRECTNESS_MAX // n, QUALITY_MAX // n)


@dataclass(frozen=True)
class GroupScore:
    name: str
    title: str
    band: BandScore
    notes: tuple[Note, ...] = ()
    outcomes: tuple[ProbeOutcome, ...] = ()

    @property
    def points(self) -> int:
        return self.band.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            **self.band.to_dict(),
            "notes": [n.to_dict() for n in self.notes],
        }


def score_group(group: ProbeGroup, outcomes: Sequence[ProbeOutcome]) -> GroupScore:
    share = probe_share(len(group.probes))
    tally = BandTally()
    notes: list[Note] = []
    for outcome in outcomes:
        notes.extend(outcome.notes)
        if not outcome.reachable:
            continue
        tally.add(
            completeness=share.completeness,
            correctness=share.correctness if outcome.status_matched else 0,
            quality=share.quality if outcome.shape_matched else 0,
        )
    return GroupScore(name=group.name, title=group.title, band=tally.freeze(), notes=tuple(notes), outcomes=tuple(outcomes))


def unreachable_group(group: ProbeGroup, message: str) -> GroupScore:
    return GroupScore(
        name=group.name,
        title=group.title,
        band=BandScore(),
        notes=(fail(message, code=ProbeUnreachable.code),),
    )


class ScoringEngine:
    """Runs probe groups in order against one base URL and scores each group.

    An unexpected error while probing does not abort the run: the probe that raised, and every
    probe after it, is recorded as unreachable with an internal-error note.
    """

    def __init__(self, *, fetcher: Fetcher = fetch, timeout_s: float | None = None) -> None:
        self._fetcher = fetcher
        self._timeout_s = timeout_s

    def run(self, groups: Iterable[ProbeGroup], base_url: str | None) -> list[GroupScore]:
        groups = list(groups)
        if base_url is None:
            return [unreachable_group(g, "Server not reachable; cannot run endpoint checks.") for g in groups]

        results: list[GroupScore] = []
        aborted: Exception | None = None
        for group in groups:
            outcomes: list[ProbeOutcome] = []
            for spec in group.probes:
                if aborted is not None:
                    outcomes.append(
                        unreachable_outcome(spec, f"{spec.method} {spec.display} skipped after grader error.", code=INTERNAL_ERROR_CODE)
                    )
                    continue
                try:
                    outcomes.append(execute_probe(spec, base_url, fetcher=self._fetcher, timeout_s=self._timeout_s))
                except Exception as exc:  # noqa: BLE001 - converted into zero credit
                    logger.exception("probe %s/%s raised", group.name, spec.name)
                    aborted = exc
                    outcomes.append(
                        unreachable_outcome(
                            spec,
                            f"{spec.method} {spec.display} not scored: {exc.__class__.__name__}: {exc}",
                            code=INTERNAL_ERROR_CODE,
                        )
                    )
            results.append(score_group(group, outcomes))
        return results


def apply_floor(raw_points: int, *, any_progress: bool, floor: int = DEFAULT_LAB_FLOOR) -> int:
    if any_progress and 0 < raw_points < floor:
        return floor
    return raw_points


@dataclass(frozen=True)
class ReportMeta:
    title: str = ""
    graded_at_utc: str = ""
    project_dir: str | None = None
    command_used: str = ""
    detected_base_url: str | None = None
    detected_port: int | None = None
    deadline: str | None = None
    is_late: bool | None = None
    stages: tuple[str, ...] = ()
    notes: tuple[Note, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "graded_at_utc": self.graded_at_utc,
            "deadline": self.deadline,
            "is_late": self.is_late,
            "project_dir": self.project_dir,
            "command_used": self.command_used,
            "detected_base_url": self.detected_base_url,
            "detected_port": self.detected_port,
            "stages": list(self.stages),
            "notes": [n.to_dict() for n in self.notes],
        }


@dataclass(frozen=True)
class ScoreReport:
    groups: tuple[GroupScore, ...]
    raw_lab_points: int
    lab_points: int
    lab_max: int
    submission_points: int
    submission_max: int
    meta: ReportMeta = field(default_factory=ReportMeta)

    @property
    def total_points(self) -> int:
        return self.lab_points + self.submission_points

    @property
    def total_max(self) -> int:
        return self.lab_max + self.submission_max

    def per_group(self) -> dict[str, int]:
        return {g.name: g.points for g in self.groups}

    def group(self, name: str) -> GroupScore:
        for g in self.groups:
            if g.name == name:
                return g
        raise KeyError(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "meta": self.meta.to_dict(),
            "scoring": {
                "per_group": self.per_group(),
                "raw_lab_points": self.raw_lab_points,
                "lab_points": self.lab_points,
                "lab_max": self.lab_max,
                "submission_points": self.submission_points,
                "submission_max": self.submission_max,
                "total_points": self.total_points,
                "total_max": self.total_max,
            },
            "groups": [g.to_dict() for g in self.groups],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n"


def aggregate(
    group_scores: Sequence[GroupScore],
    *,
    submission_points: int,
    submission_max: int,
    floor: int = DEFAULT_LAB_FLOOR,
    meta: ReportMeta | None = None,
) -> ScoreReport:
    raw = sum(g.points for g in group_scores)
    lab_max = GROUP_MAX * len(group_scores)
    any_progress = any(g.points > 0 for g in group_scores)
    lab = apply_floor(raw, any_progress=any_progress, floor=min(floor, lab_max))
    return ScoreReport(
        groups=tuple(group_scores),
        raw_lab_points=raw,
        lab_points=lab,
        lab_max=lab_max,
        submission_points=submission_points,
        submission_max=submission_max,
        meta=meta or ReportMeta(),
    )
