from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable
from urllib.parse import urljoin

from jsonschema import Draft202012Validator

from .errors import ProbeUnreachable, ShapeMismatch
from .fetch import Fetcher, FetchResponse, fetch

logger = logging.getLogger(__name__)

ShapeValidator = Callable[[Any], bool]


class NoteLevel(str, enum.Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"

    @property
    def marker(self) -> str:
        return {"ok": "✅", "warn": "⚠️", "fail": "❌"}[self.value]


@dataclass(frozen=True, slots=True)
class Note:
    level: NoteLevel
    message: str
    code: str | None = None

    def render(self) -> str:
        return f"{self.level.marker} {self.message}"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"level": self.level.value, "message": self.message}
        if self.code is not None:
            out["code"] = self.code
        return out


def ok(message: str) -> Note:
    return Note(NoteLevel.OK, message)


def warn(message: str, *, code: str | None = None) -> Note:
    return Note(NoteLevel.WARN, message, code)


def fail(message: str, *, code: str | None = None) -> Note:
    return Note(NoteLevel.FAIL, message, code)


def any_json(_: Any) -> bool:
    return True


def json_schema_shape(schema: dict[str, Any]) -> ShapeValidator:
    """Build a shape predicate from a JSON Schema document (`{}` accepts any JSON)."""

    Draft202012Validator.check_schema(schema)
    validator = Draft202012Validator(schema)

    def _matches(instance: Any) -> bool:
        return validator.is_valid(instance)

    return _matches


@dataclass(frozen=True)
class ProbeSpec:
    name: str
    method: str
    path: str
    expected_status_success: int = 200
    expected_status_failure: int | None = None
    shape_validator: ShapeValidator = any_json
    label: str = ""
    shape_hint: str = ""

    @property
    def expected_status(self) -> int:
        """Status that earns correctness: the failure status for negative cases."""
        if self.expected_status_failure is not None:
            return self.expected_status_failure
        return self.expected_status_success

    @property
    def is_failure_case(self) -> bool:
        return self.expected_status_failure is not None

    @property
    def display(self) -> str:
        return self.label or f"`{self.path}`"


@dataclass(frozen=True)
class ProbeGroup:
    name: str
    title: str
    probes: tuple[ProbeSpec, ...]


@dataclass(frozen=True, slots=True)
class ProbeOutcome:
    probe: str
    reachable: bool
    status: int | None = None
    body_parsed_as_json: Any | None = None
    is_json: bool = False
    status_matched: bool = False
    shape_matched: bool = False
    notes: tuple[Note, ...] = field(default_factory=tuple)


def unreachable_outcome(spec: ProbeSpec, message: str, *, code: str = ProbeUnreachable.code) -> ProbeOutcome:
    return ProbeOutcome(probe=spec.name, reachable=False, notes=(fail(message, code=code),))


def _target(base_url: str, path: str) -> str:
    return urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def execute_probe(
    spec: ProbeSpec,
    base_url: str,
    *,
    fetcher: Fetcher = fetch,
    timeout_s: float | None = None,
) -> ProbeOutcome:
    resp = fetcher(_target(base_url, spec.path), method=spec.method, timeout_s=timeout_s)
    if not isinstance(resp, FetchResponse):
        logger.debug("%s %s unreachable: %s", spec.method, spec.path, getattr(resp, "reason", ""))
        return unreachable_outcome(spec, f"{spec.method} {spec.display} not reachable.")

    notes: list[Note] = [ok(f"{spec.display} reachable.")]
    logger.debug("%s %s -> %s", spec.method, spec.path, resp.status_code)

    status_matched = resp.status_code == spec.expected_status
    if status_matched:
        notes.append(ok(f"{spec.display} returned {spec.expected_status}."))
    else:
        notes.append(warn(f"{spec.display} returned status {resp.status_code} (expected {spec.expected_status})."))

    try:
        data = resp.json()
    except (ValueError, RecursionError):
        notes.append(warn(f"{spec.display} did not return JSON."))
        return ProbeOutcome(
            probe=spec.name,
            reachable=True,
            status=resp.status_code,
            status_matched=status_matched,
            notes=tuple(notes),
        )

    try:
        shape_matched = bool(spec.shape_validator(data))
    except Exception:  # noqa: BLE001 - a validator that cannot judge the body counts as a mismatch
        logger.debug("shape validator for %s raised", spec.name, exc_info=True)
        shape_matched = False
    if shape_matched:
        notes.append(ok(f"{spec.display} JSON has {spec.shape_hint or 'the expected shape'}."))
    else:
        message = f"{spec.display} JSON shape differs (accepted)."
        logger.warning("%s %s: %s", spec.method, spec.path, message)
        notes.append(warn(message, code=ShapeMismatch.code))

    return ProbeOutcome(
        probe=spec.name,
        reachable=True,
        status=resp.status_code,
        body_parsed_as_json=data,
        is_json=True,
        status_matched=status_matched,
        shape_matched=shape_matched,
        notes=tuple(notes),
    )
