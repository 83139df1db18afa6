from __future__ import annotations

import importlib.resources
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .errors import SuiteError
from .probes import ProbeGroup, ProbeSpec, json_schema_shape

BUILTIN_SUITES = {
    "request-data": "request_data.yaml",
}
DEFAULT_SUITE = "request-data"

_METHODS = {"GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"}


class ProbeModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    method: str = "GET"
    path: str
    label: str = ""
    success_status: int = 200
    failure_status: int | None = None
    shape: dict[str, Any] = Field(default_factory=dict)
    shape_hint: str = ""

    @field_validator("method")
    @classmethod
    def _known_method(cls, value: str) -> str:
        method = value.upper()
        if method not in _METHODS:
            raise ValueError(f"unsupported HTTP method {value!r}")
        return method

    @field_validator("path")
    @classmethod
    def _rooted_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("path must start with '/'")
        return value


class GroupModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    title: str = ""
    probes: list[ProbeModel] = Field(min_length=1)


class SuiteModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = ""
    groups: list[GroupModel] = Field(min_length=1)


@dataclass(frozen=True)
class ProbeSuite:
    title: str
    groups: tuple[ProbeGroup, ...]

    def group_names(self) -> list[str]:
        return [g.name for g in self.groups]


def _compile_probe(model: ProbeModel, *, where: str) -> ProbeSpec:
    try:
        validator = json_schema_shape(model.shape)
    except SchemaError as exc:
        raise SuiteError(f"Invalid shape schema for {where}", detail=exc.message) from exc
    return ProbeSpec(
        name=model.name,
        method=model.method,
        path=model.path,
        expected_status_success=model.success_status,
        expected_status_failure=model.failure_status,
        shape_validator=validator,
        label=model.label,
        shape_hint=model.shape_hint,
    )


def compile_suite(data: Any, *, source: str = "<suite>") -> ProbeSuite:
    try:
        model = SuiteModel.model_validate(data)
    except ValidationError as exc:
        raise SuiteError(f"Invalid probe suite {source}", detail=str(exc)) from exc

    seen: set[str] = set()
    groups: list[ProbeGroup] = []
    for group in model.groups:
        if group.name in seen:
            raise SuiteError(f"Duplicate group name {group.name!r} in {source}")
        seen.add(group.name)
        probes = tuple(_compile_probe(p, where=f"{group.name}/{p.name}") for p in group.probes)
        groups.append(ProbeGroup(name=group.name, title=group.title or group.name, probes=probes))
    return ProbeSuite(title=model.title, groups=tuple(groups))


def _load_yaml(text: str, *, source: str) -> Any:
    yaml = YAML(typ="safe")
    try:
        return yaml.load(text)
    except YAMLError as exc:
        raise SuiteError(f"Could not parse {source}", detail=str(exc)) from exc


def load_suite(path: Path) -> ProbeSuite:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise SuiteError(f"Could not read suite file {path}", detail=str(exc)) from exc
    return compile_suite(_load_yaml(text, source=str(path)), source=str(path))


def builtin_suite(name: str = DEFAULT_SUITE) -> ProbeSuite:
    filename = BUILTIN_SUITES.get(name)
    if filename is None:
        raise SuiteError(f"Unknown built-in suite {name!r}", detail=f"available: {', '.join(sorted(BUILTIN_SUITES))}")
    text = importlib.resources.files("lab_grader").joinpath("_suites").joinpath(filename).read_text(encoding="utf-8")
    return compile_suite(_load_yaml(text, source=name), source=name)


def resolve_suite(ref: str | None) -> ProbeSuite:
    """Accept a built-in suite name, a path to a YAML file, or None for the default suite."""

    if ref is None:
        return builtin_suite()
    if ref in BUILTIN_SUITES:
        return builtin_suite(ref)
    return load_suite(Path(ref))
