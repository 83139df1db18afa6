from __future__ import annotations

import datetime as dt
import os
import signal
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .errors import ConfigError

ENV_PREFIX = "LAB_GRADER_"


class GraderSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    request_timeout_s: float = Field(default=3.5, gt=0)
    startup_timeout_s: float = Field(default=12.0, ge=0)
    poll_interval_s: float = Field(default=0.25, gt=0)
    host: str = "127.0.0.1"
    scan_base_port: int = Field(default=3000, ge=1, le=65535)
    scan_port_count: int = Field(default=24, ge=0, le=1024)
    initial_port: int | None = Field(default=None, ge=1, le=65535)
    lab_floor: int = Field(default=60, ge=0)
    profile: Literal["node", "python"] = "node"
    kill_signal: str = "SIGKILL"
    reap_timeout_s: float = Field(default=2.0, ge=0)
    deadline: dt.datetime | None = None
    on_time_points: int = Field(default=20, ge=0)
    late_points: int = Field(default=10, ge=0)
    project_subdirs: list[str] = Field(default_factory=list)
    suite: str | None = None

    @field_validator("kill_signal")
    @classmethod
    def _known_signal(cls, value: str) -> str:
        name = value.upper()
        if not name.startswith("SIG"):
            name = "SIG" + name
        if not hasattr(signal, name):
            raise ValueError(f"unknown signal {value!r} on this platform")
        return name

    @field_validator("deadline")
    @classmethod
    def _aware_deadline(cls, value: dt.datetime | None) -> dt.datetime | None:
        if value is not None and value.tzinfo is None:
            raise ValueError("deadline must include a UTC offset, e.g. 2025-11-12T23:59:59+03:00")
        return value

    @field_validator("project_subdirs", mode="before")
    @classmethod
    def _split_subdirs(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    def signal_number(self) -> int:
        return int(getattr(signal, self.kill_signal))

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any], *, source: str = "settings") -> "GraderSettings":
        try:
            return cls.model_validate(dict(values))
        except ValidationError as exc:
            raise ConfigError(f"Invalid {source}", detail=str(exc)) from exc

    @classmethod
    def env_values(cls, environ: Mapping[str, str] | None = None) -> dict[str, str]:
        environ = os.environ if environ is None else environ
        out: dict[str, str] = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None and raw.strip():
                out[name] = raw.strip()
        return out

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GraderSettings":
        return cls.from_mapping(cls.env_values(environ), source="environment settings")

    @staticmethod
    def file_values(path: Path) -> dict[str, Any]:
        yaml = YAML(typ="safe")
        try:
            data = yaml.load(Path(path).read_text(encoding="utf-8"))
        except (OSError, YAMLError) as exc:
            raise ConfigError(f"Could not read config file {path}", detail=str(exc)) from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        deadline = data.get("deadline")
        if isinstance(deadline, dt.datetime) and deadline.tzinfo is None:
            # unquoted YAML timestamps arrive already shifted to UTC, minus the tzinfo
            data["deadline"] = deadline.replace(tzinfo=dt.timezone.utc)
        return data

    @classmethod
    def load(cls, path: Path) -> "GraderSettings":
        return cls.from_mapping(cls.file_values(path), source=f"config file {path}")

    @classmethod
    def resolve(
        cls,
        *,
        config_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> "GraderSettings":
        """Layer defaults, then the YAML file, then LAB_GRADER_* variables, then explicit overrides."""

        values: dict[str, Any] = {}
        if config_path is not None:
            values.update(cls.file_values(config_path))
        values.update(cls.env_values(environ))
        values.update({k: v for k, v in (overrides or {}).items() if v is not None})
        return cls.from_mapping(values)
