from __future__ import annotations


class GraderError(Exception):
    """Base class for every error the harness names.

    `code` is a stable, machine-readable identifier that is copied onto report notes.
    """

    code = "grader_error"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        self.message = message
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class EntryNotFound(GraderError):
    code = "entry_not_found"


class ChildUnreachable(GraderError):
    code = "child_unreachable"


class ProbeUnreachable(GraderError):
    code = "probe_unreachable"


class ShapeMismatch(GraderError):
    code = "shape_mismatch"


class ProcessTerminationFailure(GraderError):
    code = "process_termination_failure"


class ConfigError(GraderError):
    code = "config_error"


class SuiteError(GraderError):
    code = "suite_error"
