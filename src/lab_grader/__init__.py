from __future__ import annotations

__all__ = [
    "__version__",
    "BandScore",
    "GraderError",
    "GraderSettings",
    "ProbeSpec",
    "ScoreReport",
    "grade",
    "probe",
]

__version__ = "0.3.0"

from .config import GraderSettings  # noqa: E402
from .errors import GraderError  # noqa: E402
from .probes import ProbeSpec  # noqa: E402
from .scoring import BandScore, ScoreReport  # noqa: E402
from .api import grade, probe  # noqa: E402
