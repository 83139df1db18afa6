from __future__ import annotations

from pathlib import Path
from typing import Sequence

from .launcher import LaunchProfile


def has_entry(directory: Path, profile: LaunchProfile) -> bool:
    if not directory.is_dir():
        return False
    names = (*profile.entry_candidates, profile.manifest, profile.last_resort)
    return any((directory / name).is_file() for name in names)


def locate_project(root: Path, subdirs: Sequence[str], profile: LaunchProfile) -> Path:
    """Pick the directory to launch: the root if it is runnable, else a known sub-folder."""

    root = Path(root)
    if has_entry(root, profile):
        return root
    for name in subdirs:
        if has_entry(root / name, profile):
            return root / name
    for name in subdirs:
        if (root / name).is_dir():
            return root / name
    return root
