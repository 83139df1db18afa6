from __future__ import annotations

import codecs
import json
import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable

from .errors import EntryNotFound, ProcessTerminationFailure

logger = logging.getLogger(__name__)

NO_ENTRY_COMMAND = "(no entry found)"
_IS_WINDOWS = sys.platform.startswith("win")


def _read_package_json_start(path: Path) -> list[str] | None:
    try:
        pkg = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    scripts = pkg.get("scripts") if isinstance(pkg, dict) else None
    if not isinstance(scripts, dict) or not scripts.get("start"):
        return None
    return ["npm.cmd" if _IS_WINDOWS else "npm", "start"]


def _read_procfile_web(path: Path) -> list[str] | None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return None
    for line in lines:
        key, sep, command = line.partition(":")
        if sep and key.strip() == "web" and command.strip():
            return shlex.split(command.strip())
    return None


@dataclass(frozen=True)
class LaunchProfile:
    name: str
    entry_candidates: tuple[str, ...]
    runtime: tuple[str, ...]
    manifest: str
    read_start_command: Callable[[Path], list[str] | None]
    last_resort: str

    def runtime_argv(self) -> list[str]:
        return list(self.runtime)


NODE_PROFILE = LaunchProfile(
    name="node",
    entry_candidates=(
        "server.js",
        "app.js",
        "index.js",
        "main.js",
        "src/server.js",
        "src/app.js",
        "src/index.js",
    ),
    runtime=(shutil.which("node") or "node",),
    manifest="package.json",
    read_start_command=_read_package_json_start,
    last_resort="server.cjs",
)

PYTHON_PROFILE = LaunchProfile(
    name="python",
    entry_candidates=(
        "server.py",
        "app.py",
        "main.py",
        "src/server.py",
        "src/app.py",
        "src/main.py",
    ),
    runtime=(sys.executable, "-u"),
    manifest="Procfile",
    read_start_command=_read_procfile_web,
    last_resort="run.py",
)

PROFILES: dict[str, LaunchProfile] = {p.name: p for p in (NODE_PROFILE, PYTHON_PROFILE)}


def get_profile(name: str) -> LaunchProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown launch profile: {name!r} (expected one of {sorted(PROFILES)})") from None


class OutputBuffer:
    """Append-only capture of one child stream.

    A daemon thread drains the pipe for the whole life of the child so it never blocks on a full
    pipe. Readers only take snapshots.
    """

    def __init__(self, stream: IO[bytes] | None, *, name: str) -> None:
        self._chunks: list[str] = []
        self._thread: threading.Thread | None = None
        if stream is not None:
            self._thread = threading.Thread(target=self._pump, args=(stream,), name=f"lab-grader-{name}", daemon=True)
            self._thread.start()

    def _pump(self, stream: IO[bytes]) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        read = getattr(stream, "read1", stream.read)
        try:
            while True:
                chunk = read(4096)
                if not chunk:
                    break
                self._chunks.append(decoder.decode(chunk))
        except (OSError, ValueError):
            pass
        finally:
            tail = decoder.decode(b"", final=True)
            if tail:
                self._chunks.append(tail)
            try:
                stream.close()
            except OSError:
                pass

    def snapshot(self) -> str:
        return "".join(list(self._chunks))

    def join(self, timeout: float) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


@dataclass(eq=False)
class ProcessHandle:
    process: subprocess.Popen[bytes]
    command: str
    stdout: OutputBuffer
    stderr: OutputBuffer
    _terminated: bool = field(default=False, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def exit_status(self) -> int | None:
        return self.process.poll()

    def logs(self) -> str:
        return self.stdout.snapshot() + "\n" + self.stderr.snapshot()

    def terminate(self, *, sig: int = signal.SIGTERM if _IS_WINDOWS else signal.SIGKILL, reap_timeout_s: float = 2.0) -> None:
        """Kill the child's process group, then the child itself, then reap it.

        Idempotent. Every failure is swallowed because the child may already be gone.
        """

        if self._terminated:
            return
        self._terminated = True
        for attempt in (self._signal_group, self._signal_pid):
            try:
                attempt(sig)
            except ProcessTerminationFailure as exc:
                logger.debug("%s", exc)
        try:
            self.process.wait(timeout=reap_timeout_s)
        except subprocess.TimeoutExpired:
            logger.debug("pid %s not reaped within %.1fs", self.pid, reap_timeout_s)
        self.stdout.join(0.5)
        self.stderr.join(0.5)

    def _signal_group(self, sig: int) -> None:
        try:
            if _IS_WINDOWS:
                subprocess.run(
                    ["taskkill", "/pid", str(self.pid), "/f", "/t"],
                    capture_output=True,
                    check=False,
                    timeout=10,
                )
            else:
                os.killpg(self.pid, sig)
        except (OSError, subprocess.SubprocessError) as exc:
            raise ProcessTerminationFailure("process group signal failed", detail=str(exc)) from exc

    def _signal_pid(self, sig: int) -> None:
        try:
            os.kill(self.pid, sig)
        except OSError as exc:
            raise ProcessTerminationFailure("process signal failed", detail=str(exc)) from exc


@dataclass(frozen=True, slots=True)
class LaunchResult:
    handle: ProcessHandle | None
    used_command: str
    startup_logs: str = ""

    @property
    def launched(self) -> bool:
        return self.handle is not None


def resolve_command(project_dir: Path, profile: LaunchProfile) -> tuple[list[str], str]:
    """Pick the launch command by strategy rank; raises EntryNotFound when nothing matches."""

    for candidate in profile.entry_candidates:
        if (project_dir / candidate).is_file():
            return [*profile.runtime_argv(), str(project_dir / candidate)], f"{Path(profile.runtime[0]).name} {candidate}"

    manifest = project_dir / profile.manifest
    if manifest.is_file():
        start = profile.read_start_command(manifest)
        if start:
            return start, shlex.join(start)

    if (project_dir / profile.last_resort).is_file():
        return [*profile.runtime_argv(), str(project_dir / profile.last_resort)], f"{Path(profile.runtime[0]).name} {profile.last_resort}"

    raise EntryNotFound(
        "No entry file or start script",
        detail=f"looked for {', '.join(profile.entry_candidates)}, {profile.manifest}, {profile.last_resort}",
    )


def _popen_kwargs() -> dict[str, object]:
    if _IS_WINDOWS:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    return {"start_new_session": True}


def launch(project_dir: Path, profile: LaunchProfile = NODE_PROFILE) -> LaunchResult:
    """Start the project as exactly one child process (or none when no strategy matches)."""

    project_dir = Path(project_dir)
    try:
        argv, used_command = resolve_command(project_dir, profile)
    except EntryNotFound as exc:
        logger.warning("%s in %s", exc, project_dir)
        return LaunchResult(handle=None, used_command=NO_ENTRY_COMMAND, startup_logs=f"{exc.message}.")

    logger.info("launching %s (cwd=%s)", used_command, project_dir)
    try:
        process = subprocess.Popen(
            argv,
            cwd=str(project_dir),
            env=dict(os.environ),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            **_popen_kwargs(),  # type: ignore[arg-type]
        )
    except OSError as exc:
        logger.warning("failed to spawn %s: %s", used_command, exc)
        return LaunchResult(handle=None, used_command=used_command, startup_logs=f"Failed to start: {exc}")

    handle = ProcessHandle(
        process=process,
        command=used_command,
        stdout=OutputBuffer(process.stdout, name="stdout"),
        stderr=OutputBuffer(process.stderr, name="stderr"),
    )
    return LaunchResult(handle=handle, used_command=used_command)
