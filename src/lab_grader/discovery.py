from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from .fetch import Fetcher, fetch
from .launcher import ProcessHandle

logger = logging.getLogger(__name__)

PORT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1?\]):(\d{2,5})", re.IGNORECASE),
    re.compile(r"listening(?:\s+on)?\s+port\s+(\d{2,5})", re.IGNORECASE),
    re.compile(r"\bPORT(?:=|:)\s*(\d{2,5})\b", re.IGNORECASE),
)

# A 404 on "/" counts as "a server is here, routing differs". Unrelated services in the scan
# range can therefore be mistaken for the target.
ACCEPTED_ROOT_STATUSES = frozenset({200, 404})


@dataclass(frozen=True, slots=True)
class DiscoveryResult:
    base_url: str | None
    detected_port: int | None
    used_command: str
    sniffed_port: int | None = None
    root_status: int | None = None

    @property
    def reachable(self) -> bool:
        return self.base_url is not None

    def to_dict(self) -> dict[str, object]:
        return {
            "base_url": self.base_url,
            "detected_port": self.detected_port,
            "sniffed_port": self.sniffed_port,
            "root_status": self.root_status,
            "used_command": self.used_command,
        }


def sniff_port(log_text: str, patterns: Iterable[re.Pattern[str]] = PORT_PATTERNS) -> int | None:
    """Return the first port announced in `log_text`, trying patterns in priority order."""

    for pattern in patterns:
        match = pattern.search(log_text)
        if match and match.group(1):
            port = int(match.group(1))
            if 0 < port < 65536:
                return port
    return None


def wait_for_port_hint(
    handle: ProcessHandle,
    *,
    budget_s: float,
    poll_interval_s: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> int | None:
    """Poll the child's captured output for a port announcement.

    Stops at the first match, when the child exits, or when `budget_s` runs out. One last scan
    runs after the loop, so a port printed just before exit is not lost.
    """

    started = clock()
    while clock() - started < budget_s and handle.exit_status is None:
        port = sniff_port(handle.logs())
        if port is not None:
            return port
        sleep(poll_interval_s)
    return sniff_port(handle.logs())


def candidate_ports(sniffed: int | None, *, base_port: int, count: int) -> list[int]:
    out: list[int] = []
    if sniffed is not None:
        out.append(sniffed)
    for port in range(base_port, base_port + max(0, count)):
        if port not in out:
            out.append(port)
    return out


def probe_ports(
    ports: Iterable[int],
    *,
    host: str = "127.0.0.1",
    fetcher: Fetcher = fetch,
    timeout_s: float | None = None,
) -> tuple[str, int, int] | None:
    """Return (base_url, port, root status) for the first port whose `/` answers acceptably."""

    for port in ports:
        base_url = f"http://{host}:{port}"
        resp = fetcher(f"{base_url}/", timeout_s=timeout_s)
        if resp.reachable and resp.status_code in ACCEPTED_ROOT_STATUSES:
            return base_url, port, resp.status_code
        logger.debug("port %s: %s", port, getattr(resp, "reason", resp.status_code))
    return None


def discover(
    handle: ProcessHandle | None,
    initial_guess: int | None = None,
    *,
    used_command: str = "",
    host: str = "127.0.0.1",
    base_port: int = 3000,
    port_count: int = 24,
    startup_budget_s: float = 12.0,
    poll_interval_s: float = 0.25,
    request_timeout_s: float | None = None,
    fetcher: Fetcher = fetch,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> DiscoveryResult:
    """Find the base URL the service answers on.

    A `None` base URL means nothing answered. The endpoint is not checked for being the right
    application.
    """

    sniffed = initial_guess
    if handle is not None:
        hinted = wait_for_port_hint(
            handle,
            budget_s=startup_budget_s,
            poll_interval_s=poll_interval_s,
            clock=clock,
            sleep=sleep,
        )
        if hinted is not None:
            logger.info("port %s announced in child output", hinted)
            sniffed = hinted
        used_command = used_command or handle.command

    ports = candidate_ports(sniffed, base_port=base_port, count=port_count)
    found = probe_ports(ports, host=host, fetcher=fetcher, timeout_s=request_timeout_s)
    if found is None:
        logger.info("no endpoint answered on %d candidate ports", len(ports))
        return DiscoveryResult(base_url=None, detected_port=None, used_command=used_command, sniffed_port=sniffed)

    base_url, port, status = found
    logger.info("service discovered at %s", base_url)
    return DiscoveryResult(base_url=base_url, detected_port=port, used_command=used_command, sniffed_port=sniffed, root_status=status)
