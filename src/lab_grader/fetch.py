from __future__ import annotations

import http.client
import json
import logging
import socket
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 3.5
_CHUNK_SIZE = 64 * 1024


def _looks_like_json(content_type: str) -> bool:
    if not content_type:
        return False
    mime = content_type.split(";", 1)[0].strip().lower()
    return mime == "application/json" or mime.endswith("+json") or mime == "text/json"


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class Deadline:
    """Cancellation handle for one fetch.

    The handle expires when `timeout_s` has elapsed on `clock`, or as soon as `cancel()` is
    called. Pass a fake clock to drive expiry from tests.

    While armed, a timer shuts down every attached connection socket when the deadline runs out,
    so a request blocked in the middle of a read is torn down instead of waiting on the peer.
    `cancel()` fires the same abort from any thread.
    """

    def __init__(self, timeout_s: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at = clock() + max(0.0, timeout_s)
        self._cancelled = False
        self._aborted = False
        self._lock = threading.Lock()
        self._sockets: list[socket.socket] = []
        self._timer: threading.Timer | None = None

    def cancel(self) -> None:
        self._cancelled = True
        self._abort()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def aborted(self) -> bool:
        """True once attached sockets were shut down by expiry or cancellation."""
        return self._aborted

    def remaining(self) -> float:
        if self._cancelled or self._aborted:
            return 0.0
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def attach(self, sock: socket.socket) -> None:
        with self._lock:
            if not self._aborted:
                self._sockets.append(sock)
                return
        _shutdown(sock)

    def arm(self) -> None:
        if self._timer is not None:
            return
        self._timer = threading.Timer(self.remaining(), self._abort)
        self._timer.daemon = True
        self._timer.start()

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        with self._lock:
            self._sockets.clear()

    def _abort(self) -> None:
        with self._lock:
            self._aborted = True
            sockets, self._sockets = self._sockets, []
        for sock in sockets:
            _shutdown(sock)


class _DeadlineConnectionMixin:
    """Registers the connection's socket with a Deadline once it is connected."""

    def __init__(self, *args: Any, deadline: Deadline, **kwargs: Any) -> None:
        self._deadline = deadline
        super().__init__(*args, **kwargs)

    def connect(self) -> None:
        super().connect()  # type: ignore[misc]
        self._deadline.attach(self.sock)  # type: ignore[attr-defined]


class _DeadlineHTTPConnection(_DeadlineConnectionMixin, http.client.HTTPConnection):
    pass


class _DeadlineHTTPSConnection(_DeadlineConnectionMixin, http.client.HTTPSConnection):
    pass


class _DeadlineHTTPHandler(urllib.request.HTTPHandler):
    def __init__(self, deadline: Deadline) -> None:
        super().__init__()
        self._deadline = deadline

    def http_open(self, req: urllib.request.Request) -> Any:
        return self.do_open(_DeadlineHTTPConnection, req, deadline=self._deadline)


class _DeadlineHTTPSHandler(urllib.request.HTTPSHandler):
    def __init__(self, deadline: Deadline) -> None:
        super().__init__()
        self._deadline = deadline

    def https_open(self, req: urllib.request.Request) -> Any:
        return self.do_open(_DeadlineHTTPSConnection, req, context=self._context, deadline=self._deadline)


def _opener(deadline: Deadline) -> urllib.request.OpenerDirector:
    return urllib.request.build_opener(_DeadlineHTTPHandler(deadline), _DeadlineHTTPSHandler(deadline))


@dataclass(frozen=True, slots=True)
class FetchResponse:
    url: str
    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    reachable = True

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value.split(";", 1)[0].strip().lower()
        return ""

    def looks_like_json(self) -> bool:
        return _looks_like_json(self.content_type())

    def json(self) -> Any:
        """Parse the body as JSON regardless of Content-Type; raises ValueError when it is not JSON."""
        return json.loads(self.text)


@dataclass(frozen=True, slots=True)
class Unreachable:
    url: str
    reason: str

    reachable = False
    status_code = None


FetchResult = FetchResponse | Unreachable


class Fetcher(Protocol):
    def __call__(
        self,
        url: str,
        *,
        method: str = ...,
        headers: dict[str, str] | None = ...,
        body: bytes | None = ...,
        timeout_s: float | None = ...,
        deadline: Deadline | None = ...,
    ) -> FetchResult: ...


def _read_body(response: Any, deadline: Deadline) -> bytes | None:
    chunks: list[bytes] = []
    while True:
        if deadline.expired:
            return None
        chunk = response.read1(_CHUNK_SIZE) if hasattr(response, "read1") else response.read(_CHUNK_SIZE)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def _abort(response: Any) -> None:
    try:
        response.close()
    except Exception:  # noqa: BLE001 - closing a half-read socket is best effort
        pass


def fetch(
    url: str,
    *,
    method: str = "GET",
    headers: dict[str, str] | None = None,
    body: bytes | None = None,
    timeout_s: float | None = None,
    deadline: Deadline | None = None,
) -> FetchResult:
    """Perform one HTTP request bounded by `deadline` (or a fresh one of `timeout_s`).

    Never raises for network trouble: refused connections, DNS failures, protocol errors and
    expiry all come back as `Unreachable`. Non-2xx statuses are ordinary responses. The deadline
    is armed for the whole exchange: when it runs out (or is cancelled) the connection socket is
    shut down, which ends a stalled connect, header read or body read alike.
    """

    if deadline is None:
        deadline = Deadline(DEFAULT_TIMEOUT_S if timeout_s is None else timeout_s)
    if deadline.expired:
        return Unreachable(url=url, reason="cancelled before request" if deadline.cancelled else "timed out")

    request = urllib.request.Request(url=url, data=body, method=method.upper())
    for key, value in (headers or {}).items():
        request.add_header(key, value)

    response: Any = None
    deadline.arm()
    try:
        try:
            response = _opener(deadline).open(request, timeout=deadline.remaining())
            status = response.getcode()
        except urllib.error.HTTPError as exc:
            response = exc
            status = exc.code
        resp_headers = dict(response.headers.items()) if response.headers is not None else {}
        raw = _read_body(response, deadline)
    except urllib.error.URLError as exc:
        logger.debug("fetch %s %s unreachable: %s", method, url, exc.reason)
        return Unreachable(url=url, reason=str(exc.reason))
    except (OSError, http.client.HTTPException, ValueError) as exc:
        logger.debug("fetch %s %s failed: %s", method, url, exc)
        if response is not None:
            _abort(response)
        return Unreachable(url=url, reason=f"{exc.__class__.__name__}: {exc}")
    finally:
        deadline.disarm()

    _abort(response)
    if raw is None or deadline.aborted:
        logger.debug("fetch %s %s aborted: deadline ran out mid-request", method, url)
        return Unreachable(url=url, reason="cancelled" if deadline.cancelled else "timed out")
    return FetchResponse(url=url, status_code=int(status), headers=resp_headers, body=raw)
