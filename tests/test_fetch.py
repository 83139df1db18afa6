from __future__ import annotations

import socket
import sys
import threading
import time
import unittest
from pathlib import Path


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _header_drip_server(*, interval_s: float = 0.2, limit: int = 100) -> tuple[socket.socket, int]:
    """Answers with a status line, then trickles header bytes forever (bounded by `limit`)."""

    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)

    def serve() -> None:
        try:
            conn, _ = listener.accept()
        except OSError:
            return
        with conn:
            try:
                conn.recv(4096)
                conn.sendall(b"HTTP/1.1 200 OK\r\n")
                for _ in range(limit):
                    conn.sendall(b"X")
                    time.sleep(interval_s)
            except OSError:
                pass

    threading.Thread(target=serve, daemon=True).start()
    return listener, listener.getsockname()[1]


class TestFetch(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        repo_root = Path(__file__).resolve().parents[1]
        cls.paths = [repo_root / "src", repo_root / "tests" / "fixtures"]
        for path in cls.paths:
            sys.path.insert(0, str(path))

        from lab_grader import fetch as fetch_module  # noqa: E402
        from lab_target import serve_in_thread  # noqa: E402

        cls.fetch_module = fetch_module
        cls.server, cls.base_url = serve_in_thread()

    @classmethod
    def tearDownClass(cls) -> None:
        cls.server.shutdown()
        cls.server.server_close()
        for path in cls.paths:
            try:
                sys.path.remove(str(path))
            except ValueError:
                pass

    def setUp(self) -> None:
        self.fetch = self.__class__.fetch_module.fetch
        self.Deadline = self.__class__.fetch_module.Deadline

    def test_success_returns_status_headers_and_body(self) -> None:
        resp = self.fetch(f"{self.base_url}/users/42")
        self.assertTrue(resp.reachable)
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.looks_like_json())
        self.assertEqual(resp.json(), {"ok": True, "userId": 42})

    def test_error_status_is_a_response_not_an_exception(self) -> None:
        resp = self.fetch(f"{self.base_url}/users/abc")
        self.assertTrue(resp.reachable)
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["ok"], False)

    def test_non_json_body_raises_value_error_on_parse(self) -> None:
        resp = self.fetch(f"{self.base_url}/text")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.text, "plain text")
        with self.assertRaises(ValueError):
            resp.json()

    def test_connection_refused_is_unreachable(self) -> None:
        resp = self.fetch(f"http://127.0.0.1:{_free_port()}/")
        self.assertFalse(resp.reachable)
        self.assertIsNone(resp.status_code)

    def test_dns_failure_is_unreachable(self) -> None:
        resp = self.fetch("http://lab-grader-test.invalid/", timeout_s=2.0)
        self.assertFalse(resp.reachable)

    def test_slow_response_times_out(self) -> None:
        resp = self.fetch(f"{self.base_url}/slow?s=3", timeout_s=0.3)
        self.assertFalse(resp.reachable)

    def test_expired_deadline_skips_the_request(self) -> None:
        now = [100.0]
        deadline = self.Deadline(1.0, clock=lambda: now[0])
        self.assertFalse(deadline.expired)
        now[0] = 101.5
        self.assertTrue(deadline.expired)
        resp = self.fetch(f"{self.base_url}/", deadline=deadline)
        self.assertFalse(resp.reachable)
        self.assertEqual(resp.reason, "timed out")

    def test_cancelled_deadline(self) -> None:
        deadline = self.Deadline(30.0)
        deadline.cancel()
        self.assertTrue(deadline.cancelled)
        self.assertEqual(deadline.remaining(), 0.0)
        resp = self.fetch(f"{self.base_url}/", deadline=deadline)
        self.assertFalse(resp.reachable)
        self.assertEqual(resp.reason, "cancelled before request")

    def test_slow_headers_are_cut_off_at_the_deadline(self) -> None:
        listener, port = _header_drip_server()
        try:
            started = time.monotonic()
            resp = self.fetch(f"http://127.0.0.1:{port}/", timeout_s=1.0)
            elapsed = time.monotonic() - started
        finally:
            listener.close()
        self.assertFalse(resp.reachable)
        self.assertLess(elapsed, 2.0)

    def test_cancel_interrupts_a_request_in_flight(self) -> None:
        deadline = self.Deadline(30.0)
        timer = threading.Timer(0.3, deadline.cancel)
        timer.start()
        started = time.monotonic()
        try:
            resp = self.fetch(f"{self.base_url}/slow?s=5", deadline=deadline)
        finally:
            timer.cancel()
        self.assertFalse(resp.reachable)
        self.assertLess(time.monotonic() - started, 2.0)
        self.assertTrue(deadline.aborted)

    def test_deadline_disarmed_after_success(self) -> None:
        deadline = self.Deadline(0.5)
        resp = self.fetch(f"{self.base_url}/", deadline=deadline)
        self.assertTrue(resp.reachable)
        time.sleep(0.7)
        self.assertFalse(deadline.aborted)


if __name__ == "__main__":
    unittest.main()
