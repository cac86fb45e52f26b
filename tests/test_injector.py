import random
import threading
import time
import unittest
from typing import List, Optional, Tuple


class _Recorder:
    """Stands in for a process manager; records every write."""

    def __init__(self, name: str, log: List[Tuple[str, str, float]], *, fail: int = 0, gate: Optional[threading.Event] = None):
        self.name = name
        self.log = log
        self.fail = fail
        self.gate = gate
        self.calls = 0

    def write(self, text: str) -> None:
        from clibridge.kernel.errors import InjectionFailure

        self.calls += 1
        if self.gate is not None:
            self.gate.wait(5.0)
        if self.fail != 0:
            if self.fail > 0:
                self.fail -= 1
            raise InjectionFailure("write failed: boom")
        self.log.append((self.name, text, time.monotonic()))


def _injector(**kw):
    from clibridge.daemon.injector import InputInjector

    kw.setdefault("sleep", lambda _s: None)
    kw.setdefault("rng", random.Random(7))
    return InputInjector(**kw)


class TestInputInjector(unittest.TestCase):
    def test_fifo_across_agents(self) -> None:
        log: List[Tuple[str, str, float]] = []
        inj = _injector()
        inj.register_agent("a", _Recorder("a", log))
        inj.register_agent("b", _Recorder("b", log))
        try:
            f1 = inj.inject("a", "one")
            f2 = inj.inject("b", "two")
            f3 = inj.inject("a", "three")
            for f in (f1, f2, f3):
                self.assertTrue(f.result(timeout=5).success)
        finally:
            inj.close()

        self.assertEqual(
            [(n, t) for n, t, _ in log],
            [("a", "one"), ("a", "\r"), ("b", "two"), ("b", "\r"), ("a", "three"), ("a", "\r")],
        )

    def test_enter_only_when_missing_and_raw_is_verbatim(self) -> None:
        log: List[Tuple[str, str, float]] = []
        inj = _injector()
        inj.register_agent("a", _Recorder("a", log))
        try:
            inj.inject("a", "line\n").result(timeout=5)
            inj.inject("a", "\x03", raw=True).result(timeout=5)
            inj.inject("a", "nope", confirm_with_enter=False).result(timeout=5)
        finally:
            inj.close()
        self.assertEqual([t for _, t, _ in log], ["line\n", "\x03", "nope"])

    def test_unknown_agent_fails_immediately(self) -> None:
        from clibridge.kernel.errors import AgentNotFound

        inj = _injector()
        try:
            with self.assertRaises(AgentNotFound) as cm:
                inj.inject("ghost", "hi")
            self.assertIn("ghost", str(cm.exception))
        finally:
            inj.close()

    def test_retry_ceiling_is_three(self) -> None:
        from clibridge.kernel.errors import InjectionFailure

        delays: List[float] = []
        retries = []
        inj = _injector(sleep=delays.append)
        rec = _Recorder("a", [], fail=-1)
        inj.register_agent("a", rec)
        inj.events.on("injection-retry", retries.append)
        try:
            fut = inj.inject("a", "hello")
            err = fut.exception(timeout=5)
        finally:
            inj.close()

        self.assertIsInstance(err, InjectionFailure)
        self.assertIn("boom", str(err))
        self.assertEqual(rec.calls, 4)
        self.assertEqual([r["attempt"] for r in retries], [1, 2, 3])
        self.assertEqual(len(delays), 3)
        for got, base in zip(delays, (2.0, 4.0, 5.0)):
            self.assertGreaterEqual(got, base)
            self.assertLessEqual(got, base + 0.25)

        last = inj.history()[-1]
        self.assertFalse(last.success)
        self.assertEqual(last.attempts, 4)

    def test_transient_failure_recovers(self) -> None:
        log: List[Tuple[str, str, float]] = []
        inj = _injector()
        inj.register_agent("a", _Recorder("a", log, fail=2))
        try:
            res = inj.inject("a", "hi").result(timeout=5)
        finally:
            inj.close()
        self.assertTrue(res.success)
        self.assertEqual(res.attempts, 3)
        self.assertEqual([t for _, t, _ in log], ["hi", "\r"])

    def test_agent_unregistered_while_queued_is_retried(self) -> None:
        log: List[Tuple[str, str, float]] = []
        gate = threading.Event()
        b = _Recorder("b", log)
        holder = {}

        def _sleep(_delay: float) -> None:
            holder["inj"].register_agent("b", b)

        inj = _injector(sleep=_sleep)
        holder["inj"] = inj
        inj.register_agent("a", _Recorder("a", log, gate=gate))
        inj.register_agent("b", b)
        try:
            fa = inj.inject("a", "first", confirm_with_enter=False)
            fb = inj.inject("b", "second", confirm_with_enter=False)
            inj.unregister_agent("b")
            gate.set()
            self.assertTrue(fa.result(timeout=5).success)
            res = fb.result(timeout=5)
        finally:
            inj.close()
        self.assertEqual(res.attempts, 2)
        self.assertEqual([t for _, t, _ in log], ["first", "second"])

    def test_human_like_typing_pace(self) -> None:
        log: List[Tuple[str, str, float]] = []
        progress = []
        inj = _injector()
        inj.register_agent("a", _Recorder("a", log))
        inj.events.on("typing-progress", progress.append)
        try:
            inj.inject(
                "a",
                "0123456789",
                human_like=True,
                typing_speed=600,
                confirm_with_enter=False,
            ).result(timeout=10)
        finally:
            inj.close()

        self.assertEqual([t for _, t, _ in log], list("0123456789"))
        gaps = [b[2] - a[2] for a, b in zip(log, log[1:])]
        self.assertEqual(len(gaps), 9)
        for g in gaps:
            self.assertGreaterEqual(g, 0.065)
            self.assertLessEqual(g, 0.2)
        self.assertGreaterEqual(len(progress), 1)

    def test_close_interrupts_slow_typing(self) -> None:
        from clibridge.kernel.errors import InjectionFailure

        log: List[Tuple[str, str, float]] = []
        inj = _injector()
        inj.register_agent("a", _Recorder("a", log))
        fut = inj.inject("a", "abcdef", human_like=True, typing_speed=6, confirm_with_enter=False)
        self.assertTrue(_wait(lambda: len(log) == 1))

        started = time.monotonic()
        inj.close()
        self.assertLess(time.monotonic() - started, 2.0)
        err = fut.exception(timeout=1)
        self.assertIsInstance(err, InjectionFailure)
        self.assertIn("closed while typing", str(err))
        self.assertEqual([t for _, t, _ in log], ["a"])

    def test_wait_for_ready_times_out_then_delivers(self) -> None:
        log: List[Tuple[str, str, float]] = []
        asked = []

        def _waiter(timeout: float) -> bool:
            asked.append(timeout)
            return False

        inj = _injector()
        inj.register_agent("a", _Recorder("a", log), ready_waiter=_waiter)
        try:
            with self.assertLogs("clibridge.injector", level="WARNING"):
                inj.inject("a", "hi", wait_for_ready=True, timeout=0.5).result(timeout=5)
        finally:
            inj.close()
        self.assertEqual(asked, [0.5])
        self.assertEqual([t for _, t, _ in log], ["hi", "\r"])

    def test_wait_for_ready_not_consulted_by_default(self) -> None:
        asked = []
        inj = _injector()
        inj.register_agent("a", _Recorder("a", []), ready_waiter=lambda t: asked.append(t) or True)
        try:
            inj.inject("a", "hi").result(timeout=5)
        finally:
            inj.close()
        self.assertEqual(asked, [])

    def test_clear_queue_and_status(self) -> None:
        from concurrent.futures import CancelledError

        log: List[Tuple[str, str, float]] = []
        gate = threading.Event()
        inj = _injector()
        inj.register_agent("a", _Recorder("a", log, gate=gate))
        try:
            first = inj.inject("a", "first", confirm_with_enter=False)
            self.assertTrue(_wait(lambda: inj.queue_status()["active"] is not None))
            second = inj.inject("a", "second")
            third = inj.inject("a", "third")
            status = inj.queue_status()
            self.assertEqual(status["queue_length"], 2)
            self.assertEqual(status["active_agent"], "a")

            self.assertEqual(inj.clear_queue(), 2)
            gate.set()
            self.assertTrue(first.result(timeout=5).success)
            with self.assertRaises(CancelledError):
                second.result(timeout=1)
            self.assertTrue(third.cancelled())
        finally:
            inj.close()
        self.assertEqual([t for _, t, _ in log], ["first"])

    def test_inject_to_all_and_close(self) -> None:
        from clibridge.kernel.errors import InjectionFailure

        log: List[Tuple[str, str, float]] = []
        inj = _injector()
        inj.register_agent("a", _Recorder("a", log))
        inj.register_agent("b", _Recorder("b", log))
        futures = inj.inject_to_all("ping")
        for f in futures.values():
            f.result(timeout=5)
        self.assertEqual(sorted(futures), ["a", "b"])
        self.assertEqual(len(inj.history()), 2)

        inj.close()
        with self.assertRaises(InjectionFailure):
            inj.inject("a", "late")


def _wait(pred, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return bool(pred())


if __name__ == "__main__":
    unittest.main()
