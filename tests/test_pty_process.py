import os
import threading
import time
import unittest

from clibridge.runners import pty as pty_runner

_HAS_SH = os.path.exists("/bin/sh") and os.path.exists("/bin/cat")


def _wait_for(pred, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if pred():
            return True
        time.sleep(0.02)
    return bool(pred())


@unittest.skipUnless(pty_runner.PTY_SUPPORTED and _HAS_SH, "POSIX PTY not available")
class TestProcessManager(unittest.TestCase):
    def test_write_before_spawn_fails(self) -> None:
        from clibridge.kernel.errors import NotInitialized

        pm = pty_runner.ProcessManager(pty_runner.PtyConfig(command="/bin/cat"))
        with self.assertRaises(NotInitialized):
            pm.write("hi\n")
        self.assertEqual(pm.state, "initializing")

    def test_resize_before_spawn_only_warns(self) -> None:
        pm = pty_runner.ProcessManager(pty_runner.PtyConfig(command="/bin/cat"))
        with self.assertLogs("clibridge.pty", level="WARNING"):
            pm.resize(100, 40)
        self.assertEqual(pm.size, (80, 24))

    def test_spawn_failure_enters_error_state(self) -> None:
        from clibridge.kernel.errors import SpawnFailure

        pm = pty_runner.ProcessManager(pty_runner.PtyConfig(command="/nonexistent/clibridge-test-binary"))
        errors = []
        pm.error.subscribe(errors.append)
        with self.assertLogs("clibridge.pty", level="ERROR"):
            with self.assertRaises(SpawnFailure) as cm:
                pm.spawn()
        self.assertEqual(cm.exception.code, "spawn_failed")
        self.assertEqual(pm.state, "error")
        self.assertEqual(pm.metrics()["errors"], 1)
        self.assertEqual(len(errors), 1)

    def test_echo_roundtrip_and_kill(self) -> None:
        from clibridge.kernel.errors import AlreadyTerminated

        pm = pty_runner.ProcessManager(pty_runner.PtyConfig(command="/bin/cat", name="cat"))
        chunks = []
        states = []
        lock = threading.Lock()

        def _on_output(text: str) -> None:
            with lock:
                chunks.append(text)

        pm.output.subscribe(_on_output)
        pm.state_change.subscribe(lambda ev: states.append(ev["state"]))
        pm.spawn()
        try:
            self.assertTrue(pm.is_alive())
            self.assertIsNotNone(pm.pid)
            pm.write("hello\n")

            def _seen() -> bool:
                with lock:
                    return "hello" in "".join(chunks)

            self.assertTrue(_wait_for(_seen))
            self.assertTrue(_wait_for(lambda: pm.state == "waiting"))
            self.assertEqual(states[:2], ["processing", "waiting"])

            m = pm.metrics()
            self.assertEqual(m["commands"], 1)
            self.assertEqual(m["bytes_written"], 6)
            self.assertGreater(m["bytes_read"], 0)
            self.assertIn("hello", pm.recent_output(10))

            pm.resize(100, 30)
            self.assertEqual(pm.size, (100, 30))
            pm.mark_ready()
            self.assertEqual(pm.state, "ready")
        finally:
            pm.kill()
            pm.join(5.0)

        self.assertEqual(pm.state, "terminated")
        self.assertFalse(pm.is_alive())
        self.assertEqual(pm.output.listener_count(), 0)
        self.assertIsNotNone(pm.metrics()["end_time"])
        with self.assertRaises(AlreadyTerminated):
            pm.write("late\n")

    def test_exit_code_is_reported(self) -> None:
        pm = pty_runner.ProcessManager(pty_runner.PtyConfig(command="/bin/sh", args=["-c", "exit 3"]))
        done = threading.Event()
        info = {}

        def _on_exit(ev: dict) -> None:
            info.update(ev)
            done.set()

        pm.terminated.subscribe(_on_exit)
        pm.spawn()
        self.assertTrue(done.wait(5.0))
        pm.join(5.0)
        self.assertEqual(info.get("exit_code"), 3)
        self.assertEqual(pm.state, "terminated")

    def test_rolling_buffer_keeps_recent_bytes_only(self) -> None:
        pm = pty_runner.ProcessManager(
            pty_runner.PtyConfig(
                command="/bin/sh",
                args=["-c", "i=0; while [ $i -lt 40 ]; do echo line$i; i=$((i+1)); done"],
                max_buffer_bytes=64,
            )
        )
        done = threading.Event()
        pm.terminated.subscribe(lambda _ev: done.set())
        pm.spawn()
        self.assertTrue(done.wait(5.0))
        pm.join(5.0)
        data = pm.recent_bytes()
        self.assertLessEqual(len(data), 64)
        self.assertIn(b"line39", data)
        self.assertNotIn(b"line1\r", data)


if __name__ == "__main__":
    unittest.main()
