from __future__ import annotations

import codecs
import fcntl
import logging
import os
import pty
import selectors
import signal
import struct
import subprocess
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import termios

from ..kernel.errors import AlreadyTerminated, InjectionFailure, NotInitialized, SpawnFailure
from ..kernel.events import EventChannel
from ..util.ring import RingBuffer

PTY_SUPPORTED = True

logger = logging.getLogger("clibridge.pty")

PtyState = Literal["initializing", "ready", "processing", "waiting", "error", "terminated"]

_WRITE_MAX_ATTEMPTS = 50  # ~5 seconds with 0.1s sleeps
_KILL_GRACE_SECONDS = 1.0


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _best_effort_killpg(pid: int, sig: int) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except OSError:
        try:
            os.kill(pid, sig)
        except OSError:
            pass


def _close_fd(fd: Optional[int]) -> None:
    if fd is None or fd < 0:
        return
    try:
        os.close(fd)
    except OSError:
        pass


@dataclass
class PtyConfig:
    command: str
    args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    cols: int = 80
    rows: int = 24
    max_buffer_bytes: int = 10_000
    name: str = ""


@dataclass
class PtyMetrics:
    start_time: float = field(default_factory=time.time)
    end_time: Optional[float] = None
    bytes_written: int = 0
    bytes_read: int = 0
    commands: int = 0
    errors: int = 0
    last_activity: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ProcessManager:
    """Own one pseudo-terminal backed child process.

    A reader thread drains the PTY master and publishes decoded text on
    `output` in the order the OS produced it. Only the most recent
    `max_buffer_bytes` of output are retained, for diagnostics.
    """

    def __init__(self, config: PtyConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._state: PtyState = "initializing"
        self._metrics = PtyMetrics()
        self._buffer: RingBuffer[bytes] = RingBuffer(config.max_buffer_bytes, b"")
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        self._proc: Optional[subprocess.Popen] = None
        self._master_fd: Optional[int] = None
        self._wake_r: Optional[int] = None
        self._wake_w: Optional[int] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._cols = int(config.cols or 80)
        self._rows = int(config.rows or 24)

        self.output: EventChannel[str] = EventChannel("output")
        self.state_change: EventChannel[dict] = EventChannel("state-change")
        self.error: EventChannel[BaseException] = EventChannel("error")
        self.terminated: EventChannel[dict] = EventChannel("terminated")

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def spawn(self) -> None:
        if self._proc is not None:
            raise SpawnFailure("process already spawned", details={"pid": self.pid})

        cmd = [str(self.config.command or "").strip()] + [str(a) for a in self.config.args]
        cwd = self.config.cwd or os.getcwd()

        proc_env = os.environ.copy()
        proc_env.update({k: v for k, v in self.config.env.items() if isinstance(k, str) and isinstance(v, str)})
        proc_env.setdefault("TERM", "xterm-256color")

        master_fd: Optional[int] = None
        slave_fd: Optional[int] = None
        try:
            if not cmd[0]:
                raise ValueError("empty command")
            if not Path(cwd).is_dir():
                raise FileNotFoundError(f"working directory does not exist: {cwd}")
            master_fd, slave_fd = pty.openpty()
            _set_winsize(master_fd, cols=self._cols, rows=self._rows)
            os.set_blocking(master_fd, False)

            def _preexec() -> None:
                os.setsid()
                try:
                    fcntl.ioctl(0, termios.TIOCSCTTY, 0)
                except OSError:
                    pass

            proc = subprocess.Popen(
                cmd,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=proc_env,
                close_fds=True,
                preexec_fn=_preexec,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            _close_fd(master_fd)
            _close_fd(slave_fd)
            with self._lock:
                self._metrics.errors += 1
            self._set_state("error")
            self.error.publish(e)
            logger.error("spawn failed: %s", e, extra={"agent_name": self.config.name, "op": "spawn"})
            raise SpawnFailure(
                f"failed to spawn {cmd[0] or '<empty>'}: {e}",
                details={"command": cmd, "cwd": cwd},
            ) from e
        _close_fd(slave_fd)

        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)

        with self._lock:
            self._proc = proc
            self._master_fd = master_fd
            self._running = True
            self._metrics.start_time = time.time()
            self._metrics.last_activity = self._metrics.start_time

        logger.info(
            "spawned pid=%s cmd=%s size=%sx%s",
            proc.pid,
            cmd,
            self._cols,
            self._rows,
            extra={"agent_name": self.config.name, "op": "spawn"},
        )
        self._thread = threading.Thread(
            target=self._loop,
            name=f"clibridge-pty:{self.config.name or proc.pid}",
            daemon=True,
        )
        self._thread.start()

    def _loop(self) -> None:
        master_fd = self._master_fd
        wake_r = self._wake_r
        assert master_fd is not None and wake_r is not None
        selector = selectors.DefaultSelector()
        selector.register(master_fd, selectors.EVENT_READ, data="pty")
        selector.register(wake_r, selectors.EVENT_READ, data="wake")
        try:
            while self._running:
                for key, _mask in selector.select(timeout=0.1):
                    if key.data == "wake":
                        self._running = False
                        break
                    if not self._on_pty_readable(master_fd):
                        self._running = False
                        break
                if self._proc is not None and self._proc.poll() is not None:
                    # Drain what the child wrote before exiting.
                    while self._on_pty_readable(master_fd):
                        pass
                    self._running = False
        finally:
            selector.close()
            self._finish()

    def _on_pty_readable(self, master_fd: int) -> bool:
        """Read one chunk; False once the PTY is closed."""
        try:
            chunk = os.read(master_fd, 65536)
        except BlockingIOError:
            return False if self._proc is not None and self._proc.poll() is not None else True
        except OSError as e:
            # EIO is how Linux reports the slave side closing.
            if e.errno != 5:
                self.mark_error(e)
            return False
        if not chunk:
            return False

        text = self._decoder.decode(chunk)
        with self._lock:
            self._buffer.append(chunk)
            self._metrics.bytes_read += len(chunk)
            self._metrics.last_activity = time.time()
            advance = self._state == "processing"
        if advance:
            self._set_state("waiting")
        if text:
            self.output.publish(text)
        return True

    def _finish(self) -> None:
        proc = self._proc
        exit_code: Optional[int] = None
        sig: Optional[int] = None
        if proc is not None:
            try:
                rc = proc.wait(timeout=_KILL_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                _best_effort_killpg(proc.pid, signal.SIGKILL)
                rc = proc.wait()
            if rc is not None and rc < 0:
                sig = -rc
            else:
                exit_code = rc

        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.output.publish(tail)

        with self._lock:
            master_fd, self._master_fd = self._master_fd, None
            wake_r, self._wake_r = self._wake_r, None
            wake_w, self._wake_w = self._wake_w, None
            self._metrics.end_time = time.time()
        _close_fd(master_fd)
        _close_fd(wake_r)
        _close_fd(wake_w)

        self._set_state("terminated")
        logger.info(
            "terminated exit_code=%s signal=%s",
            exit_code,
            sig,
            extra={"agent_name": self.config.name, "op": "exit"},
        )
        self.terminated.publish({"exit_code": exit_code, "signal": sig})
        self.output.clear()

    def kill(self, sig: int = signal.SIGTERM) -> None:
        proc = self._proc
        if proc is None:
            return
        if proc.poll() is None:
            _best_effort_killpg(proc.pid, sig)
            deadline = time.time() + _KILL_GRACE_SECONDS
            while time.time() < deadline and proc.poll() is None:
                time.sleep(0.02)
            if proc.poll() is None:
                _best_effort_killpg(proc.pid, signal.SIGKILL)
        # Under the lock so the reader cannot close (and the OS reuse) the fd.
        with self._lock:
            if self._wake_w is not None:
                try:
                    os.write(self._wake_w, b"x")
                except OSError:
                    pass
        self.output.clear()

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the reader thread to finish (after exit or kill)."""
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, text: str) -> None:
        if self._proc is None:
            raise NotInitialized("PTY not initialized")
        if self.state == "terminated":
            raise AlreadyTerminated("PTY terminated", details={"pid": self.pid})
        data = (text or "").encode("utf-8")
        if data:
            with self._write_lock:
                self._write_all(data)
        with self._lock:
            self._metrics.bytes_written += len(data)
            self._metrics.last_activity = time.time()
            is_command = ("\n" in text) or ("\r" in text)
            if is_command:
                self._metrics.commands += 1
        if is_command:
            self._set_state("processing")

    def _write_all(self, data: bytes) -> None:
        with self._lock:
            fd = self._master_fd
        if fd is None:
            raise AlreadyTerminated("PTY terminated", details={"pid": self.pid})
        remaining = data
        attempt = 0
        while remaining and attempt < _WRITE_MAX_ATTEMPTS:
            try:
                written = os.write(fd, remaining)
            except BlockingIOError:
                attempt += 1
                time.sleep(0.1)
                continue
            except OSError as e:
                with self._lock:
                    self._metrics.errors += 1
                raise InjectionFailure(f"write failed: {e}", details={"pid": self.pid}) from e
            if written <= 0:
                break
            remaining = remaining[written:]
            attempt = 0
        if remaining:
            with self._lock:
                self._metrics.errors += 1
            raise InjectionFailure(
                f"short write: {len(data) - len(remaining)}/{len(data)} bytes",
                details={"pid": self.pid},
            )

    def resize(self, cols: int, rows: int) -> None:
        if cols <= 0 or rows <= 0:
            return
        with self._lock:
            fd = self._master_fd
        if self._proc is None or fd is None:
            logger.warning("resize called before spawn", extra={"agent_name": self.config.name, "op": "resize"})
            return
        self._cols, self._rows = int(cols), int(rows)
        _set_winsize(fd, cols=self._cols, rows=self._rows)
        _best_effort_killpg(self.pid, signal.SIGWINCH)

    # ------------------------------------------------------------------
    # state
    # ------------------------------------------------------------------

    def _set_state(self, next_state: PtyState) -> None:
        with self._lock:
            previous = self._state
            if previous == next_state or previous == "terminated":
                return
            self._state = next_state
        self.state_change.publish({"state": next_state, "previous": previous})

    def mark_ready(self) -> None:
        self._set_state("ready")

    def mark_error(self, exc: BaseException) -> None:
        with self._lock:
            self._metrics.errors += 1
        self._set_state("error")
        self.error.publish(exc)

    @property
    def state(self) -> PtyState:
        with self._lock:
            return self._state

    @property
    def pid(self) -> Optional[int]:
        proc = self._proc
        return int(proc.pid) if proc is not None else None

    @property
    def size(self) -> tuple[int, int]:
        return (self._cols, self._rows)

    def is_alive(self) -> bool:
        proc = self._proc
        return proc is not None and proc.poll() is None and self.state != "terminated"

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            return self._metrics.to_dict()

    def recent_bytes(self, max_bytes: int = 0) -> bytes:
        with self._lock:
            return self._buffer.tail(max_bytes)

    def recent_output(self, lines: int = 100) -> str:
        """Tail of the rolling buffer split into lines (diagnostics only)."""
        text = self.recent_bytes().decode("utf-8", errors="replace")
        parts = text.split("\n")
        return "\n".join(parts[-max(1, int(lines)):])
