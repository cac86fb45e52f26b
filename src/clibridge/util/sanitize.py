"""Terminal output sanitizing for display surfaces.

The classifiers consume raw PTY text; this module is only applied where output
leaves the process (CLI streaming, diagnostics read-back).
"""
from __future__ import annotations

import re
from collections import deque
from typing import Deque

CLEAR_SCREEN_MARKER = "\x1b[CLEAR_SCREEN]"

_SGR = re.compile(r"\x1b\[[0-9;]*m")
_ANY_CSI = re.compile(r"\x1b\[[0-9;?]*[A-Za-z@`~]")
_CURSOR_CONTROL = re.compile(r"\x1b\[[0-9;]*[HfABCDEFGSTsu]")
_CLEAR_SCREEN = re.compile(r"\x1b\[[0-9]*[JK]")
# OSC: ESC ] ... BEL  or  ESC ] ... ESC \
_OSC = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")
_PRIVATE_MODE = re.compile(r"\x1b\[\?[0-9;]*[hl]")
_ZSH_PARTIAL_LINE = re.compile(r"\x1b\[1m\x1b\[7m%\x1b\[27m\x1b\[1m\x1b\[0m\s*")
_BACKSPACE_PAIR = re.compile(r"[^\x08]\x08")
_C0_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# Sequences whose ESC survives control escaping.
_KEEP = re.compile(r"\x1b\[[0-9;]*m|\x1b\[CLEAR_SCREEN\]")

_SAFE_COPY_LIMIT = 50_000


def strip_ansi(text: str) -> str:
    return _ANY_CSI.sub("", _OSC.sub("", text or ""))


def _escape_control(ch: re.Match[str]) -> str:
    return "\\x%02x" % ord(ch.group(0))


def _escape_controls(text: str) -> str:
    parts = _KEEP.split(text)
    kept = _KEEP.findall(text)
    out = [_C0_CONTROL.sub(_escape_control, parts[0])]
    for seq, part in zip(kept, parts[1:]):
        out.append(seq)
        out.append(_C0_CONTROL.sub(_escape_control, part))
    return "".join(out)


class OutputSanitizer:
    def __init__(
        self,
        *,
        max_output_buffer: int = 100_000,
        max_line_length: int = 500,
        strip_ansi: bool = False,
        escape_control: bool = False,
    ) -> None:
        self.max_output_buffer = max(1, int(max_output_buffer))
        self.max_line_length = max(1, int(max_line_length))
        self.strip_ansi = bool(strip_ansi)
        self.escape_control = bool(escape_control)
        self._history: Deque[str] = deque()
        self._history_chars = 0

    def sanitize(self, text: str) -> str:
        t = text or ""

        t = _BACKSPACE_PAIR.sub("", t)
        t = _OSC.sub("", t)
        t = _PRIVATE_MODE.sub("", t)
        t = _ZSH_PARTIAL_LINE.sub("", t)
        t = _CURSOR_CONTROL.sub("", t)
        t = _CLEAR_SCREEN.sub(CLEAR_SCREEN_MARKER, t)

        if self.strip_ansi:
            t = _SGR.sub("", t)
        if self.escape_control:
            t = _escape_controls(t)

        t = "\n".join(self._clip(line) for line in t.split("\n"))
        self._remember(t)
        return t

    def _clip(self, line: str) -> str:
        if len(line) <= self.max_line_length:
            return line
        return line[: self.max_line_length] + "…"

    def _remember(self, text: str) -> None:
        if not text:
            return
        self._history.append(text)
        self._history_chars += len(text)
        while self._history_chars > self.max_output_buffer and self._history:
            dropped = self._history.popleft()
            self._history_chars -= len(dropped)

    def buffered_chars(self) -> int:
        return self._history_chars

    def safe_copy(self, *, strip_colors: bool = True) -> str:
        """Return the retained history cleaned for pasting into logs or prompts."""
        all_text = "".join(self._history).replace(CLEAR_SCREEN_MARKER, "")
        all_text = _OSC.sub("", all_text)
        all_text = _PRIVATE_MODE.sub("", all_text)
        if strip_colors:
            all_text = _ANY_CSI.sub("", all_text)
        all_text = _escape_controls(all_text)
        if len(all_text) > _SAFE_COPY_LIMIT:
            all_text = all_text[:_SAFE_COPY_LIMIT] + "\n[truncated]"
        return all_text

    def clear(self) -> None:
        self._history.clear()
        self._history_chars = 0
