"""Pattern catalogs used by the classifiers.

Two catalogs live here:

- generic state groups (ready / processing / complete / error), each with a
  priority and a confidence, evaluated highest priority first;
- readiness prompt sets keyed by agent kind, each with the amount of trailing
  output needed to recognise that CLI's prompt.

Patterns are matched against text with CRLF folded to LF and escape sequences
removed (see `normalize_for_matching`).
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Pattern, Union

from ..util.sanitize import strip_ansi

PatternLike = Union[str, Pattern[str]]


class AgentKind(str, Enum):
    CLAUDE = "claude"
    CHATGPT = "chatgpt"
    GEMINI = "gemini"
    OPENAI = "openai"
    SHELL = "shell"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Union[str, "AgentKind", None]) -> Union["AgentKind", str]:
        """Known kinds become enum members; anything else stays an open custom name."""
        if isinstance(value, AgentKind):
            return value
        s = str(value or "").strip().lower()
        if not s:
            return cls.CUSTOM
        try:
            return cls(s)
        except ValueError:
            return s


def kind_name(kind: Union[str, AgentKind]) -> str:
    return kind.value if isinstance(kind, AgentKind) else str(kind)


def normalize_for_matching(text: str) -> str:
    return strip_ansi((text or "").replace("\r\n", "\n"))


def compile_patterns(patterns: Iterable[PatternLike], flags: int = re.MULTILINE) -> List[Pattern[str]]:
    out: List[Pattern[str]] = []
    for p in patterns:
        out.append(p if isinstance(p, re.Pattern) else re.compile(p, flags))
    return out


# ============================================================================
# Generic state groups
# ============================================================================


@dataclass
class StatePattern:
    name: str
    patterns: List[Pattern[str]]
    confidence: float
    priority: int


def default_state_patterns() -> List[StatePattern]:
    M = re.MULTILINE
    NC = re.IGNORECASE
    return [
        StatePattern(
            name="ready",
            confidence=0.9,
            priority=100,
            patterns=[
                re.compile(r"^[>❯$#%]\s*$", M),
                re.compile(r"^(gemini|claude|gpt|llama|chatgpt|openai)>\s*$", M | NC),
                re.compile(r"^assistant>\s*$", M | NC),
                re.compile(r"\n>>> $"),
                re.compile(r"\nAI\s*:\s*$"),
                re.compile(r"Enter your (prompt|question|command):", NC),
                re.compile(r"^\w+@[\w-].*[$#%]\s*$", M),
                re.compile(r"^➜.*$", M),
                re.compile(r"^[\w-]+\s+%\s*$", M),
                re.compile(r"^\[.*\]\s*[$#%]\s*$", M),
            ],
        ),
        StatePattern(
            name="processing",
            confidence=0.8,
            priority=80,
            patterns=[
                re.compile(r"^Thinking\.{2,}$", M | NC),
                re.compile(r"^Analyzing", M | NC),
                re.compile(r"^Generating", M | NC),
                re.compile(r"^Processing", M | NC),
                re.compile(r"^Please wait", M | NC),
                re.compile(r"\[.*%\]"),
            ],
        ),
        StatePattern(
            name="complete",
            confidence=0.85,
            priority=90,
            patterns=[
                re.compile(r"^Task completed?\.?$", M | NC),
                re.compile(r"\[(END OF RESPONSE|RESPONSE COMPLETE)\]", NC),
                re.compile(r"^(Done|Finished|Complete)\.?$", M | NC),
            ],
        ),
        StatePattern(
            name="error",
            confidence=0.95,
            priority=110,
            patterns=[
                re.compile(r"^(Error|ERROR):\s+", M | NC),
                re.compile(r"^Failed to\s+\w+", M | NC),
                re.compile(r"^Exception:\s+", M | NC),
                re.compile(r"Connection refused", NC),
                re.compile(r"command not found", NC),
                re.compile(r"Permission denied", NC),
                re.compile(r"No such file or directory", NC),
            ],
        ),
    ]


# ============================================================================
# Readiness prompt sets
# ============================================================================


@dataclass
class ReadinessPatternSet:
    kind: str
    name: str
    patterns: List[Pattern[str]] = field(default_factory=list)
    buffer_size: int = 1000


_GEMINI_PROMPT = r">\s+Type your message or @path/to/file\s*$"
_GEMINI_PROMPT_SHORT = r">\s+Type your message\s*$"


def _default_readiness_sets() -> List[ReadinessPatternSet]:
    NC = re.IGNORECASE
    return [
        ReadinessPatternSet(
            kind=AgentKind.CLAUDE.value,
            name="Claude CLI",
            buffer_size=500,
            patterns=compile_patterns([
                r">\s*$",
                r"Assistant:\s*$",
                r"Human:\s*$",
                r"claude>\s*$",
            ]),
        ),
        ReadinessPatternSet(
            kind=AgentKind.CHATGPT.value,
            name="ChatGPT CLI",
            buffer_size=500,
            patterns=compile_patterns([
                r"You:\s*$",
                r"User:\s*$",
                r"chatgpt>\s*$",
                r">>>\s*$",
                r"\?\s*$",
            ]),
        ),
        ReadinessPatternSet(
            kind=AgentKind.GEMINI.value,
            name="Gemini CLI",
            buffer_size=800,
            patterns=compile_patterns([
                _GEMINI_PROMPT,
                _GEMINI_PROMPT_SHORT,
                r"gemini>\s*$",
                r"Gemini:\s*$",
                r">\s*$",
                r"Input:\s*$",
                r"\$\s*$",
            ]),
        ),
        ReadinessPatternSet(
            kind=AgentKind.OPENAI.value,
            name="OpenAI CLI",
            buffer_size=500,
            patterns=compile_patterns([
                r"openai>\s*$",
                r"gpt>\s*$",
                r">\s*$",
                r"Input:\s*$",
                r"Query:\s*$",
            ]),
        ),
        ReadinessPatternSet(
            kind=AgentKind.CUSTOM.value,
            name="Custom AI",
            buffer_size=1000,
            patterns=compile_patterns([
                _GEMINI_PROMPT,
                _GEMINI_PROMPT_SHORT,
                r">\s*$",
                r"\$\s*$",
                r"#\s*$",
                r":\s*$",
                r"Input:\s*$",
            ]) + [
                re.compile(r"Ready\s*$", re.MULTILINE | NC),
                re.compile(r"\[READY\]", NC),
            ],
        ),
        ReadinessPatternSet(
            kind=AgentKind.SHELL.value,
            name="Shell",
            buffer_size=200,
            patterns=compile_patterns([
                r"\$\s*$",
                r"%\s*$",
                r"#\s*$",
                r">\s*$",
            ]),
        ),
    ]


class ReadinessCatalog:
    """Registry of readiness prompt sets keyed by agent kind.

    Lookups for unregistered kinds fall back to the `custom` set.
    """

    def __init__(self, sets: Optional[Iterable[ReadinessPatternSet]] = None) -> None:
        self._lock = threading.Lock()
        self._sets: Dict[str, ReadinessPatternSet] = {}
        for s in sets if sets is not None else _default_readiness_sets():
            self._sets[s.kind] = s

    def register(
        self,
        kind: Union[str, AgentKind],
        patterns: Iterable[PatternLike],
        *,
        buffer_size: int = 1000,
        name: str = "",
    ) -> ReadinessPatternSet:
        key = kind_name(AgentKind.parse(kind))
        entry = ReadinessPatternSet(
            kind=key,
            name=name or f"Custom {key}",
            patterns=compile_patterns(patterns),
            buffer_size=max(1, int(buffer_size)),
        )
        with self._lock:
            self._sets[key] = entry
        return entry

    def unregister(self, kind: Union[str, AgentKind]) -> None:
        key = kind_name(AgentKind.parse(kind))
        if key == AgentKind.CUSTOM.value:
            raise ValueError("the custom readiness set cannot be removed")
        with self._lock:
            self._sets.pop(key, None)

    def get(self, kind: Union[str, AgentKind]) -> ReadinessPatternSet:
        key = kind_name(AgentKind.parse(kind))
        with self._lock:
            found = self._sets.get(key)
            if found is not None:
                return found
            return self._sets[AgentKind.CUSTOM.value]

    def has(self, kind: Union[str, AgentKind]) -> bool:
        with self._lock:
            return kind_name(AgentKind.parse(kind)) in self._sets

    def kinds(self) -> List[str]:
        with self._lock:
            return list(self._sets)
