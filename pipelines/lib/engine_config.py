import os
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Pattern, Tuple

from pipelines.lib.query_signals import (
    DURATION_OVER_RE,
    NAME_CONTAINS_RE,
    NAME_STARTS_WITH_RE,
    PREFERRED_PHASE_RE,
    SKILL_MENTION_RE,
)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


REQUIRED_COLUMNS: Mapping[str, Tuple[str, ...]] = MappingProxyType(
    {
        "clients": ("ClientID", "ClientName", "PriorityLevel", "RequestedTaskIDs", "GroupTag", "AttributesJSON"),
        "workers": (
            "WorkerID",
            "WorkerName",
            "Skills",
            "AvailableSlots",
            "MaxLoadPerPhase",
            "WorkerGroup",
            "QualificationLevel",
        ),
        "tasks": ("TaskID", "TaskName", "Category", "Duration", "RequiredSkills", "PreferredPhases", "MaxConcurrent"),
    }
)

HEADER_NAMING_PATTERNS: Tuple[Tuple[Pattern[str], str], ...] = (
    (re.compile(r"^(client|customer).*id$", re.I), "ClientID"),
    (re.compile(r"^(client|customer).*name$", re.I), "ClientName"),
    (re.compile(r"^worker.*id$", re.I), "WorkerID"),
    (re.compile(r"^worker.*name$", re.I), "WorkerName"),
    (re.compile(r"^task.*id$", re.I), "TaskID"),
    (re.compile(r"^task.*name$", re.I), "TaskName"),
    (re.compile(r"^priority$", re.I), "PriorityLevel"),
    (re.compile(r"^skill", re.I), "Skills"),
    (re.compile(r"^duration$", re.I), "Duration"),
)

NAME_COLUMNS: Mapping[str, str] = MappingProxyType(
    {"clients": "ClientName", "workers": "WorkerName", "tasks": "TaskName"}
)


@dataclass(frozen=True)
class FallbackPattern:
    """A hand-authored instruction pattern that rebuilds a filter expression.

    ``column_hints`` are lower-case substrings that must all appear in the target
    column's name. ``template`` is formatted with ``handle``, ``column`` and
    ``value`` (already quoted for text values).
    """

    name: str
    pattern: Pattern[str]
    column_hints: Tuple[str, ...]
    template: str
    numeric: bool = False
    role: str = ""


FALLBACK_PATTERNS: Tuple[FallbackPattern, ...] = (
    FallbackPattern(
        name="name_starts_with",
        pattern=NAME_STARTS_WITH_RE,
        column_hints=("name",),
        template="String({handle}.{column} || '').toLowerCase().startsWith({value})",
        role="name",
    ),
    FallbackPattern(
        name="name_contains",
        pattern=NAME_CONTAINS_RE,
        column_hints=("name",),
        template="String({handle}.{column} || '').toLowerCase().includes({value})",
        role="name",
    ),
    FallbackPattern(
        name="skill_mention",
        pattern=SKILL_MENTION_RE,
        column_hints=("skill",),
        template="({handle}.{column} || []).some(s => String(s).toLowerCase().includes({value}))",
    ),
    FallbackPattern(
        name="duration_over",
        pattern=DURATION_OVER_RE,
        column_hints=("duration",),
        template="Number({handle}.{column}) > {value}",
        numeric=True,
    ),
    FallbackPattern(
        name="preferred_phase",
        pattern=PREFERRED_PHASE_RE,
        column_hints=("preferred", "phase"),
        template="({handle}.{column} || []).includes({value})",
        numeric=True,
    ),
)


@dataclass(frozen=True)
class EngineConfig:
    required_columns: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: REQUIRED_COLUMNS)
    header_patterns: Tuple[Tuple[Pattern[str], str], ...] = HEADER_NAMING_PATTERNS
    name_columns: Mapping[str, str] = field(default_factory=lambda: NAME_COLUMNS)
    fallback_patterns: Tuple[FallbackPattern, ...] = FALLBACK_PATTERNS
    accept_min_confidence: float = 0.5
    synthesis_min_score: float = 0.7
    exact_match_score: float = 1.0
    substring_match_score: float = 0.8
    pattern_match_score: float = 0.75
    max_expression_chars: int = 2000
    delete_preview_fields: int = 3

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            accept_min_confidence=_env_float("SCHEMA_ACCEPT_MIN_CONFIDENCE", 0.5),
            synthesis_min_score=_env_float("SCHEMA_SYNTHESIS_MIN_SCORE", 0.7),
        )

    def required_headers(self, file_type: str) -> Optional[Tuple[str, ...]]:
        return self.required_columns.get(str(file_type or "").strip().lower())


DEFAULT_CONFIG = EngineConfig()
