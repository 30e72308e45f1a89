"""Execution context capture for rule invocations.

Normalizes one invocation payload into an immutable ExecutionFacts record
and derives the pattern keys used to group statistics. Everything here is a
pure function of its input: no filesystem access, no clock reads beyond the
capture timestamp, and no exceptions escape. A payload that cannot be
understood yields a minimal record flagged as degraded so the rule can
always proceed.
"""

from __future__ import annotations

import hashlib
import platform
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, NamedTuple

from hooklearn.core.logging import get_logger

_logger = get_logger("learning.context")

# Keys under which hook payloads carry the target path and new content
_PATH_KEYS = ("file_path", "filePath", "path")
_CONTENT_KEYS = ("content", "new_string", "newString")

_BRANCH_PATTERNS = tuple(
    re.compile(p)
    for p in (
        r"\bif\s*\(",
        r"\belif\b",
        r"\bwhile\s*\(",
        r"\bfor\s*\(",
        r"\bswitch\s*\(",
        r"\bcase\s+",
        r"\bcatch\s*\(",
        r"\bexcept\b",
        r"&&",
        r"\|\|",
        r"\?",
    )
)

_CONFIG_NAMES = frozenset({
    "package.json", "tsconfig.json", "pyproject.toml", "setup.cfg",
    "dockerfile", "makefile", ".env", ".eslintrc", ".prettierrc",
})
_CONFIG_EXTENSIONS = frozenset({".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf"})
_COMPONENT_EXTENSIONS = frozenset({".jsx", ".tsx", ".vue", ".svelte"})
_SOURCE_EXTENSIONS = frozenset({
    ".py", ".js", ".ts", ".mjs", ".cjs", ".go", ".rs", ".java", ".rb",
    ".c", ".h", ".cpp", ".cs", ".php", ".sh", ".sql", ".css", ".html", ".md",
})


class PatternType(str, Enum):
    """Dimensions along which executions are grouped."""

    FILE_EXTENSION = "file_extension"
    DIRECTORY = "directory"
    FILE_TYPE = "file_type"
    DEPTH_BUCKET = "depth_bucket"
    CONTENT_SIZE_BUCKET = "content_size_bucket"
    TIME_OF_DAY = "time_of_day"
    EXECUTION_TIME_RANGE = "execution_time_range"
    COMPLEXITY_BUCKET = "complexity_bucket"


class PatternKey(NamedTuple):
    """Hashable identifier of one pattern: (pattern_type, value)."""

    pattern_type: str
    value: str

    def __str__(self) -> str:
        return f"{self.pattern_type}:{self.value}"


@dataclass(frozen=True)
class CodeComplexity:
    line_count: int = 0
    cyclomatic: int = 1
    nesting_depth: int = 0


@dataclass(frozen=True)
class ExecutionFacts:
    """Immutable facts about one rule invocation."""

    rule_name: str
    captured_at: datetime
    file_path: str | None = None
    file_extension: str | None = None
    file_type: str = "unknown"
    directory_depth: int = 0
    content_hash: str | None = None
    content_size: int = 0
    complexity: CodeComplexity = field(default_factory=CodeComplexity)
    hour_of_day: int = 0
    day_of_week: int = 0
    is_weekend: bool = False
    platform: str = ""
    python_version: str = ""
    metadata: Mapping[str, str] = field(default_factory=dict)
    degraded: bool = False
    """True when the payload could not be understood and only the minimal
    record (rule name and time) is reliable."""

    @property
    def fingerprint(self) -> str:
        """Stable hash of the attributes that make two invocations "similar"."""
        key = "|".join((self.rule_name, self.file_extension or "", self.file_type))
        return hashlib.sha256(key.encode()).hexdigest()[:16]


def content_fingerprint(content: str | bytes) -> str:
    """Stable 16-hex-character hash of content."""
    data = content.encode("utf-8", errors="replace") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()[:16]


def analyze_complexity(content: str) -> CodeComplexity:
    """Cheap, language-agnostic complexity estimate.

    Cyclomatic complexity is 1 plus the number of branch tokens; nesting
    depth is the deepest brace nesting.
    """
    cyclomatic = 1 + sum(len(p.findall(content)) for p in _BRANCH_PATTERNS)
    depth = max_depth = 0
    for char in content:
        if char == "{":
            depth += 1
            max_depth = max(max_depth, depth)
        elif char == "}":
            depth = max(0, depth - 1)
    return CodeComplexity(
        line_count=content.count("\n") + 1 if content else 0,
        cyclomatic=cyclomatic,
        nesting_depth=max_depth,
    )


def classify_file(file_path: str | None) -> str:
    """Classify a path as test, spec, config, index, component, source or unknown."""
    if not file_path:
        return "unknown"
    path = PurePosixPath(file_path.replace("\\", "/"))
    name = path.name.lower()
    suffix = path.suffix.lower()

    if ".spec." in name or name.endswith("_spec.rb"):
        return "spec"
    if (
        ".test." in name
        or name.startswith("test_")
        or name.endswith("_test.py")
        or name.endswith("_test.go")
        or any(part in ("tests", "__tests__") for part in path.parts)
    ):
        return "test"
    if name in _CONFIG_NAMES or suffix in _CONFIG_EXTENSIONS or ".config." in name:
        return "config"
    if path.stem.lower() in ("index", "__init__", "mod"):
        return "index"
    if suffix in _COMPONENT_EXTENSIONS or "components" in path.parts:
        return "component"
    if suffix in _SOURCE_EXTENSIONS:
        return "source"
    return "unknown"


def time_of_day_bucket(hour: int) -> str:
    if 5 <= hour < 12:
        return "morning"
    elif 12 <= hour < 17:
        return "afternoon"
    elif 17 <= hour < 21:
        return "evening"
    else:
        return "night"


def _first_present(payload: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = payload.get(key)
        if value:
            return value
    return None


def _as_mapping(payload: Any) -> Mapping[str, Any] | None:
    if isinstance(payload, Mapping):
        return payload
    if hasattr(payload, "__dict__") and not isinstance(payload, type):
        return vars(payload)
    return None


def _sanitize_metadata(raw: Any) -> dict[str, str]:
    if not isinstance(raw, Mapping):
        return {}
    return {
        str(k): str(v)[:200]
        for k, v in raw.items()
        if isinstance(v, str | int | float | bool)
    }


def capture_context(
    payload: Any,
    rule_name: str,
    *,
    metadata: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> ExecutionFacts:
    """Normalize an invocation payload into ExecutionFacts.

    Args:
        payload: The rule input. Mappings and plain objects are inspected for
            a target path (``file_path``/``filePath``/``path``), new content
            (``content``/``new_string``) and ``metadata``.
        rule_name: Name of the rule being invoked.
        metadata: Caller metadata merged over any payload metadata.
        now: Capture time override.

    Returns:
        The captured facts. Never raises: unusable input produces a
        minimal record with ``degraded=True``.
    """
    captured_at = now or datetime.now()
    minimal = ExecutionFacts(
        rule_name=rule_name,
        captured_at=captured_at,
        hour_of_day=captured_at.hour,
        day_of_week=captured_at.weekday(),
        is_weekend=captured_at.weekday() >= 5,
        platform=platform.system().lower(),
        python_version=platform.python_version(),
    )

    mapping = _as_mapping(payload)
    if mapping is None:
        _logger.debug("context_degraded", reason="unsupported_payload",
                      payload_type=type(payload).__name__)
        return replace(minimal, degraded=True)

    try:
        raw_path = _first_present(mapping, _PATH_KEYS)
        file_path = str(raw_path) if raw_path is not None else None
        extension = None
        depth = 0
        if file_path:
            posix = PurePosixPath(file_path.replace("\\", "/"))
            extension = posix.suffix.lower() or None
            depth = max(0, len(posix.parts) - 1)

        content = _first_present(mapping, _CONTENT_KEYS)
        if isinstance(content, bytes):
            content_text = content.decode("utf-8", errors="replace")
        elif content is None:
            content_text = None
        else:
            content_text = str(content)

        merged_metadata = _sanitize_metadata(mapping.get("metadata"))
        merged_metadata.update(_sanitize_metadata(metadata))

        return ExecutionFacts(
            rule_name=rule_name,
            captured_at=captured_at,
            file_path=file_path,
            file_extension=extension,
            file_type=classify_file(file_path),
            directory_depth=depth,
            content_hash=content_fingerprint(content_text) if content_text else None,
            content_size=len(content_text.encode("utf-8")) if content_text else 0,
            complexity=analyze_complexity(content_text) if content_text else CodeComplexity(),
            hour_of_day=minimal.hour_of_day,
            day_of_week=minimal.day_of_week,
            is_weekend=minimal.is_weekend,
            platform=minimal.platform,
            python_version=minimal.python_version,
            metadata=merged_metadata,
        )
    except (TypeError, ValueError, AttributeError) as e:
        _logger.debug("context_degraded", reason="malformed_payload", error=str(e))
        return replace(minimal, degraded=True)


def _depth_bucket(depth: int) -> str:
    if depth <= 1:
        return "shallow"
    if depth <= 3:
        return "medium"
    return "deep"


def _size_bucket(size: int) -> str:
    if size == 0:
        return "empty"
    if size < 1024:
        return "small"
    if size < 10 * 1024:
        return "medium"
    if size < 100 * 1024:
        return "large"
    return "huge"


def complexity_bucket(complexity: CodeComplexity) -> str:
    """McCabe-style band of the cyclomatic estimate."""
    if complexity.cyclomatic <= 5:
        return "simple"
    if complexity.cyclomatic <= 10:
        return "moderate"
    if complexity.cyclomatic <= 20:
        return "complex"
    return "very_complex"


def duration_bucket(duration_ms: float) -> str:
    if duration_ms < 100:
        return "fast"
    if duration_ms < 500:
        return "normal"
    if duration_ms < 2000:
        return "slow"
    return "very_slow"


def extract_patterns(facts: ExecutionFacts, duration_ms: float | None = None) -> list[PatternKey]:
    """Derive the pattern keys of one execution.

    Degraded records contribute only their time-based patterns.
    """
    patterns = [PatternKey(PatternType.TIME_OF_DAY.value, time_of_day_bucket(facts.hour_of_day))]
    if duration_ms is not None:
        patterns.append(
            PatternKey(PatternType.EXECUTION_TIME_RANGE.value, duration_bucket(duration_ms))
        )
    if facts.degraded:
        return patterns

    if facts.file_extension:
        patterns.append(PatternKey(PatternType.FILE_EXTENSION.value, facts.file_extension))
    if facts.file_path:
        parts = PurePosixPath(facts.file_path.replace("\\", "/")).parts[:-1]
        if parts:
            patterns.append(PatternKey(PatternType.DIRECTORY.value, "/".join(parts[:3])))
        patterns.append(
            PatternKey(PatternType.DEPTH_BUCKET.value, _depth_bucket(facts.directory_depth))
        )
    patterns.append(PatternKey(PatternType.FILE_TYPE.value, facts.file_type))
    if facts.content_hash is not None:
        patterns.append(
            PatternKey(PatternType.CONTENT_SIZE_BUCKET.value, _size_bucket(facts.content_size))
        )
        patterns.append(
            PatternKey(PatternType.COMPLEXITY_BUCKET.value, complexity_bucket(facts.complexity))
        )
    return patterns


__all__ = [
    "CodeComplexity",
    "ExecutionFacts",
    "PatternKey",
    "PatternType",
    "analyze_complexity",
    "capture_context",
    "classify_file",
    "complexity_bucket",
    "content_fingerprint",
    "duration_bucket",
    "extract_patterns",
    "time_of_day_bucket",
]
