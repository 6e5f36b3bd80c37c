"""Deterministic classification of gate failure output into error categories."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from autodispatch.domain.models import GateReason

_MAX_MATCHES_PER_OUTPUT: Final[int] = 20
_MAX_MESSAGE_LENGTH: Final[int] = 240


class FailureCategory(StrEnum):
    """Categories of recurring failures the learning store tracks."""

    MISSING_REFERENCE = "missing-reference"
    TYPE_MISMATCH = "type-mismatch"
    ASSERTION_FAILURE = "assertion-failure"
    UNDEFINED_SYMBOL = "undefined-symbol"
    SYNTAX_ERROR = "syntax-error"
    STYLE_VIOLATION = "style-violation"
    BROKEN_DOWNSTREAM = "broken-downstream"
    UNCLASSIFIED = "unclassified"


@dataclass(frozen=True, slots=True)
class ClassificationRule:
    category: FailureCategory
    pattern: re.Pattern[str]
    recommended_fix: str


@dataclass(frozen=True, slots=True)
class FailureMatch:
    """One categorized failure line, normalized for pattern keying."""

    category: FailureCategory
    message: str
    recommended_fix: str

    @property
    def signature(self) -> str:
        digest = hashlib.sha256(f"{self.category.value}\n{self.message}".encode())
        return digest.hexdigest()[:16]


# First matching rule wins for a line.
DEFAULT_RULES: Final[tuple[ClassificationRule, ...]] = (
    ClassificationRule(
        FailureCategory.SYNTAX_ERROR,
        re.compile(
            r"\b(SyntaxError|IndentationError|TabError|parse error|unexpected token)\b", re.I
        ),
        "Re-read the edited file end to end and fix unbalanced brackets or indentation.",
    ),
    ClassificationRule(
        FailureCategory.MISSING_REFERENCE,
        re.compile(
            r"\b(ModuleNotFoundError|ImportError|No module named|cannot find module"
            r"|FileNotFoundError|No such file or directory|unresolved import)\b",
            re.I,
        ),
        "Check import paths and that every referenced module or file exists on the branch.",
    ),
    ClassificationRule(
        FailureCategory.UNDEFINED_SYMBOL,
        re.compile(
            r"\b(NameError|AttributeError|is not defined|has no attribute"
            r"|undefined (name|variable|symbol)|cannot find name)\b",
            re.I,
        ),
        "Define or import the symbol before use and check spelling against its declaration.",
    ),
    ClassificationRule(
        FailureCategory.TYPE_MISMATCH,
        re.compile(
            r"\b(TypeError|incompatible type|Argument \d+ to|expected .+ got"
            r"|is not assignable to|unsupported operand)\b",
            re.I,
        ),
        "Align argument and return types with the callee signature.",
    ),
    ClassificationRule(
        FailureCategory.ASSERTION_FAILURE,
        re.compile(r"\b(AssertionError|assert .+|FAILED .+::|expected .+ but was)\b", re.I),
        "Compare the asserted expectation with the actual behavior before changing tests.",
    ),
    ClassificationRule(
        FailureCategory.STYLE_VIOLATION,
        re.compile(r"(\b[EFWCNDI]\d{3}\b|\bline too long\b|\bwould reformat\b|\blint\b)", re.I),
        "Run the formatter and linter locally before finishing.",
    ),
)

_BROKEN_DOWNSTREAM_FIX: Final[str] = (
    "A previously closed item regressed; run its tests before and after the change."
)
_UNCLASSIFIED_FIX: Final[str] = "Inspect the full gate output; no known pattern matched."

_PATH_RE = re.compile(r"(?:[A-Za-z]:)?(?:[\w.-]+[\\/])+[\w.-]+")
_HEX_RE = re.compile(r"\b0x[0-9a-fA-F]+\b")
_NUMBER_RE = re.compile(r"\b\d+\b")
_QUOTED_RE = re.compile(r"(['\"]).*?\1")
_SPACE_RE = re.compile(r"\s+")


def normalize_message(line: str) -> str:
    """Strip volatile fragments (paths, numbers, addresses, literals) from one line."""

    text = _PATH_RE.sub("<path>", line.strip())
    text = _HEX_RE.sub("<addr>", text)
    text = _QUOTED_RE.sub("<str>", text)
    text = _NUMBER_RE.sub("<n>", text)
    text = _SPACE_RE.sub(" ", text).strip()
    return text[:_MAX_MESSAGE_LENGTH]


def classify_output(
    raw_output: str,
    gate_reason: GateReason | str,
    *,
    rules: tuple[ClassificationRule, ...] = DEFAULT_RULES,
) -> tuple[FailureMatch, ...]:
    """Classify gate output into ordered, de-duplicated failure matches.

    ``regression`` failures always include a ``broken-downstream`` match; output with no
    matching line yields a single ``unclassified`` match.
    """

    reason = GateReason(gate_reason)
    matches: list[FailureMatch] = []
    seen: set[tuple[FailureCategory, str]] = set()

    def _add(match: FailureMatch) -> None:
        key = (match.category, match.message)
        if key in seen or len(matches) >= _MAX_MATCHES_PER_OUTPUT:
            return
        seen.add(key)
        matches.append(match)

    if reason is GateReason.REGRESSION:
        _add(
            FailureMatch(
                category=FailureCategory.BROKEN_DOWNSTREAM,
                message="previously closed work broke after this change",
                recommended_fix=_BROKEN_DOWNSTREAM_FIX,
            )
        )

    for line in raw_output.splitlines():
        if not line.strip():
            continue
        for rule in rules:
            if rule.pattern.search(line):
                _add(
                    FailureMatch(
                        category=rule.category,
                        message=normalize_message(line),
                        recommended_fix=rule.recommended_fix,
                    )
                )
                break

    if not matches:
        first_line = next(
            (line for line in raw_output.splitlines() if line.strip()), reason.value
        )
        _add(
            FailureMatch(
                category=FailureCategory.UNCLASSIFIED,
                message=normalize_message(first_line),
                recommended_fix=_UNCLASSIFIED_FIX,
            )
        )
    return tuple(matches)


__all__ = [
    "DEFAULT_RULES",
    "ClassificationRule",
    "FailureCategory",
    "FailureMatch",
    "classify_output",
    "normalize_message",
]
