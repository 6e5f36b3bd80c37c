"""
Learning store: recurring failure patterns and per-kind notes.

Every gate failure is classified (see :mod:`autodispatch.knowledge_plane.failure_mining`)
and upserted as an :class:`~autodispatch.domain.models.ErrorPattern` keyed by
``(category, normalized message)``. Before each dispatch the store renders a guidance
block for the worker. Patterns are never deleted; the store persists as YAML.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Final, cast

import structlog
import yaml
from jinja2 import Environment, StrictUndefined

from autodispatch.constants import LEARNING_STORE_SCHEMA_VERSION
from autodispatch.domain.models import ErrorPattern, GateReason, Trend, WorkItem, utc_now
from autodispatch.knowledge_plane.failure_mining import (
    DEFAULT_RULES,
    ClassificationRule,
    classify_output,
)

DEFAULT_WINDOW_SECONDS: Final[float] = 24 * 60 * 60.0
DEFAULT_TREND_THRESHOLD: Final[int] = 3
DEFAULT_TOP_K: Final[int] = 3
_MAX_NOTES_PER_KIND: Final[int] = 50
_MAX_HISTORY_PER_ITEM: Final[int] = 10

_CONTEXT_TEMPLATE: Final[str] = """\
{% if patterns_by_category %}
## Known failure patterns
{% for category, patterns in patterns_by_category %}
### {{ category }}
{% for pattern in patterns %}
- {{ pattern.message }} (seen {{ pattern.occurrences }}x, {{ pattern.trend }}): \
{{ pattern.recommended_fix }}
{% endfor %}
{% endfor %}
{% endif %}
{% if notes %}
## Notes for {{ kind }} work
{% for note in notes %}
- {{ note }}
{% endfor %}
{% endif %}
{% if attempt > 1 %}
## Failed before
This is attempt {{ attempt }}; {{ attempt - 1 }} earlier attempt(s) did not pass validation.
{% for entry in history %}
- {{ entry }}
{% endfor %}
Address these failures before adding new behavior.
{% endif %}
"""


class LearningStoreError(RuntimeError):
    """Raised when the learning store cannot be loaded or saved."""


class LearningStore:
    """Append-only pattern memory with trend tracking and YAML persistence."""

    def __init__(
        self,
        path: str | Path | None = None,
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        trend_threshold: int = DEFAULT_TREND_THRESHOLD,
        top_k: int = DEFAULT_TOP_K,
        rules: tuple[ClassificationRule, ...] = DEFAULT_RULES,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if trend_threshold < 1:
            raise ValueError("trend_threshold must be >= 1")
        if top_k < 1:
            raise ValueError("top_k must be >= 1")
        self._path = Path(path).expanduser().resolve() if path is not None else None
        self._window = timedelta(seconds=window_seconds)
        self._trend_threshold = trend_threshold
        self._top_k = top_k
        self._rules = rules
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._guard = threading.Lock()
        self._patterns: dict[tuple[str, str], ErrorPattern] = {}
        self._notes: dict[str, list[str]] = defaultdict(list)
        self._history: dict[str, list[str]] = defaultdict(list)
        self._environment = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self._template = self._environment.from_string(_CONTEXT_TEMPLATE)

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def patterns(self) -> tuple[ErrorPattern, ...]:
        with self._guard:
            return tuple(self._patterns[key] for key in sorted(self._patterns))

    def notes(self, kind: str) -> tuple[str, ...]:
        with self._guard:
            return tuple(self._notes.get(kind, ()))

    def history(self, item_id: str) -> tuple[str, ...]:
        with self._guard:
            return tuple(self._history.get(item_id, ()))

    def record_failure(
        self,
        item: WorkItem,
        gate_reason: GateReason | str,
        raw_output: str,
        *,
        kind: str | None = None,
    ) -> tuple[ErrorPattern, ...]:
        """Classify ``raw_output`` and upsert one pattern per match."""

        reason = GateReason(gate_reason)
        seen_kind = kind if kind is not None else item.kind.value
        now = self._clock()
        matches = classify_output(raw_output, reason, rules=self._rules)
        updated: list[ErrorPattern] = []
        with self._guard:
            for match in matches:
                key = (match.category.value, match.message)
                existing = self._patterns.get(key)
                if existing is None:
                    pattern = ErrorPattern(
                        category=match.category.value,
                        message=match.message,
                        recommended_fix=match.recommended_fix,
                        occurrences=1,
                        first_seen=now,
                        last_seen=now,
                        recent=(now,),
                        kinds=(seen_kind,),
                    )
                else:
                    pattern = ErrorPattern(
                        category=existing.category,
                        message=existing.message,
                        recommended_fix=existing.recommended_fix,
                        occurrences=existing.occurrences + 1,
                        first_seen=existing.first_seen,
                        last_seen=max(now, existing.last_seen),
                        recent=(*existing.recent, now),
                        kinds=(*existing.kinds, seen_kind),
                    )
                pattern = self._with_trend(pattern, now)
                self._patterns[key] = pattern
                updated.append(pattern)

            summary = f"attempt {item.attempt}: {reason.value}"
            if matches:
                summary = f"{summary} ({matches[0].category.value}: {matches[0].message})"
            history = self._history[item.id]
            history.append(summary)
            del history[:-_MAX_HISTORY_PER_ITEM]

        for pattern in updated:
            self._logger.info(
                "failure_pattern_recorded",
                item_id=item.id,
                gate_reason=reason.value,
                category=pattern.category,
                occurrences=pattern.occurrences,
                trend=pattern.trend.value,
            )
        return tuple(updated)

    def add_note(self, kind: str, text: str) -> None:
        note = text.strip()
        if not kind.strip() or not note:
            raise ValueError("kind and text must be non-empty")
        with self._guard:
            notes = self._notes[kind]
            if note in notes:
                return
            notes.append(note)
            del notes[:-_MAX_NOTES_PER_KIND]

    def record_recovery(self, item: WorkItem, *, kind: str | None = None) -> str | None:
        """Leave a note for ``kind`` when ``item`` closed after failing earlier.

        Returns the note, or ``None`` when the item has no failure history.
        """

        history = self.history(item.id)
        if not history:
            return None
        seen_kind = kind if kind is not None else item.kind.value
        note = f"{item.title}: passed on attempt {item.attempt} after {history[-1]}"
        self.add_note(seen_kind, note)
        self._logger.info("recovery_noted", item_id=item.id, kind=seen_kind, attempt=item.attempt)
        return note

    def top_patterns(self, kind: str | None = None) -> dict[str, tuple[ErrorPattern, ...]]:
        """Top-K patterns per category by occurrence; ties go to patterns seen on ``kind``."""

        now = self._clock()
        with self._guard:
            for key, pattern in list(self._patterns.items()):
                self._patterns[key] = self._with_trend(pattern, now)
            by_category: dict[str, list[ErrorPattern]] = defaultdict(list)
            for pattern in self._patterns.values():
                by_category[pattern.category].append(pattern)

        ranked: dict[str, tuple[ErrorPattern, ...]] = {}
        for category in sorted(by_category):
            ordered = sorted(
                by_category[category],
                key=lambda pattern: (
                    -pattern.occurrences,
                    0 if kind is not None and kind in pattern.kinds else 1,
                    pattern.message,
                ),
            )
            ranked[category] = tuple(ordered[: self._top_k])
        return ranked

    def build_context(self, item_kind: str, attempt: int, *, item_id: str | None = None) -> str:
        """Render the guidance block handed to the next worker of ``item_kind``."""

        if attempt < 1:
            raise ValueError("attempt must be >= 1")
        top = self.top_patterns(item_kind)
        rendered = self._template.render(
            patterns_by_category=[(category, patterns) for category, patterns in top.items()],
            kind=item_kind,
            notes=self.notes(item_kind),
            attempt=attempt,
            history=self.history(item_id) if item_id is not None else (),
        )
        return rendered.strip() + "\n" if rendered.strip() else ""

    def save(self) -> Path | None:
        """Write the store atomically; returns the path written (``None`` when in-memory)."""

        if self._path is None:
            return None
        with self._guard:
            payload = {
                "schema_version": LEARNING_STORE_SCHEMA_VERSION,
                "patterns": [self._patterns[key].to_dict() for key in sorted(self._patterns)],
                "notes": {kind: list(self._notes[kind]) for kind in sorted(self._notes)},
                "history": {item: list(self._history[item]) for item in sorted(self._history)},
            }
        rendered = yaml.safe_dump(
            payload,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=False,
            width=120,
        )
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
            tmp_path.write_text(rendered, encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            raise LearningStoreError(f"failed to write learning store {self._path}: {exc}") from exc
        self._logger.debug(
            "learning_store_saved", path=str(self._path), patterns=len(payload["patterns"])
        )
        return self._path

    def load(self) -> int:
        """Merge the persisted store into memory; returns the number of patterns loaded."""

        if self._path is None or not self._path.exists():
            return 0
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                loaded = cast("object", yaml.safe_load(handle))
        except yaml.YAMLError as exc:
            raise LearningStoreError(f"{self._path}: invalid YAML ({exc})") from exc
        except OSError as exc:
            raise LearningStoreError(f"failed to read learning store {self._path}: {exc}") from exc

        if loaded is None:
            return 0
        if not isinstance(loaded, Mapping):
            raise LearningStoreError(
                f"{self._path}: expected top-level mapping, got {type(loaded).__name__}"
            )
        version = loaded.get("schema_version")
        if version != LEARNING_STORE_SCHEMA_VERSION:
            raise LearningStoreError(
                f"{self._path}: unsupported schema_version {version!r}; "
                f"expected {LEARNING_STORE_SCHEMA_VERSION}"
            )
        try:
            patterns = [
                ErrorPattern.from_dict(entry) for entry in _as_list(loaded.get("patterns"))
            ]
            notes = _as_str_lists(loaded.get("notes"))
            history = _as_str_lists(loaded.get("history"))
        except (TypeError, ValueError) as exc:
            raise LearningStoreError(f"{self._path}: invalid learning store entry: {exc}") from exc

        with self._guard:
            for pattern in patterns:
                existing = self._patterns.get(pattern.key)
                if existing is None or existing.occurrences < pattern.occurrences:
                    self._patterns[pattern.key] = pattern
            for kind, entries in notes.items():
                for entry in entries:
                    if entry not in self._notes[kind]:
                        self._notes[kind].append(entry)
            for item_id, entries in history.items():
                merged = self._history[item_id]
                merged[:0] = [entry for entry in entries if entry not in merged]
                del merged[:-_MAX_HISTORY_PER_ITEM]
        self._logger.debug("learning_store_loaded", path=str(self._path), patterns=len(patterns))
        return len(patterns)

    def _with_trend(self, pattern: ErrorPattern, now: datetime) -> ErrorPattern:
        cutoff = now - self._window
        recent = tuple(stamp for stamp in pattern.recent if stamp >= cutoff)
        if len(recent) >= self._trend_threshold:
            trend = Trend.INCREASING
        elif not recent:
            trend = Trend.DECREASING
        else:
            trend = Trend.STABLE
        if recent == pattern.recent and trend is pattern.trend:
            return pattern
        return ErrorPattern(
            category=pattern.category,
            message=pattern.message,
            recommended_fix=pattern.recommended_fix,
            occurrences=pattern.occurrences,
            first_seen=pattern.first_seen,
            last_seen=pattern.last_seen,
            trend=trend,
            recent=recent,
            kinds=pattern.kinds,
        )


def _as_list(value: object) -> list[Mapping[str, object]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"expected list, got {type(value).__name__}")
    for entry in value:
        if not isinstance(entry, Mapping):
            raise ValueError(f"expected mapping entries, got {type(entry).__name__}")
    return value


def _as_str_lists(value: object) -> dict[str, list[str]]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValueError(f"expected mapping, got {type(value).__name__}")
    parsed: dict[str, list[str]] = {}
    for key, entries in value.items():
        if not isinstance(entries, Iterable) or isinstance(entries, str):
            raise ValueError(f"{key}: expected a list of strings")
        parsed[str(key)] = [str(entry) for entry in entries]
    return parsed


__all__ = [
    "DEFAULT_TOP_K",
    "DEFAULT_TREND_THRESHOLD",
    "DEFAULT_WINDOW_SECONDS",
    "LearningStore",
    "LearningStoreError",
]
