"""Confidence-gated scan escalation.

Before paying for an exhaustive (tier-3) scan, a caller asks the gate
whether cheap context already answers the lookup:

- Tier 1: the recent-activity window (last N records of session activity)
- Tier 2: the topic index (a keyed map of known topics and their keywords)

Each tier scores by case-insensitive substring matching of the lookup
keywords against every text field of every entry. The blended confidence
decides sufficiency. This is admission control, not ranking: the weights
and threshold are fixed policy constants, overridable through
``WaypointConfig``.

The gate never touches the filesystem and never calls the expensive scan
itself; loaders for the two cheap sources live at the bottom of this
module, and what to do with an insufficient verdict is the caller's call.
"""

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from waypoint.checkpoint import Checkpoint
from waypoint.config import WaypointConfig, get_waypoint_config
from waypoint.errors import CorruptIndex, InvalidArgument, StoreIOError

logger = logging.getLogger(__name__)

# Policy constants
TIER1_WEIGHT = 0.6
TIER2_WEIGHT = 0.4
SUFFICIENCY_THRESHOLD = 0.70
MAX_EVIDENCE = 5

SOURCE_RECENT = "recent"
SOURCE_TOPIC = "topic"

# Fields tried, in order, for an entry's identifier
_IDENTIFIER_FIELDS = ("id", "identifier", "topic", "name")

# Maximum JSONL line length read from the recent window
MAX_LINE_LENGTH = 1_000_000


@dataclass(frozen=True)
class IndexEntry:
    """One recent-activity record or topic index entry."""

    identifier: str
    texts: tuple[str, ...]  # All searchable text fields

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], fallback_id: str) -> "IndexEntry":
        """Build an entry from a plain record.

        Every string value, and every string inside a list/tuple value,
        is searchable.
        """
        identifier = fallback_id
        for name in _IDENTIFIER_FIELDS:
            value = data.get(name)
            if isinstance(value, str) and value:
                identifier = value
                break

        texts: list[str] = []
        for value in data.values():
            if isinstance(value, str):
                texts.append(value)
            elif isinstance(value, (list, tuple)):
                texts.extend(v for v in value if isinstance(v, str))
        return cls(identifier=identifier, texts=tuple(texts))


@dataclass(frozen=True)
class Evidence:
    """A cheap-source entry that supports the lookup."""

    source: str  # "recent" | "topic"
    identifier: str
    relevance: float  # matched / total keywords, in [0, 1]
    matched_keywords: tuple[str, ...]


@dataclass(frozen=True)
class ScanVerdict:
    """Whether cheap context is sufficient to skip the full scan."""

    sufficient: bool
    confidence: float
    matched_patterns: tuple[Evidence, ...]
    tier1_relevance: float
    tier2_relevance: float

    @property
    def needs_full_scan(self) -> bool:
        return not self.sufficient


RecentWindow = Sequence[IndexEntry | Mapping[str, Any]] | None
TopicIndex = Mapping[str, Any] | Sequence[IndexEntry | Mapping[str, Any]] | None


def normalize_keywords(keywords: Iterable[str]) -> tuple[str, ...]:
    """Lower-case, strip, drop blanks and duplicates; keep first-seen order."""
    if isinstance(keywords, str):
        keywords = [keywords]
    seen: dict[str, None] = {}
    for keyword in keywords:
        if not isinstance(keyword, str):
            raise InvalidArgument(f"Keywords must be strings, got {type(keyword).__name__}")
        normalized = keyword.strip().lower()
        if normalized:
            seen.setdefault(normalized, None)
    return tuple(seen)


def _coerce_entry(entry: IndexEntry | Mapping[str, Any], fallback_id: str) -> IndexEntry | None:
    if isinstance(entry, IndexEntry):
        return entry
    if isinstance(entry, Mapping):
        return IndexEntry.from_mapping(entry, fallback_id)
    if isinstance(entry, str):
        return IndexEntry(identifier=fallback_id, texts=(entry,))
    logger.debug(f"Ignoring unsupported index entry {fallback_id}: {type(entry).__name__}")
    return None


def _topic_entries(topic_index: TopicIndex) -> list[IndexEntry]:
    if topic_index is None:
        return []
    entries = []
    if isinstance(topic_index, Mapping):
        for name, value in topic_index.items():
            name = str(name)
            if isinstance(value, (list, tuple)):
                value = {"keywords": list(value)}
            entry = _coerce_entry(value, name) if value is not None else None
            # The key is the identifier and is itself searchable
            texts = (name, *entry.texts) if entry is not None else (name,)
            entries.append(IndexEntry(identifier=name, texts=texts))
        return entries
    for i, value in enumerate(topic_index):
        entry = _coerce_entry(value, f"{SOURCE_TOPIC}-{i}")
        if entry is not None:
            entries.append(entry)
    return entries


def _recent_entries(recent_window: RecentWindow) -> list[IndexEntry]:
    if not recent_window:
        return []
    entries = []
    for i, value in enumerate(recent_window):
        entry = _coerce_entry(value, f"{SOURCE_RECENT}-{i}")
        if entry is not None:
            entries.append(entry)
    return entries


def score_entries(
    keywords: tuple[str, ...],
    entries: Sequence[IndexEntry],
    source: str,
) -> tuple[float, list[Evidence]]:
    """Accumulate per-entry match ratios for one tier.

    Returns the clamped tier relevance and the evidence for every entry
    with at least one match, in input order.
    """
    total = 0.0
    evidence: list[Evidence] = []
    for entry in entries:
        haystacks = [t.lower() for t in entry.texts]
        matched = tuple(k for k in keywords if any(k in h for h in haystacks))
        if not matched:
            continue
        relevance = len(matched) / len(keywords)
        total += relevance
        evidence.append(
            Evidence(
                source=source,
                identifier=entry.identifier,
                relevance=relevance,
                matched_keywords=matched,
            )
        )
    return min(total, 1.0), evidence


class ScanGate:
    """Decides whether a lookup can skip the expensive full scan."""

    def __init__(
        self,
        tier1_weight: float = TIER1_WEIGHT,
        tier2_weight: float = TIER2_WEIGHT,
        threshold: float = SUFFICIENCY_THRESHOLD,
        max_evidence: int = MAX_EVIDENCE,
    ) -> None:
        if tier1_weight < 0 or tier2_weight < 0:
            raise InvalidArgument("Gate weights must be non-negative")
        if not 0.0 <= threshold <= 1.0:
            raise InvalidArgument("Gate threshold must be within [0, 1]")
        if max_evidence < 1:
            raise InvalidArgument("max_evidence must be at least 1")
        self.tier1_weight = tier1_weight
        self.tier2_weight = tier2_weight
        self.threshold = threshold
        self.max_evidence = max_evidence

    @classmethod
    def from_config(cls, config: WaypointConfig | None = None) -> "ScanGate":
        config = config or get_waypoint_config()
        return cls(
            tier1_weight=config.tier1_weight,
            tier2_weight=config.tier2_weight,
            threshold=config.sufficiency_threshold,
            max_evidence=config.max_evidence,
        )

    def evaluate(
        self,
        keywords: Iterable[str],
        recent_window: RecentWindow = None,
        topic_index: TopicIndex = None,
    ) -> ScanVerdict:
        """Score the cheap sources against the lookup keywords.

        An empty recent window or a missing topic index lowers the score;
        neither is an error.

        Raises:
            InvalidArgument: no usable keywords
        """
        normalized = normalize_keywords(keywords)
        if not normalized:
            raise InvalidArgument("At least one non-blank keyword is required")

        tier1, recent_evidence = score_entries(
            normalized, _recent_entries(recent_window), SOURCE_RECENT
        )
        tier2, topic_evidence = score_entries(
            normalized, _topic_entries(topic_index), SOURCE_TOPIC
        )

        confidence = self.tier1_weight * tier1 + self.tier2_weight * tier2
        sufficient = confidence >= self.threshold

        # Stable sort keeps recent before topic, then input order, on ties
        evidence = sorted(recent_evidence + topic_evidence, key=lambda e: -e.relevance)

        logger.debug(
            f"Scan gate: tier1={tier1:.2f} tier2={tier2:.2f} "
            f"confidence={confidence:.2f} sufficient={sufficient}"
        )
        return ScanVerdict(
            sufficient=sufficient,
            confidence=confidence,
            matched_patterns=tuple(evidence[: self.max_evidence]),
            tier1_relevance=tier1,
            tier2_relevance=tier2,
        )


_default_gate = ScanGate()


def evaluate(
    keywords: Iterable[str],
    recent_window: RecentWindow = None,
    topic_index: TopicIndex = None,
) -> ScanVerdict:
    """Evaluate with the default policy constants."""
    return _default_gate.evaluate(keywords, recent_window, topic_index)


def format_verdict(verdict: ScanVerdict) -> str:
    """Render a verdict compactly for display or context injection."""
    decision = "sufficient" if verdict.sufficient else "full scan needed"
    lines = [
        f"confidence: {verdict.confidence:.2f} ({decision})",
        f"tiers: recent={verdict.tier1_relevance:.2f} topic={verdict.tier2_relevance:.2f}",
    ]
    if verdict.matched_patterns:
        n = len(verdict.matched_patterns)
        lines.append(f"evidence[{n}]{{source,id,relevance,keywords}}:")
        for e in verdict.matched_patterns:
            lines.append(
                f"  {e.source},{e.identifier},{e.relevance:.2f},{'|'.join(e.matched_keywords)}"
            )
    return "\n".join(lines)


# ============================================================================
# Cheap source loaders
# ============================================================================


def load_topic_index(path: Path) -> Mapping[str, Any] | list | None:
    """Load a YAML topic index.

    Accepts either a top-level ``topics:`` key or a bare mapping/list.

    Returns:
        The topics, or None when the file does not exist

    Raises:
        StoreIOError: the file exists but cannot be read
        CorruptIndex: the file is not a valid topic index
    """
    path = Path(path)
    if not path.exists():
        logger.debug(f"No topic index at {path}")
        return None

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise StoreIOError(
            f"Failed to read topic index {path}: {e}", context={"path": str(path)}
        ) from e

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise CorruptIndex(
            f"Invalid YAML in topic index {path}: {e}", context={"path": str(path)}
        ) from e

    if data is None:
        return {}
    if isinstance(data, dict) and "topics" in data:
        data = data["topics"] or {}
    if not isinstance(data, (dict, list)):
        raise CorruptIndex(
            f"Topic index {path} must be a mapping or list", context={"path": str(path)}
        )
    return data


def load_recent_window(path: Path, limit: int = 20) -> list[dict[str, Any]]:
    """Load the last ``limit`` records of a JSONL recent-activity file.

    Returns [] when the file does not exist. Lines that are too long or
    not JSON objects are skipped.

    Raises:
        StoreIOError: the file exists but cannot be read
    """
    path = Path(path)
    if not path.exists():
        return []

    try:
        with open(path, encoding="utf-8") as f:
            lines = f.readlines()
    except OSError as e:
        raise StoreIOError(
            f"Failed to read recent window {path}: {e}", context={"path": str(path)}
        ) from e

    records: list[dict[str, Any]] = []
    for line_no, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            continue
        if len(line) > MAX_LINE_LENGTH:
            logger.debug(f"Skipping oversized line {line_no} in {path}")
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping malformed line {line_no} in {path}")
            continue
        if isinstance(data, dict):
            records.append(data)

    return records[-limit:] if limit > 0 else []


def recent_window_from_checkpoint(checkpoint: Checkpoint) -> list[IndexEntry]:
    """Derive recent-window entries from a checkpoint's task state."""
    task = checkpoint.task_state
    recovery = checkpoint.recovery_metadata
    entries: list[IndexEntry] = []

    if task.current_task:
        entries.append(IndexEntry(identifier="current-task", texts=(task.current_task,)))
    for i, decision in enumerate(task.key_decisions):
        entries.append(IndexEntry(identifier=f"decision-{i}", texts=(decision,)))
    for i, item in enumerate(task.todo_list):
        entries.append(IndexEntry(identifier=f"todo-{i}", texts=(item,)))
    if recovery.context_summary:
        entries.append(IndexEntry(identifier="summary", texts=(recovery.context_summary,)))

    return entries
