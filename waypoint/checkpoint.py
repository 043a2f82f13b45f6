"""Checkpoint data model for Waypoint.

A checkpoint is the durable snapshot of in-progress session state: what is
being worked on, what has been decided, how much of the token budget is in
use, and how many times the session has been compacted.

For a given (date, topic slug) pair there is exactly one live checkpoint
file. Its name encodes the key, the time its current generation started and
its compact counter. The date is always the key's date, even when a later
generation starts after midnight, so lookups can glob on the key:

    {YYYY-MM-DD}-{slug}-{HHMMSS}-{counter}.md

This module is pure: no file I/O. See ``waypoint.codec`` for serialization
and ``waypoint.store`` for the on-disk lifecycle.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from typing import Any

from waypoint.errors import InvalidArgument
from waypoint.types import CheckpointId, TopicSlug

CHECKPOINT_EXTENSION = ".md"
DEFAULT_SLUG = "session"

# {date}-{slug}-{HHMMSS}-{counter}.md; slug may itself contain hyphens
FILENAME_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})-(?P<slug>[a-z0-9]+(?:-[a-z0-9]+)*)"
    r"-(?P<time>\d{6})-(?P<counter>\d+)\.md$"
)
KEY_RE = re.compile(r"^(?P<date>\d{4}-\d{2}-\d{2})-(?P<slug>[a-z0-9]+(?:-[a-z0-9]+)*)$")
# Leftover atomic-write temp file: .{checkpoint stem}_{random}.md.tmp
TEMP_RE = re.compile(r"^\.(?P<stem>[^_]+)_[A-Za-z0-9_]+\.md\.tmp$")


@dataclass(frozen=True)
class CompactEvent:
    """One compaction of a checkpoint."""

    counter: int
    timestamp: str
    trigger: str  # token_budget, manual, auto, ...
    tokens_before: int = 0
    tokens_after: int = 0


@dataclass(frozen=True)
class MilestoneEntry:
    """A token-budget milestone that fired."""

    threshold: int
    tokens: int
    timestamp: str


@dataclass(frozen=True)
class ContextMetrics:
    """Token and message accounting for the session."""

    estimated_tokens: int = 0
    message_count: int = 0
    last_token_checkpoint: int = 0
    checkpoint_history: tuple[MilestoneEntry, ...] = ()
    extra: dict = field(default_factory=dict)  # Unknown fields read from disk


@dataclass(frozen=True)
class TaskState:
    """What the session is doing right now."""

    current_task: str = ""
    todo_list: tuple[str, ...] = ()
    files_modified: frozenset[str] = field(default_factory=frozenset)
    key_decisions: tuple[str, ...] = ()
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RecoveryMetadata:
    """What a fresh context needs to pick the session back up."""

    last_retrieval: str = ""
    active_project: str = ""
    context_summary: str = ""
    protocols_to_reload: tuple[str, ...] = ()
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Checkpoint:
    """A durable snapshot of in-progress task/conversation state."""

    id: CheckpointId
    topic: str
    created_at: str
    last_updated_at: str
    generation_started_at: str  # When the current counter generation was written

    compact_counter: int = 0
    compact_history: tuple[CompactEvent, ...] = ()

    context_metrics: ContextMetrics = field(default_factory=ContextMetrics)
    task_state: TaskState = field(default_factory=TaskState)
    recovery_metadata: RecoveryMetadata = field(default_factory=RecoveryMetadata)
    runtime_state: dict = field(default_factory=dict)  # Opaque caller metadata

    extra: dict = field(default_factory=dict)  # Unknown top-level fields

    @property
    def key(self) -> "CheckpointKey":
        date, slug, _ = split_checkpoint_id(self.id)
        return CheckpointKey(date=date, topic_slug=slug)

    @property
    def filename(self) -> str:
        return checkpoint_filename(
            self.key, parse_timestamp(self.generation_started_at), self.compact_counter
        )


@dataclass(frozen=True)
class CheckpointKey:
    """Logical identity of a checkpoint: one live file per (date, slug)."""

    date: str  # YYYY-MM-DD
    topic_slug: TopicSlug

    def __str__(self) -> str:
        return f"{self.date}-{self.topic_slug}"

    @classmethod
    def parse(cls, text: str) -> "CheckpointKey":
        """Parse the ``{date}-{slug}`` string form."""
        match = KEY_RE.match(text.strip())
        if not match:
            raise InvalidArgument(f"Not a checkpoint key: {text!r}")
        return cls(date=match["date"], topic_slug=TopicSlug(match["slug"]))

    @classmethod
    def coerce(cls, key: "CheckpointKey | str") -> "CheckpointKey":
        if isinstance(key, CheckpointKey):
            return key
        return cls.parse(key)

    @property
    def glob(self) -> str:
        return f"{self}-*{CHECKPOINT_EXTENSION}"


@dataclass(frozen=True)
class CheckpointFile:
    """A parsed checkpoint filename."""

    key: CheckpointKey
    time: str  # HHMMSS
    counter: int


# ============================================================================
# Identity helpers
# ============================================================================


def utcnow() -> datetime:
    return datetime.now(UTC)


def format_timestamp(ts: datetime) -> str:
    return ts.astimezone(UTC).isoformat(timespec="seconds")


def parse_timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def slugify_topic(topic_hint: str, max_length: int = 40) -> TopicSlug:
    """Collapse a free-form topic hint into a short, file-safe token.

    Deterministic (same text, same slug) but not reversible.
    """
    if not topic_hint or not topic_hint.strip():
        raise InvalidArgument("Topic hint must be non-empty")
    slug = re.sub(r"[^a-z0-9]+", "-", topic_hint.lower()).strip("-")
    slug = slug[:max_length].rstrip("-")
    return TopicSlug(slug or DEFAULT_SLUG)


def make_key(topic_hint: str, now: datetime, max_length: int = 40) -> CheckpointKey:
    return CheckpointKey(
        date=now.astimezone(UTC).strftime("%Y-%m-%d"),
        topic_slug=slugify_topic(topic_hint, max_length),
    )


def generate_checkpoint_id(key: CheckpointKey, created: datetime) -> CheckpointId:
    """Derive the immutable id from (date, slug, creation time)."""
    return CheckpointId(f"{key}-{created.astimezone(UTC).strftime('%H%M%S')}")


def split_checkpoint_id(checkpoint_id: str) -> tuple[str, TopicSlug, str]:
    """Split an id into (date, slug, HHMMSS)."""
    match = re.match(r"^(\d{4}-\d{2}-\d{2})-(.+)-(\d{6})$", checkpoint_id)
    if not match:
        raise InvalidArgument(f"Malformed checkpoint id: {checkpoint_id!r}")
    return match[1], TopicSlug(match[2]), match[3]


def checkpoint_filename(key: CheckpointKey, generation_started: datetime, counter: int) -> str:
    time_part = generation_started.astimezone(UTC).strftime("%H%M%S")
    return f"{key}-{time_part}-{counter}{CHECKPOINT_EXTENSION}"


def parse_checkpoint_filename(name: str) -> CheckpointFile | None:
    """Parse a checkpoint filename, or None if it isn't one."""
    match = FILENAME_RE.match(name)
    if not match:
        return None
    return CheckpointFile(
        key=CheckpointKey(date=match["date"], topic_slug=TopicSlug(match["slug"])),
        time=match["time"],
        counter=int(match["counter"]),
    )


def parse_temp_filename(name: str) -> CheckpointFile | None:
    """Parse an atomic-write temp filename back to the checkpoint it was for."""
    match = TEMP_RE.match(name)
    if not match:
        return None
    return parse_checkpoint_filename(f"{match['stem']}{CHECKPOINT_EXTENSION}")


def new_checkpoint(topic_hint: str, key: CheckpointKey, now: datetime) -> Checkpoint:
    """Build a fresh generation-0 checkpoint."""
    ts = format_timestamp(now)
    return Checkpoint(
        id=generate_checkpoint_id(key, now),
        topic=topic_hint.strip(),
        created_at=ts,
        last_updated_at=ts,
        generation_started_at=ts,
    )


# ============================================================================
# Partial updates
# ============================================================================

MUTABLE_SECTIONS = ("context_metrics", "task_state", "recovery_metadata", "runtime_state")

_SECTION_TYPES = {
    "context_metrics": ContextMetrics,
    "task_state": TaskState,
    "recovery_metadata": RecoveryMetadata,
}

_INT_FIELDS = {"estimated_tokens", "message_count", "last_token_checkpoint"}
_TUPLE_FIELDS = {"todo_list", "key_decisions", "protocols_to_reload"}
_TEXT_FIELDS = {"current_task", "last_retrieval", "active_project", "context_summary"}


def _coerce_milestone(where: str, entry: Any) -> MilestoneEntry:
    if isinstance(entry, Mapping):
        try:
            entry = MilestoneEntry(**entry)
        except TypeError as e:
            raise InvalidArgument(f"Bad {where} entry: {e}") from e
    elif not isinstance(entry, MilestoneEntry):
        raise InvalidArgument(f"{where} entries must be milestone records")

    # Same rules the codec applies on read
    for name in ("threshold", "tokens"):
        value = getattr(entry, name)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidArgument(f"{where}.{name} must be a non-negative integer")
    if not isinstance(entry.timestamp, str):
        raise InvalidArgument(f"{where}.timestamp must be a string")
    return entry


def _yaml_safe(value: Any, where: str) -> Any:
    """Normalize free-form metadata to the shapes YAML reads back."""
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (list, tuple)):
        return [_yaml_safe(v, where) for v in value]
    if isinstance(value, Mapping):
        return {k: _yaml_safe(v, f"{where}.{k}") for k, v in value.items()}
    raise InvalidArgument(
        f"{where} holds an unsupported value of type {type(value).__name__}",
        context={"field": where},
    )


def _coerce_field(section: str, name: str, value: Any) -> Any:
    if name in _INT_FIELDS:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidArgument(f"{section}.{name} must be a non-negative integer")
        return value
    if name in _TUPLE_FIELDS:
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise InvalidArgument(f"{section}.{name} must be a list")
        return tuple(str(v) for v in value)
    if name == "files_modified":
        if isinstance(value, str) or not isinstance(value, (list, tuple, set, frozenset)):
            raise InvalidArgument(f"{section}.{name} must be a collection of paths")
        return frozenset(str(v) for v in value)
    if name == "checkpoint_history":
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise InvalidArgument(f"{section}.{name} must be a list")
        return tuple(_coerce_milestone(f"{section}.{name}", entry) for entry in value)
    if name in _TEXT_FIELDS:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise InvalidArgument(f"{section}.{name} must be a string")
        return value
    return value


def merge_section(current: Any, section: str, changes: Mapping[str, Any]) -> Any:
    """Shallow, field-by-field merge of one section.

    ``runtime_state`` is free-form and merged as a plain dict. The typed
    sections reject fields they don't declare.
    """
    if not isinstance(changes, Mapping):
        raise InvalidArgument(f"Update for {section!r} must be a mapping")

    if section == "runtime_state":
        return {**current, **_yaml_safe(changes, section)}

    section_type = _SECTION_TYPES[section]
    known = {f.name for f in fields(section_type)} - {"extra"}
    unknown = set(changes) - known
    if unknown:
        raise InvalidArgument(
            f"Unknown field(s) for {section}: {', '.join(sorted(unknown))}",
            context={"section": section, "fields": sorted(unknown)},
        )

    coerced = {name: _coerce_field(section, name, value) for name, value in changes.items()}
    return replace(current, **coerced)


def apply_partial_update(
    checkpoint: Checkpoint,
    partial_update: Mapping[str, Mapping[str, Any]],
) -> Checkpoint:
    """Merge a per-section partial update into a checkpoint.

    Does not touch timestamps; the store owns those.
    """
    if not isinstance(partial_update, Mapping):
        raise InvalidArgument("Partial update must be a mapping of section -> fields")

    unknown = set(partial_update) - set(MUTABLE_SECTIONS)
    if unknown:
        raise InvalidArgument(
            f"Unknown or immutable section(s): {', '.join(sorted(unknown))}",
            context={"sections": sorted(unknown)},
        )

    changes = {}
    for section, section_changes in partial_update.items():
        changes[section] = merge_section(getattr(checkpoint, section), section, section_changes)
    return replace(checkpoint, **changes)


# ============================================================================
# Context formatting
# ============================================================================


def format_checkpoint_for_context(checkpoint: Checkpoint) -> str:
    """Format a checkpoint for injection into a fresh (post-compaction) context."""
    task = checkpoint.task_state
    recovery = checkpoint.recovery_metadata
    metrics = checkpoint.context_metrics

    parts = [
        "# Session Context (Restored from Checkpoint)\n",
        f"*Checkpoint: {checkpoint.id} | Topic: {checkpoint.topic}*\n",
        f"*Updated: {checkpoint.last_updated_at[:16].replace('T', ' ')} | "
        f"Compactions: {checkpoint.compact_counter} | "
        f"Tokens: ~{metrics.estimated_tokens:,}*\n\n",
    ]

    if task.current_task:
        parts.append(f"## Current Task\n{task.current_task}\n\n")

    if recovery.context_summary:
        parts.append(f"## Summary\n{recovery.context_summary}\n\n")

    if task.todo_list:
        parts.append("## Todo\n")
        for item in task.todo_list:
            parts.append(f"- {item}\n")
        parts.append("\n")

    if task.key_decisions:
        parts.append("## Key Decisions\n")
        for decision in task.key_decisions:
            parts.append(f"- {decision}\n")
        parts.append("\n")

    if task.files_modified:
        parts.append("## Files Modified\n")
        for f in sorted(task.files_modified)[:10]:
            parts.append(f"- `{f}`\n")
        if len(task.files_modified) > 10:
            parts.append(f"- _...and {len(task.files_modified) - 10} more_\n")
        parts.append("\n")

    if recovery.active_project or recovery.protocols_to_reload:
        parts.append("## Recovery\n")
        if recovery.active_project:
            parts.append(f"Project: {recovery.active_project}\n")
        if recovery.protocols_to_reload:
            parts.append(f"Reload: {', '.join(recovery.protocols_to_reload)}\n")
        parts.append("\n")

    return "".join(parts)
