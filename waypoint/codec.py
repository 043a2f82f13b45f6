"""Checkpoint codec: Checkpoint <-> Markdown with YAML frontmatter.

The frontmatter is authoritative and carries every field; the Markdown body
is a human-readable rendering (PKM/Obsidian friendly) that readers ignore.

    ---
    id: 2026-10-17-auth-refactor-093015
    type: checkpoint
    format_version: 1
    topic: Auth refactor
    compact_counter: 2
    ...
    ---

    # Auth refactor
    ...

Unknown fields, at the top level or inside a section, are kept in the
model's ``extra`` dicts and written back unchanged.

Pure: no file I/O.
"""

from collections.abc import Mapping
from datetime import date, datetime
from typing import Any

import yaml

from waypoint.checkpoint import (
    Checkpoint,
    CompactEvent,
    ContextMetrics,
    MilestoneEntry,
    RecoveryMetadata,
    TaskState,
)
from waypoint.errors import CorruptCheckpoint, InvalidArgument
from waypoint.types import CheckpointId

FORMAT_VERSION = 1
FRONTMATTER_DELIMITER = "---"

REQUIRED_FIELDS = ("id", "created_at", "last_updated_at", "compact_counter")

# Keys the codec itself owns; everything else at the top level is preserved in ``extra``
_RESERVED_KEYS = {
    "id",
    "type",
    "format_version",
    "topic",
    "created_at",
    "last_updated_at",
    "generation_started_at",
    "compact_counter",
    "compact_history",
    "context_metrics",
    "task_state",
    "recovery_metadata",
    "runtime_state",
}


# ============================================================================
# Encoding
# ============================================================================


def _section_to_dict(known: dict[str, Any], extra: dict) -> dict[str, Any]:
    # Known fields win over same-named extras
    return {**known, **{k: v for k, v in extra.items() if k not in known}}


def checkpoint_to_dict(checkpoint: Checkpoint) -> dict[str, Any]:
    """Convert a checkpoint to plain YAML-safe data."""
    metrics = checkpoint.context_metrics
    task = checkpoint.task_state
    recovery = checkpoint.recovery_metadata

    data: dict[str, Any] = {
        "id": str(checkpoint.id),
        "type": "checkpoint",
        "format_version": FORMAT_VERSION,
        "topic": checkpoint.topic,
        "created_at": checkpoint.created_at,
        "last_updated_at": checkpoint.last_updated_at,
        "generation_started_at": checkpoint.generation_started_at,
        "compact_counter": checkpoint.compact_counter,
        "compact_history": [
            {
                "counter": e.counter,
                "timestamp": e.timestamp,
                "trigger": e.trigger,
                "tokens_before": e.tokens_before,
                "tokens_after": e.tokens_after,
            }
            for e in checkpoint.compact_history
        ],
        "context_metrics": _section_to_dict(
            {
                "estimated_tokens": metrics.estimated_tokens,
                "message_count": metrics.message_count,
                "last_token_checkpoint": metrics.last_token_checkpoint,
                "checkpoint_history": [
                    {"threshold": m.threshold, "tokens": m.tokens, "timestamp": m.timestamp}
                    for m in metrics.checkpoint_history
                ],
            },
            metrics.extra,
        ),
        "task_state": _section_to_dict(
            {
                "current_task": task.current_task,
                "todo_list": list(task.todo_list),
                "files_modified": sorted(task.files_modified),
                "key_decisions": list(task.key_decisions),
            },
            task.extra,
        ),
        "recovery_metadata": _section_to_dict(
            {
                "last_retrieval": recovery.last_retrieval,
                "active_project": recovery.active_project,
                "context_summary": recovery.context_summary,
                "protocols_to_reload": list(recovery.protocols_to_reload),
            },
            recovery.extra,
        ),
        "runtime_state": dict(checkpoint.runtime_state),
    }

    for key, value in checkpoint.extra.items():
        if key not in _RESERVED_KEYS:
            data[key] = value

    return data


def _render_body(checkpoint: Checkpoint) -> str:
    task = checkpoint.task_state
    recovery = checkpoint.recovery_metadata

    lines = [f"# {checkpoint.topic or checkpoint.id}", ""]

    if task.current_task:
        lines.extend(["## Current Task", task.current_task, ""])

    if recovery.context_summary:
        lines.extend(["## Summary", recovery.context_summary, ""])

    if task.todo_list:
        lines.append("## Todo")
        lines.extend(f"- [ ] {item}" for item in task.todo_list)
        lines.append("")

    if task.key_decisions:
        lines.append("## Key Decisions")
        lines.extend(f"- {d}" for d in task.key_decisions)
        lines.append("")

    if task.files_modified:
        lines.append("## Files Modified")
        lines.extend(f"- `{f}`" for f in sorted(task.files_modified))
        lines.append("")

    if checkpoint.compact_history:
        lines.append("## Compactions")
        for e in checkpoint.compact_history:
            lines.append(
                f"- #{e.counter} {e.timestamp} ({e.trigger}): "
                f"{e.tokens_before:,} → {e.tokens_after:,} tokens"
            )
        lines.append("")

    return "\n".join(lines)


def encode(checkpoint: Checkpoint) -> bytes:
    """Serialize a checkpoint to UTF-8 Markdown with YAML frontmatter."""
    try:
        fm_yaml = yaml.safe_dump(
            checkpoint_to_dict(checkpoint),
            default_flow_style=False,
            sort_keys=False,
            allow_unicode=True,
        )
    except yaml.YAMLError as e:
        raise InvalidArgument(
            f"Checkpoint {checkpoint.id} cannot be serialized: {e}",
            context={"id": str(checkpoint.id)},
        ) from e
    body = _render_body(checkpoint)
    text = f"{FRONTMATTER_DELIMITER}\n{fm_yaml}{FRONTMATTER_DELIMITER}\n\n{body}"
    return text.encode("utf-8")


# ============================================================================
# Decoding
# ============================================================================


def _split_frontmatter(text: str) -> str:
    if not text.startswith(FRONTMATTER_DELIMITER + "\n"):
        raise CorruptCheckpoint("Missing frontmatter")
    end_idx = text.find(f"\n{FRONTMATTER_DELIMITER}\n", len(FRONTMATTER_DELIMITER))
    if end_idx == -1:
        raise CorruptCheckpoint("Unterminated frontmatter")
    return text[len(FRONTMATTER_DELIMITER) + 1 : end_idx + 1]


def _as_text(value: Any, name: str) -> str:
    # YAML auto-converts ISO timestamps to datetime, convert back to string
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if value is None:
        return ""
    if not isinstance(value, str):
        raise CorruptCheckpoint(f"'{name}' must be a string")
    return value


def _as_count(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise CorruptCheckpoint(f"'{name}' must be an integer")
    if value < 0:
        raise CorruptCheckpoint(f"'{name}' must not be negative")
    return value


def _as_list(value: Any, name: str) -> list:
    if value is None:
        return []
    if not isinstance(value, list):
        raise CorruptCheckpoint(f"'{name}' must be a list")
    return value


def _as_mapping(value: Any, name: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise CorruptCheckpoint(f"'{name}' must be a mapping")
    return dict(value)


def _split_known(data: dict, known: tuple[str, ...]) -> tuple[dict, dict]:
    return (
        {k: data[k] for k in known if k in data},
        {k: v for k, v in data.items() if k not in known},
    )


def _decode_compact_event(raw: Any) -> CompactEvent:
    entry = _as_mapping(raw, "compact_history[]")
    if "counter" not in entry:
        raise CorruptCheckpoint("Compact history entry is missing 'counter'")
    return CompactEvent(
        counter=_as_count(entry["counter"], "compact_history.counter"),
        timestamp=_as_text(entry.get("timestamp"), "compact_history.timestamp"),
        trigger=_as_text(entry.get("trigger"), "compact_history.trigger"),
        tokens_before=_as_count(entry.get("tokens_before", 0), "compact_history.tokens_before"),
        tokens_after=_as_count(entry.get("tokens_after", 0), "compact_history.tokens_after"),
    )


def _decode_milestone(raw: Any) -> MilestoneEntry:
    entry = _as_mapping(raw, "checkpoint_history[]")
    return MilestoneEntry(
        threshold=_as_count(entry.get("threshold", 0), "checkpoint_history.threshold"),
        tokens=_as_count(entry.get("tokens", 0), "checkpoint_history.tokens"),
        timestamp=_as_text(entry.get("timestamp"), "checkpoint_history.timestamp"),
    )


def _decode_metrics(raw: Any) -> ContextMetrics:
    known, extra = _split_known(
        _as_mapping(raw, "context_metrics"),
        ("estimated_tokens", "message_count", "last_token_checkpoint", "checkpoint_history"),
    )
    return ContextMetrics(
        estimated_tokens=_as_count(known.get("estimated_tokens", 0), "estimated_tokens"),
        message_count=_as_count(known.get("message_count", 0), "message_count"),
        last_token_checkpoint=_as_count(
            known.get("last_token_checkpoint", 0), "last_token_checkpoint"
        ),
        checkpoint_history=tuple(
            _decode_milestone(m)
            for m in _as_list(known.get("checkpoint_history"), "checkpoint_history")
        ),
        extra=extra,
    )


def _decode_task(raw: Any) -> TaskState:
    known, extra = _split_known(
        _as_mapping(raw, "task_state"),
        ("current_task", "todo_list", "files_modified", "key_decisions"),
    )
    return TaskState(
        current_task=_as_text(known.get("current_task"), "current_task"),
        todo_list=tuple(str(t) for t in _as_list(known.get("todo_list"), "todo_list")),
        files_modified=frozenset(
            str(f) for f in _as_list(known.get("files_modified"), "files_modified")
        ),
        key_decisions=tuple(
            str(d) for d in _as_list(known.get("key_decisions"), "key_decisions")
        ),
        extra=extra,
    )


def _decode_recovery(raw: Any) -> RecoveryMetadata:
    known, extra = _split_known(
        _as_mapping(raw, "recovery_metadata"),
        ("last_retrieval", "active_project", "context_summary", "protocols_to_reload"),
    )
    return RecoveryMetadata(
        last_retrieval=_as_text(known.get("last_retrieval"), "last_retrieval"),
        active_project=_as_text(known.get("active_project"), "active_project"),
        context_summary=_as_text(known.get("context_summary"), "context_summary"),
        protocols_to_reload=tuple(
            str(p) for p in _as_list(known.get("protocols_to_reload"), "protocols_to_reload")
        ),
        extra=extra,
    )


def decode(data: bytes) -> Checkpoint:
    """Parse a checkpoint document.

    Raises:
        CorruptCheckpoint: the document is malformed, is missing a required
            field, or has an invalid compact counter.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CorruptCheckpoint(f"Checkpoint is not valid UTF-8: {e}") from e

    try:
        fm = yaml.safe_load(_split_frontmatter(text))
    except yaml.YAMLError as e:
        raise CorruptCheckpoint(f"Invalid YAML frontmatter: {e}") from e

    if not isinstance(fm, dict):
        raise CorruptCheckpoint("Frontmatter must be a mapping")

    for name in REQUIRED_FIELDS:
        if name not in fm:
            raise CorruptCheckpoint(f"Missing required field: {name}")

    if fm.get("type", "checkpoint") != "checkpoint":
        raise CorruptCheckpoint(f"Not a checkpoint document (type={fm.get('type')!r})")

    created_at = _as_text(fm["created_at"], "created_at")
    checkpoint_id = _as_text(fm["id"], "id")
    if not checkpoint_id:
        raise CorruptCheckpoint("'id' must not be empty")

    return Checkpoint(
        id=CheckpointId(checkpoint_id),
        topic=_as_text(fm.get("topic"), "topic"),
        created_at=created_at,
        last_updated_at=_as_text(fm["last_updated_at"], "last_updated_at"),
        generation_started_at=_as_text(
            fm.get("generation_started_at", created_at), "generation_started_at"
        ),
        compact_counter=_as_count(fm["compact_counter"], "compact_counter"),
        compact_history=tuple(
            _decode_compact_event(e) for e in _as_list(fm.get("compact_history"), "compact_history")
        ),
        context_metrics=_decode_metrics(fm.get("context_metrics")),
        task_state=_decode_task(fm.get("task_state")),
        recovery_metadata=_decode_recovery(fm.get("recovery_metadata")),
        runtime_state=_as_mapping(fm.get("runtime_state"), "runtime_state"),
        extra={k: v for k, v in fm.items() if k not in _RESERVED_KEYS},
    )
