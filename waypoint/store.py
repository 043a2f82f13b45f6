"""Checkpoint store for Waypoint.

Owns a directory of checkpoint files and enforces one live checkpoint per
logical key (date, topic slug) without taking any locks. Safety rests on
three rules:

1. Compaction is write-then-delete: the new generation is written (and
   fsynced) under its own filename before the old file is removed. A crash
   leaves either the old file alone or both files, never neither.
2. When several files match a key, the one with the highest compact counter
   that fully decodes is live. ``retrieve``, ``update`` and ``compact`` all
   resolve the live file the same way.
3. Creation is idempotent: asking to create an existing key returns it.

Concurrent writers to the same key can diverge; the tie-break keeps the
higher counter and the lower branch is discarded. Single writer per key is
the supported deployment.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any

from waypoint.atomic import atomic_write_bytes
from waypoint.checkpoint import (
    CHECKPOINT_EXTENSION,
    Checkpoint,
    CheckpointFile,
    CheckpointKey,
    CompactEvent,
    apply_partial_update,
    format_timestamp,
    make_key,
    new_checkpoint,
    parse_checkpoint_filename,
    parse_temp_filename,
    utcnow,
)
from waypoint.codec import decode, encode
from waypoint.config import WaypointConfig, get_checkpoints_dir, get_waypoint_config
from waypoint.errors import CorruptCheckpoint, InvalidArgument, NotFound, StoreIOError
from waypoint.types import CheckpointId

logger = logging.getLogger(__name__)

KeyLike = CheckpointKey | str
PartialUpdate = Mapping[str, Mapping[str, Any]]


@dataclass(frozen=True)
class LiveCheckpoint:
    """The resolved live checkpoint for a key and the file it came from."""

    checkpoint: Checkpoint
    path: Path
    counter: int


class CheckpointStore:
    """Directory-backed checkpoint store.

    Args:
        root: Checkpoint directory (created on first write)
        clock: Returns the current aware datetime; injectable for tests
        config: Tuning values (slug length); defaults to the config cascade
    """

    def __init__(
        self,
        root: Path | None = None,
        clock: Callable[[], datetime] = utcnow,
        config: WaypointConfig | None = None,
    ) -> None:
        self.root = Path(root) if root is not None else get_checkpoints_dir()
        self.clock = clock
        self.config = config or get_waypoint_config()

    def __repr__(self) -> str:
        return f"CheckpointStore(root={str(self.root)!r})"

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def key_for(self, topic_hint: str, when: datetime | None = None) -> CheckpointKey:
        """Logical key for a topic hint on a date (today by default)."""
        return make_key(topic_hint, when or self.clock(), self.config.slug_max_length)

    def create_if_absent(
        self,
        topic_hint: str,
        initial_state: PartialUpdate | None = None,
    ) -> tuple[CheckpointId, bool]:
        """Create today's checkpoint for a topic unless one is already live.

        Re-entrant: callers may invoke this on every first-turn event; an
        existing checkpoint is returned untouched with ``created=False``.

        Returns:
            (checkpoint id, created)
        """
        now = self.clock()
        key = make_key(topic_hint, now, self.config.slug_max_length)

        try:
            existing = self._resolve_live(key)
        except NotFound:
            existing = None
        if existing is not None:
            logger.debug(f"Checkpoint already live for {key}: {existing.checkpoint.id}")
            return existing.checkpoint.id, False

        checkpoint = new_checkpoint(topic_hint, key, now)
        if initial_state:
            checkpoint = apply_partial_update(checkpoint, initial_state)

        self._write(checkpoint)
        logger.info(f"Created checkpoint {checkpoint.id}")
        return checkpoint.id, True

    def retrieve(self, key: KeyLike) -> Checkpoint:
        """Return the live checkpoint for a key.

        Raises:
            NotFound: no checkpoint file exists for the key
            CorruptCheckpoint: files exist but none decodes
            StoreIOError: the directory or a file could not be read
        """
        return self._resolve_live(CheckpointKey.coerce(key)).checkpoint

    def update(self, key: KeyLike, partial_update: PartialUpdate) -> Checkpoint:
        """Merge a per-section partial update into the live checkpoint.

        Sections: context_metrics, task_state, recovery_metadata,
        runtime_state. Merging is shallow, field by field. The file is
        replaced atomically under the same name.
        """
        live = self._resolve_live(CheckpointKey.coerce(key))
        updated = apply_partial_update(live.checkpoint, partial_update)
        updated = replace(updated, last_updated_at=format_timestamp(self.clock()))

        self._write(updated, path=live.path)
        logger.debug(f"Updated checkpoint {updated.id} ({', '.join(partial_update)})")
        return updated

    def compact(
        self,
        key: KeyLike,
        trigger: str,
        tokens_before: int = 0,
        tokens_after: int = 0,
    ) -> Checkpoint:
        """Start a new checkpoint generation after a context compaction.

        Writes the new generation under its new filename and only then
        removes the previous file.
        """
        if not trigger or not trigger.strip():
            raise InvalidArgument("Compaction trigger must be non-empty")
        for name, value in (("tokens_before", tokens_before), ("tokens_after", tokens_after)):
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidArgument(f"{name} must be a non-negative integer")

        live = self._resolve_live(CheckpointKey.coerce(key))
        current = live.checkpoint
        now = format_timestamp(self.clock())
        counter = current.compact_counter + 1

        compacted = replace(
            current,
            compact_counter=counter,
            compact_history=current.compact_history
            + (
                CompactEvent(
                    counter=counter,
                    timestamp=now,
                    trigger=trigger.strip(),
                    tokens_before=tokens_before,
                    tokens_after=tokens_after,
                ),
            ),
            context_metrics=replace(
                current.context_metrics,
                estimated_tokens=tokens_after,
                last_token_checkpoint=tokens_after,
            ),
            generation_started_at=now,
            last_updated_at=now,
        )

        new_path = self._write(compacted)

        # Only a confirmed write permits removing the previous generation
        if new_path != live.path:
            try:
                live.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                # Both generations remain; the higher counter wins on read
                logger.warning(f"Could not remove superseded checkpoint {live.path.name}: {e}")

        logger.info(
            f"Compacted {compacted.id} to generation {counter} "
            f"({trigger}: {tokens_before:,} → {tokens_after:,} tokens)"
        )
        return compacted

    def cleanup(self, key: KeyLike) -> list[Path]:
        """Remove files superseded by the live checkpoint.

        Used after an interrupted compaction left two generations on disk.
        Files whose counter is no higher than the live, fully-decoding
        checkpoint are removed; undecodable higher-counter files are left
        in place for inspection. Temp files a killed writer left behind for
        this key are removed too, so run this only while no writer is
        active on the key.

        Returns:
            Paths that were removed
        """
        key = CheckpointKey.coerce(key)
        live = self._resolve_live(key)

        stale = []
        for path, parsed in self._candidates(key):
            if path == live.path:
                continue
            if parsed.counter > live.counter:
                logger.warning(f"Keeping undecodable newer checkpoint {path.name}")
                continue
            stale.append(path)
        stale.extend(path for path, _ in self._temp_files(key))

        removed = []
        for path in stale:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StoreIOError(
                    f"Failed to remove superseded checkpoint {path}: {e}",
                    context={"path": str(path)},
                ) from e
            removed.append(path)
            logger.info(f"Removed stale file {path.name}")
        return removed

    def list_keys(self) -> list[CheckpointKey]:
        """Distinct keys with at least one checkpoint file, newest date first."""
        keys = {parsed.key for _, parsed in self._scan()}
        return sorted(keys, key=lambda k: (k.date, k.topic_slug), reverse=True)

    def path_for(self, checkpoint: Checkpoint) -> Path:
        return self.root / checkpoint.filename

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _scan(
        self,
        pattern: str = f"*{CHECKPOINT_EXTENSION}",
        parse: Callable[[str], CheckpointFile | None] = parse_checkpoint_filename,
    ) -> list[tuple[Path, CheckpointFile]]:
        if not self.root.exists():
            return []
        try:
            paths = list(self.root.glob(pattern))
        except OSError as e:
            raise StoreIOError(
                f"Failed to list checkpoints in {self.root}: {e}",
                context={"path": str(self.root)},
            ) from e

        found = []
        for path in paths:
            parsed = parse(path.name)
            if parsed is not None:
                found.append((path, parsed))
        return found

    def _candidates(self, key: CheckpointKey) -> list[tuple[Path, CheckpointFile]]:
        """Files for exactly this key, highest counter first."""
        # The glob also matches longer slugs sharing a prefix; filter on the parsed key
        matches = [(p, parsed) for p, parsed in self._scan(key.glob) if parsed.key == key]
        matches.sort(key=lambda item: (item[1].counter, item[1].time), reverse=True)
        return matches

    def _temp_files(self, key: CheckpointKey) -> list[tuple[Path, CheckpointFile]]:
        """Leftover atomic-write temp files for exactly this key."""
        pattern = f".{key}-*{CHECKPOINT_EXTENSION}.tmp"
        found = self._scan(pattern, parse_temp_filename)
        return [(p, parsed) for p, parsed in found if parsed.key == key]

    def _read(self, path: Path) -> Checkpoint:
        try:
            data = path.read_bytes()
        except OSError as e:
            raise StoreIOError(
                f"Failed to read checkpoint {path}: {e}",
                context={"path": str(path)},
            ) from e
        return decode(data)

    def _resolve_live(self, key: CheckpointKey) -> LiveCheckpoint:
        candidates = self._candidates(key)
        if not candidates:
            raise NotFound(f"No checkpoint for {key}", context={"key": str(key)})

        last_error: CorruptCheckpoint | None = None
        for path, parsed in candidates:
            try:
                checkpoint = self._read(path)
            except CorruptCheckpoint as e:
                # Torn or hand-damaged file; fall back to the previous generation
                logger.warning(f"Skipping undecodable checkpoint {path.name}: {e.message}")
                last_error = e
                continue
            return LiveCheckpoint(checkpoint=checkpoint, path=path, counter=parsed.counter)

        raise CorruptCheckpoint(
            f"No readable checkpoint for {key}: {last_error.message if last_error else ''}",
            context={"key": str(key), "files": [p.name for p, _ in candidates]},
        )

    def _write(self, checkpoint: Checkpoint, path: Path | None = None) -> Path:
        if path is None:
            path = self.path_for(checkpoint)
        result = atomic_write_bytes(path, encode(checkpoint), mode=0o600)
        if result.is_err():
            raise result.unwrap_err()
        return result.unwrap()
