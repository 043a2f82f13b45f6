"""Token-budget milestone tracking.

Fires a checkpoint update the first time session token usage crosses each
configured threshold. The tracker holds no state of its own: whether a
threshold has already fired is decided by comparing against the persisted
``context_metrics.last_token_checkpoint``, so a tracker can be built fresh
for every call and repeated or decreasing usage reports never re-fire.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from waypoint.checkpoint import Checkpoint, MilestoneEntry, format_timestamp
from waypoint.config import validate_thresholds
from waypoint.errors import InvalidArgument
from waypoint.store import CheckpointStore, KeyLike

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerResult:
    """Outcome of a single usage observation."""

    fired: bool
    threshold: int | None = None
    checkpoint: Checkpoint | None = None  # Updated checkpoint when fired


def crossed_threshold(thresholds: Sequence[int], last: int, usage: int) -> int | None:
    """Highest threshold t with last < t <= usage, or None."""
    crossed = [t for t in thresholds if last < t <= usage]
    return max(crossed) if crossed else None


class MilestoneTracker:
    """Fires at most once per threshold crossing.

    Args:
        store: Checkpoint store the updates are written through
        thresholds: Ascending token levels; defaults to config
    """

    def __init__(self, store: CheckpointStore, thresholds: Sequence[int] | None = None) -> None:
        if thresholds is None:
            thresholds = store.config.milestone_thresholds
        self.thresholds = tuple(thresholds)
        validate_thresholds(self.thresholds)
        self.store = store

    def observe(
        self,
        key: KeyLike,
        current_usage: int,
        extra_updates: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> TriggerResult:
        """Report current token usage for a checkpoint.

        If usage crossed a threshold since the last recorded milestone, the
        checkpoint is updated with ``extra_updates`` plus the new
        ``last_token_checkpoint`` and a milestone history entry.

        Raises:
            InvalidArgument: usage is negative or not an integer
            NotFound: no live checkpoint for the key
        """
        if isinstance(current_usage, bool) or not isinstance(current_usage, int):
            raise InvalidArgument("Usage must be an integer token count")
        if current_usage < 0:
            raise InvalidArgument("Usage must not be negative")

        checkpoint = self.store.retrieve(key)
        metrics = checkpoint.context_metrics
        threshold = crossed_threshold(self.thresholds, metrics.last_token_checkpoint, current_usage)
        if threshold is None:
            return TriggerResult(fired=False)

        updates: dict[str, dict[str, Any]] = {
            section: dict(fields) for section, fields in (extra_updates or {}).items()
        }
        metrics_update = updates.setdefault("context_metrics", {})
        metrics_update["last_token_checkpoint"] = current_usage
        metrics_update["checkpoint_history"] = metrics.checkpoint_history + (
            MilestoneEntry(
                threshold=threshold,
                tokens=current_usage,
                timestamp=format_timestamp(self.store.clock()),
            ),
        )

        updated = self.store.update(key, updates)
        logger.info(
            f"Milestone {threshold:,} crossed for {checkpoint.id} at {current_usage:,} tokens"
        )
        return TriggerResult(fired=True, threshold=threshold, checkpoint=updated)
