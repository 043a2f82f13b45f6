"""Waypoint: crash-safe session checkpoints and confidence-gated scan escalation."""

__version__ = "0.3.0"

# Branded types for type-safe IDs
from waypoint.types import CheckpointId, TopicSlug

__all__ = [
    "__version__",
    "CheckpointId",
    "TopicSlug",
]
