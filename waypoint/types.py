"""Branded types for Waypoint identifiers.

NewType wrappers give type checkers a way to tell a checkpoint id apart
from an arbitrary string without any runtime cost.
"""

from typing import NewType

CheckpointId = NewType("CheckpointId", str)
TopicSlug = NewType("TopicSlug", str)

__all__ = ["CheckpointId", "TopicSlug"]
