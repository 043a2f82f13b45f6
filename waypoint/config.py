"""Configuration management for Waypoint.

Storage Structure
-----------------
~/.waypoint/                  # User-level
├── checkpoints/              # Fallback checkpoint directory
└── tuning.yaml               # User tuning overrides

<project>/.waypoint/          # Project-level (opt-in by creating the dir)
├── checkpoints/              # Project checkpoints
├── topics.yaml               # Topic index read by the scan gate
├── recent.jsonl              # Recent-activity window read by the scan gate
└── tuning.yaml               # Project tuning overrides

Configuration
-------------
**WaypointConfig** (Tuning)
    Cascade: project .waypoint/tuning.yaml → user ~/.waypoint/tuning.yaml → defaults
    - tier1_weight, tier2_weight: Scan gate blend weights
    - sufficiency_threshold: Confidence needed to skip the full scan
    - max_evidence: Evidence records kept on a verdict
    - milestone_thresholds: Token usage levels that trigger a checkpoint update
    - slug_max_length: Topic slug truncation
    - recent_window_size: Records read from recent.jsonl
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from waypoint.errors import InvalidArgument

# Standard paths
WAYPOINT_DIR = Path.home() / ".waypoint"
CHECKPOINTS_DIR = WAYPOINT_DIR / "checkpoints"
TUNING_FILE = "tuning.yaml"
TOPIC_INDEX_FILE = "topics.yaml"
RECENT_WINDOW_FILE = "recent.jsonl"

DEFAULT_MILESTONES = (100_000, 150_000, 180_000)


@dataclass
class WaypointConfig:
    """User-configurable policy values.

    The scan gate weights and threshold are fixed policy, not derived from
    data; they live here so they can be tuned without touching the gate.
    """

    # Scan gate
    tier1_weight: float = 0.6
    tier2_weight: float = 0.4
    sufficiency_threshold: float = 0.70
    max_evidence: int = 5

    # Milestones (token budget levels)
    milestone_thresholds: tuple[int, ...] = field(default=DEFAULT_MILESTONES)

    # Store
    slug_max_length: int = 40
    recent_window_size: int = 20

    def __post_init__(self) -> None:
        # YAML gives us lists
        self.milestone_thresholds = tuple(self.milestone_thresholds)

    @classmethod
    def load(cls, waypoint_dir: Path) -> "WaypointConfig":
        """Load config from a waypoint directory.

        Args:
            waypoint_dir: Path to .waypoint directory (project-local or user-level)

        Returns:
            WaypointConfig with values from file, or defaults if not found
        """
        config_path = waypoint_dir / TUNING_FILE
        if config_path.exists():
            with open(config_path) as f:
                overrides = yaml.safe_load(f) or {}
            if not isinstance(overrides, dict):
                raise InvalidArgument(
                    f"{config_path} must contain a mapping",
                    context={"path": str(config_path)},
                )
            # Only apply known fields
            valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
            valid_overrides = {k: v for k, v in overrides.items() if k in valid_fields}
            config = cls(**valid_overrides)
            config.validate()
            return config
        return cls()

    def save(self, waypoint_dir: Path) -> Path:
        """Save non-default values to a waypoint directory.

        Returns:
            Path to saved config file
        """
        waypoint_dir.mkdir(parents=True, exist_ok=True)
        config_path = waypoint_dir / TUNING_FILE

        defaults = WaypointConfig()
        data: dict[str, Any] = {}
        for key, value in self.to_dict().items():
            if defaults.to_dict()[key] != value:
                data[key] = value

        if not data:
            data = {"_version": 1}  # Marker that config was explicitly saved

        from waypoint.atomic import atomic_write_yaml

        result = atomic_write_yaml(config_path, data, mode=0o600)
        if result.is_err():
            raise result.unwrap_err()

        return config_path

    def validate(self) -> None:
        """Raise InvalidArgument if any value is out of range."""
        if self.tier1_weight < 0 or self.tier2_weight < 0:
            raise InvalidArgument("Gate weights must be non-negative")
        if not 0.0 <= self.sufficiency_threshold <= 1.0:
            raise InvalidArgument("sufficiency_threshold must be within [0, 1]")
        if self.max_evidence < 1:
            raise InvalidArgument("max_evidence must be at least 1")
        if self.slug_max_length < 1:
            raise InvalidArgument("slug_max_length must be positive")
        if self.recent_window_size < 1:
            raise InvalidArgument("recent_window_size must be positive")
        validate_thresholds(self.milestone_thresholds)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "tier1_weight": self.tier1_weight,
            "tier2_weight": self.tier2_weight,
            "sufficiency_threshold": self.sufficiency_threshold,
            "max_evidence": self.max_evidence,
            "milestone_thresholds": list(self.milestone_thresholds),
            "slug_max_length": self.slug_max_length,
            "recent_window_size": self.recent_window_size,
        }


def validate_thresholds(thresholds: tuple[int, ...]) -> None:
    """Milestones must be positive integers in strictly ascending order."""
    if not thresholds:
        raise InvalidArgument("At least one milestone threshold is required")
    previous = 0
    for t in thresholds:
        if isinstance(t, bool) or not isinstance(t, int) or t <= previous:
            raise InvalidArgument(
                f"Milestone thresholds must be positive and ascending: {list(thresholds)}"
            )
        previous = t


def get_waypoint_config(project_path: Path | None = None) -> WaypointConfig:
    """Load WaypointConfig with project → user → default cascade.

    Args:
        project_path: Explicit project path. If None, auto-detects.

    Returns:
        WaypointConfig with merged values
    """
    if project_path is not None:
        project_dir = project_path / ".waypoint"
        if project_dir.exists():
            return WaypointConfig.load(project_dir)

    detected_root = detect_project_root()
    if detected_root is not None:
        project_dir = detected_root / ".waypoint"
        if project_dir.exists():
            return WaypointConfig.load(project_dir)

    return WaypointConfig.load(WAYPOINT_DIR)


def get_waypoint_dir(project_path: Path | None = None) -> Path:
    """Get the active .waypoint directory, preferring project-local."""
    if project_path is None:
        project_path = detect_project_root()
    if project_path is not None and (project_path / ".waypoint").is_dir():
        return project_path / ".waypoint"
    return WAYPOINT_DIR


def get_checkpoints_dir(project_path: Path | None = None) -> Path:
    """Get the checkpoints directory, preferring project-local if available."""
    waypoint_dir = get_waypoint_dir(project_path)
    if waypoint_dir == WAYPOINT_DIR:
        return CHECKPOINTS_DIR
    return waypoint_dir / "checkpoints"


def detect_project_root(start_path: Path | None = None) -> Path | None:
    """Detect project root by traversing up from start_path looking for markers.

    Looks for (in order of priority):
    1. A .waypoint directory
    2. A .git directory (git repository root)

    Stops at the home directory.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    home = Path.home()

    while current != current.parent:
        if (current / ".waypoint").is_dir():
            return current
        if (current / ".git").exists():
            return current
        if current == home:
            break
        current = current.parent

    return None
