"""Tests for waypoint.config module."""

from pathlib import Path

import pytest
import yaml

from waypoint import config as config_module
from waypoint.config import (
    DEFAULT_MILESTONES,
    WaypointConfig,
    detect_project_root,
    get_checkpoints_dir,
    get_waypoint_config,
    get_waypoint_dir,
    validate_thresholds,
)
from waypoint.errors import InvalidArgument


@pytest.fixture
def user_dir(tmp_path: Path, monkeypatch):
    """Redirect the user-level ~/.waypoint into tmp_path."""
    waypoint_dir = tmp_path / "home" / ".waypoint"
    monkeypatch.setattr(config_module, "WAYPOINT_DIR", waypoint_dir)
    monkeypatch.setattr(config_module, "CHECKPOINTS_DIR", waypoint_dir / "checkpoints")
    return waypoint_dir


class TestWaypointConfig:
    """Tests for WaypointConfig load/save."""

    def test_defaults(self):
        config = WaypointConfig()
        assert config.tier1_weight == 0.6
        assert config.tier2_weight == 0.4
        assert config.sufficiency_threshold == 0.70
        assert config.max_evidence == 5
        assert config.milestone_thresholds == DEFAULT_MILESTONES

    def test_load_missing_file_gives_defaults(self, tmp_path: Path):
        assert WaypointConfig.load(tmp_path) == WaypointConfig()

    def test_load_applies_known_fields_only(self, tmp_path: Path):
        (tmp_path / "tuning.yaml").write_text(
            yaml.safe_dump(
                {
                    "sufficiency_threshold": 0.8,
                    "milestone_thresholds": [50000, 90000],
                    "embedding_model": "ignored",
                }
            )
        )

        config = WaypointConfig.load(tmp_path)

        assert config.sufficiency_threshold == 0.8
        assert config.milestone_thresholds == (50000, 90000)
        assert config.tier1_weight == 0.6

    def test_load_empty_file_gives_defaults(self, tmp_path: Path):
        (tmp_path / "tuning.yaml").write_text("")
        assert WaypointConfig.load(tmp_path) == WaypointConfig()

    def test_load_rejects_non_mapping(self, tmp_path: Path):
        (tmp_path / "tuning.yaml").write_text("- 0.8\n")
        with pytest.raises(InvalidArgument):
            WaypointConfig.load(tmp_path)

    def test_load_rejects_out_of_range_values(self, tmp_path: Path):
        (tmp_path / "tuning.yaml").write_text("sufficiency_threshold: 1.5\n")
        with pytest.raises(InvalidArgument, match="sufficiency_threshold"):
            WaypointConfig.load(tmp_path)

    def test_save_writes_only_non_defaults(self, tmp_path: Path):
        path = WaypointConfig(max_evidence=3).save(tmp_path)

        assert yaml.safe_load(path.read_text()) == {"max_evidence": 3}

    def test_save_defaults_writes_marker(self, tmp_path: Path):
        path = WaypointConfig().save(tmp_path)

        assert yaml.safe_load(path.read_text()) == {"_version": 1}

    def test_save_then_load(self, tmp_path: Path):
        original = WaypointConfig(tier1_weight=0.5, milestone_thresholds=(10, 20))
        original.save(tmp_path)

        assert WaypointConfig.load(tmp_path) == original


class TestValidateThresholds:
    def test_accepts_ascending(self):
        validate_thresholds((100_000, 150_000, 180_000))

    @pytest.mark.parametrize(
        "thresholds",
        [(), (0, 10), (10, 10), (20, 10), (-5,), (True, 10), (1.5, 10)],
    )
    def test_rejects_invalid(self, thresholds):
        with pytest.raises(InvalidArgument):
            validate_thresholds(thresholds)


class TestCascade:
    """Project → user → default resolution."""

    def test_project_config_wins(self, tmp_path: Path, user_dir: Path):
        user_dir.mkdir(parents=True)
        (user_dir / "tuning.yaml").write_text("max_evidence: 7\n")
        project = tmp_path / "project"
        (project / ".waypoint").mkdir(parents=True)
        (project / ".waypoint" / "tuning.yaml").write_text("max_evidence: 2\n")

        assert get_waypoint_config(project).max_evidence == 2

    def test_falls_back_to_user_config(self, tmp_path: Path, user_dir: Path, monkeypatch):
        user_dir.mkdir(parents=True)
        (user_dir / "tuning.yaml").write_text("max_evidence: 7\n")
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)

        assert get_waypoint_config(elsewhere).max_evidence == 7

    def test_checkpoints_dir_prefers_project(self, tmp_path: Path, user_dir: Path):
        project = tmp_path / "project"
        (project / ".waypoint").mkdir(parents=True)

        assert get_waypoint_dir(project) == project / ".waypoint"
        assert get_checkpoints_dir(project) == project / ".waypoint" / "checkpoints"

    def test_checkpoints_dir_user_fallback(self, tmp_path: Path, user_dir: Path):
        project = tmp_path / "plain"
        project.mkdir()

        assert get_checkpoints_dir(project) == user_dir / "checkpoints"


class TestDetectProjectRoot:
    def test_finds_waypoint_dir_from_subdirectory(self, tmp_path: Path):
        (tmp_path / ".waypoint").mkdir()
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)

        assert detect_project_root(nested) == tmp_path.resolve()

    def test_finds_git_root(self, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        nested = tmp_path / "docs"
        nested.mkdir()

        assert detect_project_root(nested) == tmp_path.resolve()
