"""Tests for waypoint.store module."""

import shutil
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from waypoint.checkpoint import CheckpointKey
from waypoint.config import WaypointConfig
from waypoint.errors import (
    CorruptCheckpoint,
    Err,
    InvalidArgument,
    NotFound,
    StoreIOError,
)
from waypoint.store import CheckpointStore

START = datetime(2026, 10, 17, 9, 30, 15, tzinfo=UTC)
KEY = "2026-10-17-auth-refactor"


class FakeClock:
    """Deterministic, manually advanced clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> CheckpointStore:
    return CheckpointStore(root=tmp_path / "checkpoints", clock=clock, config=WaypointConfig())


def _files(store: CheckpointStore) -> list[str]:
    return sorted(p.name for p in store.root.glob("*.md"))


class TestCreateIfAbsent:
    """Tests for create_if_absent()."""

    def test_creates_generation_zero(self, store):
        checkpoint_id, created = store.create_if_absent("Auth Refactor")

        assert created is True
        assert checkpoint_id == "2026-10-17-auth-refactor-093015"
        assert _files(store) == ["2026-10-17-auth-refactor-093015-0.md"]

        checkpoint = store.retrieve(KEY)
        assert checkpoint.id == checkpoint_id
        assert checkpoint.topic == "Auth Refactor"
        assert checkpoint.compact_counter == 0

    def test_is_idempotent(self, store, clock):
        """A second call the same day returns the existing checkpoint untouched."""
        first_id, _ = store.create_if_absent("Auth Refactor")
        before = (store.root / "2026-10-17-auth-refactor-093015-0.md").read_bytes()
        clock.advance(600)

        second_id, created = store.create_if_absent("auth refactor")

        assert created is False
        assert second_id == first_id
        assert _files(store) == ["2026-10-17-auth-refactor-093015-0.md"]
        assert (store.root / "2026-10-17-auth-refactor-093015-0.md").read_bytes() == before

    def test_returns_compacted_checkpoint(self, store, clock):
        """Creation after a compaction finds the newer generation."""
        first_id, _ = store.create_if_absent("Auth Refactor")
        clock.advance(60)
        store.compact(KEY, "manual")

        checkpoint_id, created = store.create_if_absent("Auth Refactor")

        assert created is False
        assert checkpoint_id == first_id
        assert len(_files(store)) == 1

    def test_new_day_new_key(self, store, clock):
        store.create_if_absent("Auth Refactor")
        clock.advance(24 * 3600)

        checkpoint_id, created = store.create_if_absent("Auth Refactor")

        assert created is True
        assert checkpoint_id.startswith("2026-10-18-auth-refactor-")

    def test_initial_state_applied(self, store):
        store.create_if_absent(
            "Auth Refactor",
            {"task_state": {"current_task": "JWT refresh"}, "runtime_state": {"mode": "full"}},
        )

        checkpoint = store.retrieve(KEY)
        assert checkpoint.task_state.current_task == "JWT refresh"
        assert checkpoint.runtime_state == {"mode": "full"}

    def test_invalid_initial_state_writes_nothing(self, store):
        with pytest.raises(InvalidArgument):
            store.create_if_absent("Auth Refactor", {"task_state": {"bogus": 1}})
        assert not store.root.exists() or _files(store) == []

    def test_empty_topic_rejected(self, store):
        with pytest.raises(InvalidArgument):
            store.create_if_absent("   ")

    def test_unsluggable_topic_uses_default_slug(self, store):
        checkpoint_id, _ = store.create_if_absent("!!!")
        assert checkpoint_id == "2026-10-17-session-093015"

    def test_prefix_slugs_are_distinct(self, store):
        """'auth' and 'auth-flow' never resolve to each other's files."""
        auth_id, _ = store.create_if_absent("auth")
        flow_id, created = store.create_if_absent("auth flow")

        assert created is True
        assert auth_id != flow_id
        assert store.retrieve("2026-10-17-auth").id == auth_id
        assert store.retrieve("2026-10-17-auth-flow").id == flow_id


class TestRetrieve:
    def test_not_found(self, store):
        with pytest.raises(NotFound):
            store.retrieve(KEY)

    def test_accepts_key_object(self, store):
        store.create_if_absent("Auth Refactor")
        key = CheckpointKey(date="2026-10-17", topic_slug="auth-refactor")
        assert store.retrieve(key).topic == "Auth Refactor"

    def test_malformed_key_rejected(self, store):
        with pytest.raises(InvalidArgument):
            store.retrieve("auth refactor")

    def test_ignores_temp_files(self, store):
        store.create_if_absent("Auth Refactor")
        (store.root / ".2026-10-17-auth-refactor-093015-9_x.md.tmp").write_text("partial")

        assert store.retrieve(KEY).compact_counter == 0

    def test_read_failure_is_io_error_not_absence(self, store):
        store.create_if_absent("Auth Refactor")

        with patch.object(Path, "read_bytes", side_effect=PermissionError("denied")):
            with pytest.raises(StoreIOError):
                store.retrieve(KEY)

    def test_only_corrupt_files(self, store):
        store.root.mkdir(parents=True)
        (store.root / "2026-10-17-auth-refactor-093015-0.md").write_text("not a checkpoint")

        with pytest.raises(CorruptCheckpoint):
            store.retrieve(KEY)


class TestUpdate:
    def test_merges_and_bumps_last_updated(self, store, clock):
        store.create_if_absent("Auth Refactor", {"task_state": {"current_task": "JWT"}})
        clock.advance(90)

        updated = store.update(KEY, {"task_state": {"todo_list": ["write tests"]}})

        assert updated.task_state.current_task == "JWT"
        assert updated.task_state.todo_list == ("write tests",)
        assert updated.last_updated_at == "2026-10-17T09:31:45+00:00"
        assert updated.created_at == "2026-10-17T09:30:15+00:00"
        assert store.retrieve(KEY) == updated

    def test_keeps_filename(self, store, clock):
        store.create_if_absent("Auth Refactor")
        clock.advance(90)

        store.update(KEY, {"context_metrics": {"estimated_tokens": 5000}})

        assert _files(store) == ["2026-10-17-auth-refactor-093015-0.md"]

    def test_not_found(self, store):
        with pytest.raises(NotFound):
            store.update(KEY, {"task_state": {"current_task": "x"}})

    def test_rejects_unknown_field_without_writing(self, store):
        store.create_if_absent("Auth Refactor")
        before = store.retrieve(KEY)

        with pytest.raises(InvalidArgument):
            store.update(KEY, {"task_state": {"priority": "high"}})

        assert store.retrieve(KEY) == before

    def test_rejects_compact_counter(self, store):
        store.create_if_absent("Auth Refactor")
        with pytest.raises(InvalidArgument):
            store.update(KEY, {"compact_counter": {"value": 7}})

    def test_write_failure_raises(self, store):
        store.create_if_absent("Auth Refactor")
        failure = Err(StoreIOError("disk full", code="ATOMIC_WRITE_FAILED"))

        with patch("waypoint.store.atomic_write_bytes", return_value=failure):
            with pytest.raises(StoreIOError, match="disk full"):
                store.update(KEY, {"task_state": {"current_task": "x"}})

    def test_bad_milestone_history_leaves_checkpoint_readable(self, store):
        store.create_if_absent("Auth Refactor")
        before = store.retrieve(KEY)
        history = [{"threshold": "high", "tokens": -1, "timestamp": 0}]

        with pytest.raises(InvalidArgument):
            store.update(KEY, {"context_metrics": {"checkpoint_history": history}})

        assert store.retrieve(KEY) == before

    def test_runtime_state_tuple_reads_back_equal(self, store):
        store.create_if_absent("Auth Refactor")

        updated = store.update(KEY, {"runtime_state": {"manifests": ("a.yaml", "b.yaml")}})

        assert updated.runtime_state["manifests"] == ["a.yaml", "b.yaml"]
        assert store.retrieve(KEY) == updated

    def test_runtime_state_unsupported_value_writes_nothing(self, store):
        store.create_if_absent("Auth Refactor")
        before = store.retrieve(KEY)

        with pytest.raises(InvalidArgument):
            store.update(KEY, {"runtime_state": {"handle": object()}})

        assert store.retrieve(KEY) == before
        assert _files(store) == ["2026-10-17-auth-refactor-093015-0.md"]


class TestCompact:
    """Tests for compact()."""

    def test_counter_strictly_increases(self, store, clock):
        store.create_if_absent("Auth Refactor")

        counters = []
        for _ in range(3):
            clock.advance(60)
            counters.append(store.compact(KEY, "token_budget").compact_counter)

        assert counters == [1, 2, 3]
        assert store.retrieve(KEY).compact_counter == 3

    def test_exactly_one_file_after_compaction(self, store, clock):
        store.create_if_absent("Auth Refactor")
        clock.advance(60)

        store.compact(KEY, "manual")

        assert _files(store) == ["2026-10-17-auth-refactor-093115-1.md"]

    def test_records_history_and_resets_window(self, store, clock):
        store.create_if_absent("Auth Refactor")
        metrics = {"estimated_tokens": 182_000, "last_token_checkpoint": 180_000}
        store.update(KEY, {"context_metrics": metrics})
        clock.advance(60)

        compacted = store.compact(KEY, "token_budget", tokens_before=182_000, tokens_after=41_000)

        event = compacted.compact_history[-1]
        assert event.counter == 1
        assert event.trigger == "token_budget"
        assert event.tokens_before == 182_000
        assert event.tokens_after == 41_000
        assert event.timestamp == "2026-10-17T09:31:15+00:00"
        assert compacted.context_metrics.estimated_tokens == 41_000
        assert compacted.context_metrics.last_token_checkpoint == 41_000
        assert compacted.generation_started_at == "2026-10-17T09:31:15+00:00"

    def test_compaction_after_midnight_keeps_key_date(self, store, clock):
        """The filename date stays the key date so the session still resolves."""
        store.create_if_absent("Auth Refactor")
        clock.now = datetime(2026, 10, 18, 0, 5, 0, tzinfo=UTC)

        compacted = store.compact(KEY, "manual")

        assert _files(store) == ["2026-10-17-auth-refactor-000500-1.md"]
        assert compacted.generation_started_at == "2026-10-18T00:05:00+00:00"
        assert store.retrieve(KEY).compact_counter == 1

    def test_identity_survives_compaction(self, store, clock):
        checkpoint_id, _ = store.create_if_absent(
            "Auth Refactor", {"task_state": {"current_task": "JWT"}}
        )
        clock.advance(60)

        compacted = store.compact(KEY, "manual")

        assert compacted.id == checkpoint_id
        assert compacted.created_at == "2026-10-17T09:30:15+00:00"
        assert compacted.task_state.current_task == "JWT"

    def test_same_second_compaction(self, store):
        """Counter alone disambiguates generations written in the same second."""
        store.create_if_absent("Auth Refactor")

        store.compact(KEY, "manual")
        store.compact(KEY, "manual")

        assert _files(store) == ["2026-10-17-auth-refactor-093015-2.md"]

    def test_not_found(self, store):
        with pytest.raises(NotFound):
            store.compact(KEY, "manual")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"trigger": ""},
            {"trigger": "manual", "tokens_before": -1},
            {"trigger": "manual", "tokens_after": "10"},
        ],
    )
    def test_invalid_arguments(self, store, kwargs):
        store.create_if_absent("Auth Refactor")
        with pytest.raises(InvalidArgument):
            store.compact(KEY, **kwargs)

    def test_failed_write_keeps_previous_generation(self, store, clock):
        """If the new generation can't be written, the old file is untouched."""
        store.create_if_absent("Auth Refactor")
        clock.advance(60)
        failure = Err(StoreIOError("disk full", code="ATOMIC_WRITE_FAILED"))

        with patch("waypoint.store.atomic_write_bytes", return_value=failure):
            with pytest.raises(StoreIOError):
                store.compact(KEY, "manual")

        assert _files(store) == ["2026-10-17-auth-refactor-093015-0.md"]
        assert store.retrieve(KEY).compact_counter == 0


class TestCrashRecovery:
    """Interrupted compactions and torn writes."""

    def test_failed_delete_leaves_both_and_higher_wins(self, store, clock):
        store.create_if_absent("Auth Refactor")
        clock.advance(60)

        with patch.object(Path, "unlink", side_effect=OSError("busy")):
            compacted = store.compact(KEY, "manual")

        assert _files(store) == [
            "2026-10-17-auth-refactor-093015-0.md",
            "2026-10-17-auth-refactor-093115-1.md",
        ]
        assert store.retrieve(KEY) == compacted

    def test_cleanup_removes_superseded(self, store, clock):
        store.create_if_absent("Auth Refactor")
        clock.advance(60)
        with patch.object(Path, "unlink", side_effect=OSError("busy")):
            compacted = store.compact(KEY, "manual")

        removed = store.cleanup(KEY)

        assert [p.name for p in removed] == ["2026-10-17-auth-refactor-093015-0.md"]
        assert _files(store) == ["2026-10-17-auth-refactor-093115-1.md"]
        assert store.retrieve(KEY) == compacted

    def test_cleanup_with_nothing_to_do(self, store):
        store.create_if_absent("Auth Refactor")
        assert store.cleanup(KEY) == []

    def test_next_compaction_continues_from_higher(self, store, clock):
        store.create_if_absent("Auth Refactor")
        clock.advance(60)
        with patch.object(Path, "unlink", side_effect=OSError("busy")):
            store.compact(KEY, "manual")
        clock.advance(60)

        assert store.compact(KEY, "manual").compact_counter == 2

    def test_torn_newer_file_falls_back(self, store, clock):
        """A half-written higher generation is skipped in favour of the last good one."""
        store.create_if_absent("Auth Refactor", {"task_state": {"current_task": "JWT"}})
        good = store.root / "2026-10-17-auth-refactor-093015-0.md"
        torn = store.root / "2026-10-17-auth-refactor-093015-1.md"
        torn.write_bytes(good.read_bytes()[:40])

        checkpoint = store.retrieve(KEY)

        assert checkpoint.compact_counter == 0
        assert checkpoint.task_state.current_task == "JWT"

    def test_cleanup_keeps_torn_newer_file(self, store):
        store.create_if_absent("Auth Refactor")
        good = store.root / "2026-10-17-auth-refactor-093015-0.md"
        torn = store.root / "2026-10-17-auth-refactor-093015-1.md"
        torn.write_bytes(good.read_bytes()[:40])

        assert store.cleanup(KEY) == []
        assert torn.exists()

    def test_duplicate_generation_copy(self, store, clock):
        """Two readable files with the same counter: the later time wins."""
        store.create_if_absent("Auth Refactor")
        original = store.root / "2026-10-17-auth-refactor-093015-0.md"
        copy = store.root / "2026-10-17-auth-refactor-093000-0.md"
        shutil.copy(original, copy)

        store.update(KEY, {"task_state": {"current_task": "latest"}})

        assert store.retrieve(KEY).task_state.current_task == "latest"
        assert original.read_bytes() != copy.read_bytes()
        assert [p.name for p in store.cleanup(KEY)] == [copy.name]

    def test_cleanup_removes_leftover_temp_files_for_key(self, store):
        store.create_if_absent("Auth Refactor")
        leftover = store.root / ".2026-10-17-auth-refactor-093015-1_abc_12.md.tmp"
        other_key = store.root / ".2026-10-17-auth-refactor-flow-093015-0_xyz.md.tmp"
        leftover.write_bytes(b"---\npartial")
        other_key.write_bytes(b"---\npartial")

        removed = store.cleanup(KEY)

        assert removed == [leftover]
        assert not leftover.exists()
        assert other_key.exists()
        assert store.retrieve(KEY).compact_counter == 0


class TestListKeys:
    def test_empty_store(self, store):
        assert store.list_keys() == []

    def test_distinct_keys_newest_first(self, store, clock):
        store.create_if_absent("auth")
        store.create_if_absent("billing")
        clock.advance(24 * 3600)
        store.create_if_absent("auth")
        store.root.joinpath("README.md").write_text("not a checkpoint")

        keys = [str(k) for k in store.list_keys()]

        assert keys == ["2026-10-18-auth", "2026-10-17-billing", "2026-10-17-auth"]
