"""Tests for checkpoint management."""

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import yaml

from worker_engine.engine.checkpointing import CheckpointStore
from worker_engine.enums import Step
from worker_engine.exceptions import PathTraversalError
from worker_engine.models.domain import CheckpointState, CommitInfo, FileChange, WorkOrder


@pytest.fixture
def temp_checkpoint_dir(tmp_path: Path) -> Path:
    return tmp_path / "checkpoints"


@pytest.fixture
def store(temp_checkpoint_dir: Path) -> CheckpointStore:
    return CheckpointStore(temp_checkpoint_dir)


@pytest.fixture
def state(work_order: WorkOrder) -> CheckpointState:
    return CheckpointState(
        work_order=work_order,
        branch_name="feature/iss-42-add-retry",
        file_changes=[FileChange(file_path="src/app.py", change_type="modify", lines_added=3)],
        commits=[CommitInfo(hash="abc", message="feat: x")],
    )


class TestSaveAndLoad:
    @pytest.mark.asyncio
    async def test_save_creates_yaml_file(self, store, state, temp_checkpoint_dir):
        await store.save_checkpoint("WO-42", "ISS-42", Step.BRANCH_CREATION, 1, state)

        path = temp_checkpoint_dir / "WO-42-checkpoint.yaml"
        assert path.exists()
        data = yaml.safe_load(path.read_text())
        assert data["current_step"] == "branch_creation"
        assert data["attempt_number"] == 1
        assert data["files_changed"] == ["src/app.py"]
        assert data["resumable"] is True

    @pytest.mark.asyncio
    async def test_load_round_trip(self, store, state):
        saved = await store.save_checkpoint("WO-42", "ISS-42", Step.CODE_GENERATION, 2, state)
        loaded = await store.load_checkpoint("WO-42")

        assert loaded == saved
        assert store.extract_state(loaded) == state

    @pytest.mark.asyncio
    async def test_save_overwrites_previous(self, store, state):
        await store.save_checkpoint("WO-42", "ISS-42", Step.CONTEXT_ANALYSIS, 1, state)
        await store.save_checkpoint("WO-42", "ISS-42", Step.BRANCH_CREATION, 1, state)

        loaded = await store.load_checkpoint("WO-42")
        assert loaded.current_step == Step.BRANCH_CREATION
        assert len(await store.list_checkpoints()) == 1

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, store):
        assert await store.load_checkpoint("WO-missing") is None

    @pytest.mark.asyncio
    async def test_invalid_file_is_deleted(self, store, temp_checkpoint_dir):
        path = temp_checkpoint_dir / "WO-bad-checkpoint.yaml"
        path.write_text("work_order_id: WO-bad\ncurrent_step: nowhere\n")

        assert await store.load_checkpoint("WO-bad") is None
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_unparseable_yaml_is_deleted(self, store, temp_checkpoint_dir):
        path = temp_checkpoint_dir / "WO-bad-checkpoint.yaml"
        path.write_text("key: [unclosed")

        assert await store.load_checkpoint("WO-bad") is None
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_concurrent_saves_leave_valid_file(self, store, state):
        await asyncio.gather(
            *[
                store.save_checkpoint("WO-42", "ISS-42", step, 1, state)
                for step in (Step.CONTEXT_ANALYSIS, Step.BRANCH_CREATION, Step.CODE_GENERATION)
            ]
        )
        assert await store.load_checkpoint("WO-42") is not None


class TestExpiry:
    @pytest.mark.asyncio
    async def test_expired_checkpoint_is_not_resumable(self, temp_checkpoint_dir, state):
        store = CheckpointStore(temp_checkpoint_dir, max_age=timedelta(hours=24))
        await store.save_checkpoint("WO-42", "ISS-42", Step.COMMIT, 1, state)

        path = temp_checkpoint_dir / "WO-42-checkpoint.yaml"
        data = yaml.safe_load(path.read_text())
        data["timestamp"] = (datetime.now(UTC) - timedelta(hours=25)).isoformat()
        path.write_text(yaml.safe_dump(data))

        loaded = await store.load_checkpoint("WO-42")
        assert loaded is not None
        assert loaded.resumable is False
        assert await store.has_checkpoint("WO-42") is False

    @pytest.mark.asyncio
    async def test_fresh_checkpoint_is_resumable(self, store, state):
        await store.save_checkpoint("WO-42", "ISS-42", Step.COMMIT, 1, state)
        assert await store.has_checkpoint("WO-42") is True

    @pytest.mark.asyncio
    async def test_non_resumable_step(self, temp_checkpoint_dir, state):
        store = CheckpointStore(temp_checkpoint_dir, resumable_steps={Step.COMMIT})
        checkpoint = await store.save_checkpoint("WO-42", "ISS-42", Step.VERIFICATION, 1, state)

        assert checkpoint.resumable is False
        assert await store.has_checkpoint("WO-42") is False


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_existing(self, store, state):
        await store.save_checkpoint("WO-42", "ISS-42", Step.COMMIT, 1, state)

        assert await store.delete_checkpoint("WO-42") is True
        assert await store.load_checkpoint("WO-42") is None

    @pytest.mark.asyncio
    async def test_delete_missing(self, store):
        assert await store.delete_checkpoint("WO-42") is False


class TestPathConfinement:
    @pytest.mark.asyncio
    async def test_save_outside_checkpoint_dir_is_rejected(self, store, state, tmp_path):
        with pytest.raises(PathTraversalError):
            await store.save_checkpoint("../../escaped", "ISS-42", Step.COMMIT, 1, state)

        assert list(tmp_path.parent.glob("escaped-checkpoint*")) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("work_order_id", ["../victim", "nested/WO-1", "/etc/WO-1"])
    async def test_load_and_delete_reject_escaping_ids(self, store, work_order_id):
        with pytest.raises(PathTraversalError):
            await store.load_checkpoint(work_order_id)
        with pytest.raises(PathTraversalError):
            await store.delete_checkpoint(work_order_id)

    @pytest.mark.asyncio
    async def test_victim_file_next_to_checkpoint_dir_survives(self, store, temp_checkpoint_dir):
        victim = temp_checkpoint_dir.parent / "victim-checkpoint.yaml"
        victim.write_text("keep me")

        with pytest.raises(PathTraversalError):
            await store.delete_checkpoint("../victim")

        assert victim.read_text() == "keep me"


class TestNextStep:
    @pytest.mark.parametrize(
        "completed,expected",
        [
            (Step.CONTEXT_ANALYSIS, Step.BRANCH_CREATION),
            (Step.BRANCH_CREATION, Step.CODE_GENERATION),
            (Step.VERIFICATION, Step.COMMIT),
            (Step.COMMIT, Step.RESULT_PERSISTENCE),
            (Step.RESULT_PERSISTENCE, Step.CONTEXT_ANALYSIS),
            ("branch_creation", Step.CODE_GENERATION),
            ("not_a_step", Step.CONTEXT_ANALYSIS),
        ],
    )
    def test_get_next_step(self, completed, expected):
        assert CheckpointStore.get_next_step(completed) == expected


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_list_checkpoints_skips_invalid(self, store, state, temp_checkpoint_dir):
        await store.save_checkpoint("WO-1", "ISS-1", Step.COMMIT, 1, state)
        await store.save_checkpoint("WO-2", "ISS-2", Step.COMMIT, 1, state)
        (temp_checkpoint_dir / "WO-3-checkpoint.yaml").write_text("nope: [")

        ids = {cp.work_order_id for cp in await store.list_checkpoints()}
        assert ids == {"WO-1", "WO-2"}

    @pytest.mark.asyncio
    async def test_cleanup_old_checkpoints(self, store, state, temp_checkpoint_dir):
        await store.save_checkpoint("WO-old", "ISS-1", Step.COMMIT, 1, state)
        await store.save_checkpoint("WO-new", "ISS-2", Step.COMMIT, 1, state)

        path = temp_checkpoint_dir / "WO-old-checkpoint.yaml"
        data = yaml.safe_load(path.read_text())
        data["timestamp"] = (datetime.now(UTC) - timedelta(days=3)).isoformat()
        path.write_text(yaml.safe_dump(data))

        deleted = await store.cleanup_old_checkpoints(timedelta(days=1))

        assert deleted == 1
        assert await store.load_checkpoint("WO-old") is None
        assert await store.load_checkpoint("WO-new") is not None

    @pytest.mark.asyncio
    async def test_disabled_store(self, temp_checkpoint_dir, state):
        store = CheckpointStore(temp_checkpoint_dir, enabled=False)

        assert await store.save_checkpoint("WO-42", "ISS-42", Step.COMMIT, 1, state) is None
        assert await store.load_checkpoint("WO-42") is None
