"""
Checkpoint management for work order recovery.

A checkpoint records the last completed step of a work order together with
the progress accumulated so far, so a crashed or interrupted run can resume
without repeating completed steps.

Checkpoint File Structure:
    One YAML file per work order, ``{work_order_id}-checkpoint.yaml``::

        work_order_id: WO-42
        task_id: ISS-42-add-retry
        current_step: branch_creation
        timestamp: '2024-01-15T10:30:00+00:00'
        attempt_number: 1
        progress_snapshot:
          branch_name: feature/iss-42-add-retry
          file_changes: []
          ...
        files_changed: []
        resumable: true

Expiry:
    The store owns expiry. A checkpoint older than ``max_age`` still loads,
    but with ``resumable`` set to false, and callers treat it as absent.
    Unreadable or invalid files are deleted and reported as absent.

Concurrency Model:
    Each work order has its own asyncio lock, and files are written
    atomically (temporary file then rename). Only one process may drive a
    given work order on a checkout at a time.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiofiles
import structlog
import yaml
from pydantic import ValidationError

from worker_engine.enums import STEP_ORDER, Step
from worker_engine.exceptions import PathTraversalError
from worker_engine.models.domain import Checkpoint, CheckpointState

log = structlog.get_logger(__name__)

CHECKPOINT_SUFFIX = "-checkpoint.yaml"


class CheckpointStore:
    """Persist and restore work order checkpoints.

    Args:
        checkpoint_dir: Directory for checkpoint files (created if missing)
        max_age: Age after which a checkpoint is no longer resumable
        resumable_steps: Steps after which a checkpoint may be resumed;
            defaults to every step
        enabled: When false, saving is a no-op and nothing is ever loaded
    """

    def __init__(
        self,
        checkpoint_dir: str | Path,
        max_age: timedelta = timedelta(hours=24),
        resumable_steps: set[Step] | None = None,
        enabled: bool = True,
    ) -> None:
        self.checkpoint_dir = Path(checkpoint_dir)
        self.checkpoint_dir.mkdir(parents=True, exist_ok=True)
        self.max_age = max_age
        self.resumable_steps = set(resumable_steps) if resumable_steps is not None else set(Step)
        self.enabled = enabled
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, work_order_id: str) -> asyncio.Lock:
        """Get or create lock for a work order."""
        if work_order_id not in self._locks:
            self._locks[work_order_id] = asyncio.Lock()
        return self._locks[work_order_id]

    def _get_path(self, work_order_id: str) -> Path:
        """Checkpoint file for a work order.

        Raises:
            PathTraversalError: If the id would place the file outside the
                checkpoint directory
        """
        root = self.checkpoint_dir.resolve()
        path = (root / f"{work_order_id}{CHECKPOINT_SUFFIX}").resolve()
        if path.parent != root:
            raise PathTraversalError(work_order_id, str(root))
        return path

    async def _write(self, path: Path, checkpoint: Checkpoint) -> None:
        tmp_path = path.with_suffix(".tmp")
        content = yaml.safe_dump(checkpoint.model_dump(mode="json"), sort_keys=False)

        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(content)

        tmp_path.replace(path)

    async def save_checkpoint(
        self,
        work_order_id: str,
        task_id: str,
        step: Step,
        attempt: int,
        state: CheckpointState,
    ) -> Checkpoint | None:
        """Record ``step`` as the last completed step of a work order.

        Args:
            work_order_id: Work order being executed
            task_id: Task identifier (the issue id)
            step: The step that just completed
            attempt: Current attempt number
            state: Progress accumulated so far

        Returns:
            The saved checkpoint, or None when checkpointing is disabled
        """
        if not self.enabled:
            return None

        checkpoint = Checkpoint(
            work_order_id=work_order_id,
            task_id=task_id,
            current_step=step,
            timestamp=datetime.now(UTC),
            attempt_number=attempt,
            progress_snapshot=state,
            files_changed=[change.file_path for change in state.file_changes],
            resumable=step in self.resumable_steps,
        )

        async with self._get_lock(work_order_id):
            await self._write(self._get_path(work_order_id), checkpoint)

        log.info(
            "checkpoint_saved",
            work_order_id=work_order_id,
            step=step.value,
            attempt=attempt,
        )
        return checkpoint

    async def load_checkpoint(self, work_order_id: str) -> Checkpoint | None:
        """Load the checkpoint for a work order.

        Returns:
            The checkpoint (with ``resumable`` false if expired), or None if
            there is none or it was invalid
        """
        if not self.enabled:
            return None

        path = self._get_path(work_order_id)
        async with self._get_lock(work_order_id):
            if not path.exists():
                return None

            async with aiofiles.open(path) as f:
                content = await f.read()

            try:
                checkpoint = Checkpoint.model_validate(yaml.safe_load(content))
            except (yaml.YAMLError, ValidationError) as e:
                log.warning("invalid_checkpoint_file", file=str(path), error=str(e))
                path.unlink(missing_ok=True)
                return None

        if self.is_expired(checkpoint):
            log.info(
                "checkpoint_expired",
                work_order_id=work_order_id,
                timestamp=checkpoint.timestamp.isoformat(),
            )
            return checkpoint.model_copy(update={"resumable": False})

        log.info(
            "checkpoint_loaded",
            work_order_id=work_order_id,
            step=checkpoint.current_step.value,
            attempt=checkpoint.attempt_number,
        )
        return checkpoint

    def is_expired(self, checkpoint: Checkpoint) -> bool:
        timestamp = checkpoint.timestamp
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=UTC)
        return datetime.now(UTC) - timestamp > self.max_age

    async def has_checkpoint(self, work_order_id: str) -> bool:
        checkpoint = await self.load_checkpoint(work_order_id)
        return checkpoint is not None and checkpoint.resumable

    async def delete_checkpoint(self, work_order_id: str) -> bool:
        """Delete a work order's checkpoint. Returns False if there was none."""
        path = self._get_path(work_order_id)
        async with self._get_lock(work_order_id):
            if not path.exists():
                return False
            path.unlink()
        log.info("checkpoint_deleted", work_order_id=work_order_id)
        return True

    @staticmethod
    def get_next_step(step: Step | str) -> Step:
        """Step to resume at after ``step`` completed.

        Unknown steps and the final step map back to the first step.
        """
        try:
            position = STEP_ORDER.index(Step(step))
        except ValueError:
            return STEP_ORDER[0]
        if position + 1 >= len(STEP_ORDER):
            return STEP_ORDER[0]
        return STEP_ORDER[position + 1]

    @staticmethod
    def extract_state(checkpoint: Checkpoint) -> CheckpointState | None:
        """Progress snapshot of a checkpoint, if it carries one."""
        return checkpoint.progress_snapshot

    async def list_checkpoints(self) -> list[Checkpoint]:
        """All readable checkpoints, newest first. Invalid files are skipped."""
        checkpoints: list[Checkpoint] = []
        for path in sorted(self.checkpoint_dir.glob(f"*{CHECKPOINT_SUFFIX}")):
            async with aiofiles.open(path) as f:
                content = await f.read()
            try:
                checkpoints.append(Checkpoint.model_validate(yaml.safe_load(content)))
            except (yaml.YAMLError, ValidationError) as e:
                log.warning("invalid_checkpoint_file", file=str(path), error=str(e))
        return sorted(checkpoints, key=lambda cp: cp.timestamp, reverse=True)

    async def cleanup_old_checkpoints(self, max_age: timedelta | None = None) -> int:
        """Delete checkpoints older than ``max_age`` (default: the store's).

        Returns:
            Number of checkpoints deleted
        """
        cutoff = datetime.now(UTC) - (max_age or self.max_age)
        deleted = 0

        for checkpoint in await self.list_checkpoints():
            timestamp = checkpoint.timestamp
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=UTC)
            if timestamp < cutoff and await self.delete_checkpoint(checkpoint.work_order_id):
                deleted += 1

        if deleted > 0:
            log.info("old_checkpoints_cleaned", count=deleted)
        return deleted
