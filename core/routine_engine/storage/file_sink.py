"""
File Sink - Execution history as JSON documents on disk.

Layout:
  {base_path}/executions/{workflow_id}/execution.json

Every write replaces the whole document atomically. Blocking file I/O runs
in a worker thread.
"""

import asyncio
import logging
from pathlib import Path

from routine_engine.schemas.execution import (
    CreateExecutionInput,
    ExecutionRecord,
    StoreNodeResultInput,
    UpdateStatusInput,
)
from routine_engine.storage.sink import ExecutionNotFoundError
from routine_engine.utils.io import atomic_write

logger = logging.getLogger(__name__)


class FileExecutionSink:
    """
    Stores one execution.json per run.

    Writes are serialized with an asyncio lock; each one is a
    read-modify-write of the run's document.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.executions_dir = self.base_path / "executions"
        self._lock = asyncio.Lock()

    def get_execution_path(self, workflow_id: str) -> Path:
        return self.executions_dir / workflow_id / "execution.json"

    def _read(self, workflow_id: str) -> ExecutionRecord | None:
        path = self.get_execution_path(workflow_id)
        if not path.exists():
            return None
        return ExecutionRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def _write(self, record: ExecutionRecord) -> None:
        path = self.get_execution_path(record.workflow_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with atomic_write(path) as f:
            f.write(record.model_dump_json(by_alias=True, indent=2))

    def _read_required(self, workflow_id: str) -> ExecutionRecord:
        record = self._read(workflow_id)
        if record is None:
            raise ExecutionNotFoundError(workflow_id)
        return record

    async def create_execution(self, payload: CreateExecutionInput) -> None:
        def _create():
            if self.get_execution_path(payload.workflow_id).exists():
                logger.debug(f"Execution {payload.workflow_id} already exists; keeping it")
                return
            self._write(ExecutionRecord.from_create(payload))

        async with self._lock:
            await asyncio.to_thread(_create)
        logger.debug(f"Created execution record {payload.workflow_id}")

    async def update_status(self, payload: UpdateStatusInput) -> None:
        def _update():
            record = self._read_required(payload.workflow_id)
            record.apply_status(payload)
            self._write(record)

        async with self._lock:
            await asyncio.to_thread(_update)

    async def store_node_result(self, payload: StoreNodeResultInput) -> None:
        def _store():
            record = self._read_required(payload.workflow_id)
            record.node_results.append(payload)
            self._write(record)

        async with self._lock:
            await asyncio.to_thread(_store)

    # === QUERIES ===

    async def get_execution(self, workflow_id: str) -> ExecutionRecord | None:
        return await asyncio.to_thread(self._read, workflow_id)

    async def list_executions(self, routine_id: str | None = None) -> list[ExecutionRecord]:
        """Executions, newest first, optionally for one routine."""

        def _scan():
            records = []
            if not self.executions_dir.exists():
                return records
            for execution_dir in self.executions_dir.iterdir():
                path = execution_dir / "execution.json"
                if not path.exists():
                    continue
                try:
                    record = ExecutionRecord.model_validate_json(path.read_text(encoding="utf-8"))
                except ValueError as e:
                    logger.warning(f"Failed to load {path}: {e}")
                    continue
                if routine_id is None or record.routine_id == routine_id:
                    records.append(record)
            records.sort(key=lambda r: r.created_at, reverse=True)
            return records

        return await asyncio.to_thread(_scan)

    async def get_node_results(
        self, workflow_id: str, node_id: str | None = None
    ) -> list[StoreNodeResultInput]:
        record = await self.get_execution(workflow_id)
        if record is None:
            return []
        return record.node_results_for(node_id)
