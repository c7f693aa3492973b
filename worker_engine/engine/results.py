"""Persistence of implementation results as YAML documents.

Each result is written to ``<results_dir>/results/<work_order_id>-result.yaml``
under a top-level ``implementation_result`` key.
"""

from __future__ import annotations

from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from worker_engine.exceptions import ResultPersistenceError
from worker_engine.models.domain import ImplementationResult
from worker_engine.utils.file_access import SecureFileAccess

log = structlog.get_logger(__name__)

RESULT_KEY = "implementation_result"


def serialize_result(result: ImplementationResult) -> str:
    data = result.model_dump(mode="json", exclude_none=True)
    return yaml.safe_dump({RESULT_KEY: data}, sort_keys=False, allow_unicode=True)


def parse_result(content: str) -> ImplementationResult:
    """Inverse of ``serialize_result``.

    Raises:
        ValueError: If the document is not a serialized result
    """
    document = yaml.safe_load(content)
    if not isinstance(document, dict) or RESULT_KEY not in document:
        raise ValueError(f"document has no '{RESULT_KEY}' key")
    return ImplementationResult.model_validate(document[RESULT_KEY])


class ResultStore:
    """Read and write result documents inside the project root."""

    def __init__(self, files: SecureFileAccess, results_dir: str | Path) -> None:
        self.files = files
        self.results_dir = Path(results_dir)

    def path_for(self, work_order_id: str) -> Path:
        return self.results_dir / "results" / f"{work_order_id}-result.yaml"

    async def save(self, result: ImplementationResult) -> Path:
        """Write ``result``.

        Raises:
            ResultPersistenceError: If the file cannot be written
        """
        try:
            path = await self.files.write_text(self.path_for(result.work_order_id), serialize_result(result))
        except OSError as e:
            raise ResultPersistenceError(result.work_order_id, "save", e) from e

        log.info("result_saved", work_order_id=result.work_order_id, status=result.status.value, path=str(path))
        return path

    async def load(self, work_order_id: str) -> ImplementationResult:
        """Read a previously saved result.

        Raises:
            ResultPersistenceError: If the file is missing or invalid
        """
        try:
            content = await self.files.read_text(self.path_for(work_order_id))
            return parse_result(content)
        except (OSError, yaml.YAMLError, ValueError, ValidationError) as e:
            raise ResultPersistenceError(work_order_id, "load", e) from e
