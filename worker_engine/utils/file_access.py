"""Path-validated file access rooted at the project directory.

Every path is resolved against the project root and rejected if it ends up
outside it, whether through ``..`` segments, absolute paths or symlinks.
"""

from __future__ import annotations

from pathlib import Path

import aiofiles
import structlog

from worker_engine.exceptions import PathTraversalError

log = structlog.get_logger(__name__)


class SecureFileAccess:
    """Read and write files inside a project root."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def validate_path(self, path: str | Path) -> Path:
        """Resolve ``path`` relative to the root.

        Returns:
            The absolute resolved path

        Raises:
            PathTraversalError: If the path escapes the root
        """
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()

        if resolved != self.root and not resolved.is_relative_to(self.root):
            raise PathTraversalError(str(path), str(self.root))
        return resolved

    async def exists(self, path: str | Path) -> bool:
        return self.validate_path(path).is_file()

    async def read_text(self, path: str | Path) -> str:
        target = self.validate_path(path)
        async with aiofiles.open(target, encoding="utf-8") as f:
            return await f.read()

    async def write_text(self, path: str | Path, content: str) -> Path:
        """Write ``content`` atomically, creating parent directories."""
        target = self.validate_path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f"{target.name}.tmp")

        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(content)

        tmp_path.replace(target)
        log.debug("file_written", path=str(target), size=len(content))
        return target
