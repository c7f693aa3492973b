"""Tests for path-validated file access."""

import pytest

from worker_engine.exceptions import PathTraversalError
from worker_engine.utils.file_access import SecureFileAccess


@pytest.fixture
def files(project_root):
    return SecureFileAccess(project_root)


class TestValidatePath:
    def test_relative_path_inside_root(self, files, project_root):
        assert files.validate_path("src/app.py") == project_root.resolve() / "src" / "app.py"

    def test_root_itself(self, files, project_root):
        assert files.validate_path(".") == project_root.resolve()

    @pytest.mark.parametrize("path", ["../outside.py", "src/../../outside.py", "/etc/passwd"])
    def test_escaping_paths_are_rejected(self, files, path):
        with pytest.raises(PathTraversalError):
            files.validate_path(path)

    def test_symlink_out_of_root_is_rejected(self, files, project_root, tmp_path):
        outside = tmp_path / "secret.txt"
        outside.write_text("secret")
        (project_root / "link.txt").symlink_to(outside)

        with pytest.raises(PathTraversalError):
            files.validate_path("link.txt")


class TestReadWrite:
    @pytest.mark.asyncio
    async def test_write_creates_parents_and_reads_back(self, files, project_root):
        path = await files.write_text("a/b/c.txt", "hello")

        assert path == project_root.resolve() / "a" / "b" / "c.txt"
        assert await files.exists("a/b/c.txt") is True
        assert await files.read_text("a/b/c.txt") == "hello"
        assert not (project_root / "a" / "b" / "c.txt.tmp").exists()

    @pytest.mark.asyncio
    async def test_write_outside_root_is_rejected(self, files, tmp_path):
        with pytest.raises(PathTraversalError):
            await files.write_text("../escape.txt", "x")
        assert not (tmp_path / "escape.txt").exists()

    @pytest.mark.asyncio
    async def test_exists_is_false_for_directories(self, files, project_root):
        (project_root / "src").mkdir()
        assert await files.exists("src") is False
