"""Tests for the code and test generation backends."""

import pytest

from worker_engine.engine.generation import NoOpCodeGenerator, PytestSkeletonGenerator
from worker_engine.models.domain import (
    CodeContext,
    ExecutionContext,
    ExecutionOptions,
    FileContext,
    WorkOrder,
)

SOURCE = '''"""Utilities."""


def parse(text):
    return text.split()


async def fetch(url):
    return url


class Client:
    pass


def _private():
    pass
'''


@pytest.fixture
def generator():
    return PytestSkeletonGenerator()


def context_with(*files: FileContext) -> CodeContext:
    return CodeContext(work_order=WorkOrder(order_id="WO-1", issue_id="ISS-1"), related_files=list(files))


class TestPytestSkeletonGenerator:
    def test_public_symbols(self, generator):
        assert generator.public_symbols(SOURCE) == [
            ("function", "parse"),
            ("function", "fetch"),
            ("class", "Client"),
        ]

    @pytest.mark.parametrize(
        "source,module",
        [
            ("src/pkg/utils.py", "pkg.utils"),
            ("pkg/__init__.py", "pkg"),
            ("tool.py", "tool"),
        ],
    )
    def test_module_name(self, generator, source, module):
        assert generator.module_name(source) == module

    def test_test_path(self, generator):
        assert generator.test_path_for("src/pkg/utils.py") == "tests/test_utils.py"
        assert PytestSkeletonGenerator("checks").test_path_for("a.py") == "checks/test_a.py"

    @pytest.mark.asyncio
    async def test_generate_suite(self, generator):
        result = await generator.generate(context_with(FileContext(path="src/pkg/utils.py", content=SOURCE)))

        [suite] = result.suites
        assert suite.source_file == "src/pkg/utils.py"
        assert suite.test_file == "tests/test_utils.py"
        assert suite.total_tests == 3
        assert result.total_tests == 3
        assert 'importlib.import_module("pkg.utils")' in suite.content
        assert "def test_client_is_exposed():" in suite.content
        assert "_private" not in suite.content
        compile(suite.content, suite.test_file, "exec")

    @pytest.mark.asyncio
    async def test_skipped_files(self, generator):
        result = await generator.generate(
            context_with(
                FileContext(path="README.md", content="# readme"),
                FileContext(path="tests/test_utils.py", content="def test_x(): pass"),
                FileContext(path="broken.py", content="def (:"),
                FileContext(path="empty.py", content="X = 1\n"),
            )
        )

        assert result.suites == []
        assert result.skipped_files == ["README.md", "tests/test_utils.py", "broken.py", "empty.py"]


@pytest.mark.asyncio
async def test_noop_code_generator_changes_nothing(settings):
    order = WorkOrder(order_id="WO-1", issue_id="ISS-1")
    context = ExecutionContext(
        work_order=order,
        code_context=CodeContext(work_order=order),
        settings=settings,
        options=ExecutionOptions(),
        attempt_number=1,
    )

    assert await NoOpCodeGenerator().generate(context) == []
