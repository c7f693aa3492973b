"""
Code and test generation backends.

The orchestrator depends only on the two abstract interfaces. Code generation
is a placeholder until a real backend is plugged in; test generation writes
pytest skeletons for the public API of related Python modules.
"""

from __future__ import annotations

import ast
from abc import ABC, abstractmethod
from pathlib import PurePosixPath

import structlog

from worker_engine.models.domain import (
    CodeContext,
    ExecutionContext,
    FileChange,
    FileContext,
    GeneratedTestSuite,
    TestGenerationResult,
)

log = structlog.get_logger(__name__)


class CodeGenerator(ABC):
    """Produces source changes for a work order."""

    @abstractmethod
    async def generate(self, context: ExecutionContext) -> list[FileChange]:
        """Apply code changes and return what changed.

        Args:
            context: Work order, analyzed code context and run options

        Returns:
            The file changes made
        """
        pass


class NoOpCodeGenerator(CodeGenerator):
    """Placeholder backend that changes nothing."""

    async def generate(self, context: ExecutionContext) -> list[FileChange]:
        log.info(
            "code_generation_placeholder",
            work_order_id=context.work_order.order_id,
            related_files=len(context.code_context.related_files),
        )
        return []


class TestGenerator(ABC):
    """Produces test files for the code under change."""

    __test__ = False

    @abstractmethod
    async def generate(self, code_context: CodeContext) -> TestGenerationResult:
        pass


class PytestSkeletonGenerator(TestGenerator):
    """One pytest module per related Python source, one test per public symbol.

    Args:
        tests_dir: Directory (relative to the project root) for generated tests
    """

    def __init__(self, tests_dir: str = "tests") -> None:
        self.tests_dir = tests_dir

    def test_path_for(self, source_path: str) -> str:
        return str(PurePosixPath(self.tests_dir) / f"test_{PurePosixPath(source_path).stem}.py")

    @staticmethod
    def module_name(source_path: str) -> str:
        parts = list(PurePosixPath(source_path).with_suffix("").parts)
        if parts and parts[0] == "src":
            parts = parts[1:]
        if parts and parts[-1] == "__init__":
            parts = parts[:-1]
        return ".".join(parts)

    @staticmethod
    def public_symbols(content: str) -> list[tuple[str, str]]:
        """Top-level public functions and classes as ``(kind, name)``."""
        tree = ast.parse(content)
        symbols: list[tuple[str, str]] = []
        for node in tree.body:
            if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)) and not node.name.startswith("_"):
                symbols.append(("function", node.name))
            elif isinstance(node, ast.ClassDef) and not node.name.startswith("_"):
                symbols.append(("class", node.name))
        return symbols

    def render(self, file: FileContext, symbols: list[tuple[str, str]]) -> str:
        module = self.module_name(file.path)
        lines = [
            f'"""Tests for {module}."""',
            "",
            "import importlib",
            "",
            "",
            "def _module():",
            f'    return importlib.import_module("{module}")',
        ]
        for kind, name in symbols:
            lines.extend(
                [
                    "",
                    "",
                    f"def test_{name.lower()}_is_exposed():",
                    f'    """{module}.{name} exists and is a {kind}."""',
                    f'    obj = getattr(_module(), "{name}")',
                    "    assert callable(obj)",
                ]
            )
        return "\n".join(lines) + "\n"

    async def generate(self, code_context: CodeContext) -> TestGenerationResult:
        suites: list[GeneratedTestSuite] = []
        skipped: list[str] = []

        for file in code_context.related_files:
            path = PurePosixPath(file.path)
            if path.suffix != ".py" or path.name.startswith("test_"):
                skipped.append(file.path)
                continue
            try:
                symbols = self.public_symbols(file.content)
            except SyntaxError as e:
                log.warning("test_generation_unparseable", path=file.path, error=str(e))
                skipped.append(file.path)
                continue
            if not symbols:
                skipped.append(file.path)
                continue

            suites.append(
                GeneratedTestSuite(
                    source_file=file.path,
                    test_file=self.test_path_for(file.path),
                    content=self.render(file, symbols),
                    total_tests=len(symbols),
                )
            )

        log.info("tests_generated", suites=len(suites), skipped=len(skipped))
        return TestGenerationResult(suites=suites, skipped_files=skipped)
