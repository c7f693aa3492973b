"""Heuristic detection of coding conventions from related files.

Inference never fails: anything it cannot determine keeps the default from
``CodePatterns``.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath

from worker_engine.models.domain import CodePatterns, FileContext

PYTHON_SUFFIXES = frozenset({".py", ".pyi"})
SCRIPT_SUFFIXES = frozenset({".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs"})

_JS_TEST_FRAMEWORKS = ("vitest", "jest", "mocha")


def _suffix(path: str) -> str:
    return PurePosixPath(path).suffix.lower()


def _detect_indentation(content: str, patterns: CodePatterns) -> None:
    for line in content.splitlines():
        if not line.strip():
            continue
        if line.startswith("\t"):
            patterns.indentation = "tabs"
            patterns.indent_size = 1
            return
        if line.startswith(" "):
            patterns.indentation = "spaces"
            patterns.indent_size = len(line) - len(line.lstrip(" "))
            return


def _detect_quotes(content: str, patterns: CodePatterns) -> None:
    single = len(re.findall(r"'[^'\n]*'", content))
    double = len(re.findall(r'"[^"\n]*"', content))
    if single or double:
        patterns.quote_style = "single" if single > double else "double"


def _detect_test_framework(files: list[FileContext]) -> str | None:
    for file in files:
        name = PurePosixPath(file.path).name
        content = file.content
        if name == "package.json" or _suffix(file.path) in SCRIPT_SUFFIXES:
            for framework in _JS_TEST_FRAMEWORKS:
                if framework in content:
                    return framework
        if name in {"pyproject.toml", "setup.cfg", "tox.ini", "pytest.ini"} or _suffix(file.path) in PYTHON_SUFFIXES:
            if "pytest" in content:
                return "pytest"
            if "unittest" in content:
                return "unittest"
    return None


def infer_code_patterns(files: list[FileContext]) -> CodePatterns:
    """Infer indentation, quoting, punctuation and test framework.

    The first Python or script source among ``files`` decides the formatting
    conventions. Configuration files only contribute the test framework.
    """
    source = next(
        (f for f in files if _suffix(f.path) in PYTHON_SUFFIXES | SCRIPT_SUFFIXES),
        None,
    )

    if source is None:
        patterns = CodePatterns()
    elif _suffix(source.path) in SCRIPT_SUFFIXES:
        patterns = CodePatterns(
            indent_size=2,
            quote_style="single",
            use_semicolons=True,
            trailing_comma="es5",
            test_framework="vitest",
        )
        content = source.content
        _detect_indentation(content, patterns)
        _detect_quotes(content, patterns)
        semicolon_lines = len(re.findall(r";\s*$", content, re.MULTILINE))
        code_lines = len([line for line in content.splitlines() if line.strip()])
        patterns.use_semicolons = semicolon_lines * 2 >= code_lines if code_lines else True
        if re.search(r",\s*\n\s*[}\]]", content):
            patterns.trailing_comma = "es5"
        elif re.search(r"[^,\s]\s*\n\s*[}\]]", content):
            patterns.trailing_comma = "none"
        if re.search(r"^export default", content, re.MULTILINE):
            patterns.export_style = "default"
    else:
        patterns = CodePatterns()
        content = source.content
        _detect_indentation(content, patterns)
        _detect_quotes(content, patterns)
        if re.search(r",\s*\n\s*[)\]}]", content):
            patterns.trailing_comma = "all"
        elif re.search(r"[^,\s(\[{]\s*\n\s*[)\]}]", content):
            patterns.trailing_comma = "none"
        if re.search(r"^import \w+", content, re.MULTILINE) and re.search(
            r"^from \S+ import", content, re.MULTILINE
        ):
            patterns.import_style = "mixed"

    framework = _detect_test_framework(files)
    if framework is not None:
        patterns.test_framework = framework
    return patterns
