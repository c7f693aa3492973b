"""
Parsing of verification tool output into findings and fix suggestions.

Diagnostic line formats recognized explicitly:

- compiler diagnostics: ``path(line,col): error CODE: message``
- linter diagnostics: ``path:line:col: message (rule)``
- ruff diagnostics: ``path:line:col: CODE [*] message``

Any other line that looks like a failure becomes a message-only finding, so
unfamiliar tool output still shows up in reports.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from worker_engine.enums import VerificationKind
from worker_engine.models.verification import Finding, FixSuggestion, LintSummary, TestSummary

COMPILER_DIAGNOSTIC = re.compile(
    r"^(?P<file>.+?)\((?P<line>\d+),(?P<column>\d+)\):\s*(?P<severity>error|warning)\s+"
    r"(?P<code>[A-Za-z]+\d+):\s*(?P<message>.+)$"
)
LINTER_DIAGNOSTIC = re.compile(
    r"^(?P<file>.+?):(?P<line>\d+):(?P<column>\d+):\s*(?P<message>.+?)\s+\((?P<rule>.+?)\)$"
)
# ruff's default output puts the rule code first: ``path:line:col: F401 [*] message``
LEADING_CODE_DIAGNOSTIC = re.compile(
    r"^(?P<file>.+?):(?P<line>\d+):(?P<column>\d+):\s*(?P<rule>[A-Z]+\d+)\s+(?:\[\*\]\s+)?(?P<message>.+)$"
)

# Rules whose violations the lint fixer repairs without human judgement.
AUTO_FIXABLE_RULES = frozenset(
    {
        "prettier/prettier",
        "semi",
        "quotes",
        "indent",
        "comma-dangle",
        "no-trailing-spaces",
        "eol-last",
        "@typescript-eslint/semi",
        "@typescript-eslint/quotes",
        "I001",
        "F401",
        "W291",
        "W292",
        "W293",
        "UP006",
        "UP035",
    }
)

AUTO_FIX_CONFIDENCE = 90
LINT_FIX_CONFIDENCE = 80
MANUAL_FIX_CONFIDENCE = 30

_TEST_FAILURE_MARKERS = ("FAIL", "AssertionError", "Error:")


def _looks_like_failure(kind: VerificationKind, line: str) -> bool:
    if kind == VerificationKind.TEST:
        return any(marker in line for marker in _TEST_FAILURE_MARKERS)
    return "error" in line.lower()


def parse_findings(kind: VerificationKind, output: str) -> list[Finding]:
    """Extract findings from the output of one verification command."""
    findings: list[Finding] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue

        match = COMPILER_DIAGNOSTIC.match(line)
        if match:
            findings.append(
                Finding(
                    kind=kind,
                    message=match["message"].strip(),
                    severity="warning" if match["severity"] == "warning" else "error",
                    file_path=match["file"],
                    line=int(match["line"]),
                    column=int(match["column"]),
                    code=match["code"],
                )
            )
            continue

        match = LEADING_CODE_DIAGNOSTIC.match(line) or LINTER_DIAGNOSTIC.match(line)
        if match:
            message = match["message"].strip()
            findings.append(
                Finding(
                    kind=kind,
                    message=message,
                    severity="warning" if message.lower().startswith("warning") else "error",
                    file_path=match["file"],
                    line=int(match["line"]),
                    column=int(match["column"]),
                    code=match["rule"],
                )
            )
            continue

        if _looks_like_failure(kind, line):
            findings.append(Finding(kind=kind, message=line))

    return findings


def suggest_fixes(findings: Iterable[Finding], lint_fix_command: str | None = None) -> list[FixSuggestion]:
    """Derive fix suggestions from findings.

    Only findings whose rule is in ``AUTO_FIXABLE_RULES`` get an ``auto``
    suggestion, and only when a lint fix command is available. Everything
    else gets a low-confidence ``manual`` suggestion, which is never applied.
    """
    suggestions: list[FixSuggestion] = []
    for finding in findings:
        affected = [finding.file_path] if finding.file_path else []
        if finding.code in AUTO_FIXABLE_RULES and lint_fix_command:
            suggestions.append(
                FixSuggestion(
                    description=f"Auto-fix {finding.code} in {finding.file_path or 'project'}",
                    type="auto",
                    command=lint_fix_command,
                    affected_files=affected,
                    confidence=AUTO_FIX_CONFIDENCE,
                )
            )
        else:
            location = f" at {finding.file_path}:{finding.line}" if finding.file_path else ""
            suggestions.append(
                FixSuggestion(
                    description=f"Review {finding.kind.value} issue{location}: {finding.message}",
                    type="manual",
                    affected_files=affected,
                    confidence=MANUAL_FIX_CONFIDENCE,
                )
            )
    return suggestions


def _is_lint_diagnostic(line: str) -> bool:
    return bool(LEADING_CODE_DIAGNOSTIC.match(line) or LINTER_DIAGNOSTIC.match(line))


def _first_int(pattern: str, text: str) -> int:
    match = re.search(pattern, text, re.IGNORECASE)
    return int(match.group(1)) if match else 0


def count_issues(kind: VerificationKind, output: str) -> tuple[int, int]:
    """Error and warning counts reported by a tool's output."""
    if kind == VerificationKind.TEST:
        return _first_int(r"(\d+)\s+failed", output), 0
    if kind == VerificationKind.LINT:
        errors = _first_int(r"(\d+)\s+errors?\b", output)
        if errors == 0:
            errors = sum(1 for line in output.splitlines() if _is_lint_diagnostic(line.strip()))
        return errors, _first_int(r"(\d+)\s+warnings?\b", output)
    if kind == VerificationKind.TYPECHECK:
        errors = len(re.findall(r"error\s+[A-Za-z]+\d+", output))
        if errors == 0:
            errors = _first_int(r"Found\s+(\d+)\s+errors?", output)
        return errors, len(re.findall(r"warning\s+[A-Za-z]+\d+", output))
    return (
        len(re.findall(r"\berror\b", output, re.IGNORECASE)),
        len(re.findall(r"\bwarning\b", output, re.IGNORECASE)),
    )


def summarize_tests(output: str) -> TestSummary:
    """Passed/failed/skipped counts and coverage parsed from test output."""
    coverage_match = re.search(r"(?:TOTAL.*?|coverage[:\s]+)(\d+(?:\.\d+)?)%", output, re.IGNORECASE)
    return TestSummary(
        passed=_first_int(r"(\d+)\s+passed", output),
        failed=_first_int(r"(\d+)\s+failed", output),
        skipped=_first_int(r"(\d+)\s+skipped", output),
        coverage=float(coverage_match.group(1)) if coverage_match else None,
    )


def summarize_lint(output: str, auto_fixed: int = 0) -> LintSummary:
    errors, warnings = count_issues(VerificationKind.LINT, output)
    return LintSummary(errors=errors, warnings=warnings, auto_fixed=auto_fixed)
