"""Models produced by the self-verification loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from worker_engine.enums import VerificationKind, VerificationStatus


@dataclass
class Finding:
    """One diagnostic parsed from tool output.

    Output that matches no known diagnostic format still produces a finding
    with only ``message`` set.
    """

    kind: VerificationKind
    message: str
    severity: Literal["error", "warning"] = "error"
    file_path: str | None = None
    line: int | None = None
    column: int | None = None
    code: str | None = None


@dataclass
class FixSuggestion:
    """A proposed repair. Only ``auto`` suggestions are ever executed."""

    description: str
    type: Literal["auto", "manual"]
    command: str | None = None
    affected_files: list[str] = field(default_factory=list)
    confidence: int = 0


@dataclass
class VerificationStepResult:
    """Result of running one verification command once."""

    kind: VerificationKind
    passed: bool
    exit_code: int
    output: str
    duration_ms: int
    error_count: int = 0
    warning_count: int = 0
    auto_fix_applied: bool = False


@dataclass
class FixAttempt:
    """Record of one repair iteration for a failing kind."""

    iteration: int
    kind: VerificationKind
    fixes_applied: list[str]
    success: bool
    duration_ms: int
    error_message: str | None = None


@dataclass
class TestSummary:
    __test__ = False

    passed: int = 0
    failed: int = 0
    skipped: int = 0
    coverage: float | None = None


@dataclass
class LintSummary:
    errors: int = 0
    warnings: int = 0
    auto_fixed: int = 0


@dataclass
class EscalationInfo:
    """Diagnostic bundle handed to a human when repairs run out."""

    reason: str
    failed_steps: list[VerificationKind]
    error_logs: list[str]
    attempted_fixes: list[str]
    analysis: str


@dataclass
class VerificationReport:
    """Full record of a self-verification run."""

    task_id: str
    timestamp: datetime
    results: dict[VerificationKind, VerificationStepResult | None]
    fix_attempts: list[FixAttempt]
    final_status: VerificationStatus
    total_duration_ms: int
    test_summary: TestSummary | None = None
    lint_summary: LintSummary | None = None
    escalation: EscalationInfo | None = None

    def result_for(self, kind: VerificationKind) -> VerificationStepResult | None:
        return self.results.get(kind)

    def to_dict(self) -> dict[str, Any]:
        """Plain-dict view used for logging and CLI output."""
        return {
            "task_id": self.task_id,
            "timestamp": self.timestamp.isoformat(),
            "final_status": self.final_status.value,
            "total_duration_ms": self.total_duration_ms,
            "results": {
                kind.value: (
                    None
                    if result is None
                    else {
                        "passed": result.passed,
                        "exit_code": result.exit_code,
                        "error_count": result.error_count,
                        "warning_count": result.warning_count,
                    }
                )
                for kind, result in self.results.items()
            },
            "fix_attempts": len(self.fix_attempts),
        }
