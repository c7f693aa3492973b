"""
Self-verification loop: run checks, repair what can be repaired, escalate.

For each configured check kind (test, lint, build, typecheck) the loop runs
the check once. If it fails, the loop spends up to ``max_fix_iterations``
repair iterations on it, re-running the check after each one and stopping as
soon as it passes. A check that is still red after its repair budget is
*unresolved*; any unresolved check escalates the whole run.

Final status:
    passed     every check passed, possibly after repairs
    escalated  at least one check stayed red after its repair iterations
    failed     a check failed and no repair iteration was allowed
               (``max_fix_iterations`` is 0)
"""

from __future__ import annotations

import time
from datetime import UTC, datetime

import structlog

from worker_engine.config.settings import WorkerSettings
from worker_engine.engine.findings import (
    LINT_FIX_CONFIDENCE,
    count_issues,
    parse_findings,
    suggest_fixes,
    summarize_lint,
    summarize_tests,
)
from worker_engine.enums import VerificationKind, VerificationStatus
from worker_engine.exceptions import CommandError, EscalationRequiredError
from worker_engine.models.verification import (
    EscalationInfo,
    FixAttempt,
    FixSuggestion,
    VerificationReport,
    VerificationStepResult,
)
from worker_engine.utils.async_subprocess import CommandRunner

log = structlog.get_logger(__name__)

ERROR_LOG_LIMIT = 1000


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class SelfVerificationLoop:
    """Run verification checks with bounded automatic repair.

    Args:
        settings: Worker settings (commands and verification sections)
        runner: Command runner used for checks and repairs
    """

    def __init__(self, settings: WorkerSettings, runner: CommandRunner) -> None:
        self.settings = settings
        self.runner = runner

    @property
    def _timeout(self) -> float:
        return self.settings.commands.timeout_seconds

    async def run_step(self, kind: VerificationKind) -> VerificationStepResult:
        """Run one check once.

        Raises:
            CommandTimeoutError: If the check exceeds the command timeout
            CommandNotAllowedError: If the configured command is rejected
        """
        command = self.settings.commands.command_for(kind)
        started = time.monotonic()
        result = await self.runner.run_configured(
            command, cwd=self.settings.project_root, timeout=self._timeout
        )
        errors, warnings = count_issues(kind, result.output)
        step_result = VerificationStepResult(
            kind=kind,
            passed=result.ok,
            exit_code=result.exit_code,
            output=result.output,
            duration_ms=_elapsed_ms(started),
            error_count=errors,
            warning_count=warnings,
        )
        log.info(
            "verification_step_finished",
            kind=kind.value,
            passed=step_result.passed,
            exit_code=result.exit_code,
            errors=errors,
        )
        return step_result

    def analyze(self, kind: VerificationKind, result: VerificationStepResult) -> list[FixSuggestion]:
        """Fix suggestions for a failed check."""
        auto_lint = kind == VerificationKind.LINT and self.settings.verification.auto_fix_lint
        lint_fix = self.settings.commands.effective_lint_fix if auto_lint else None

        suggestions = suggest_fixes(parse_findings(kind, result.output), lint_fix)
        if auto_lint and lint_fix:
            suggestions.append(
                FixSuggestion(
                    description="Run the lint auto-fixer",
                    type="auto",
                    command=lint_fix,
                    confidence=LINT_FIX_CONFIDENCE,
                )
            )
        return suggestions

    async def attempt_fix(
        self,
        kind: VerificationKind,
        result: VerificationStepResult,
        iteration: int,
    ) -> FixAttempt:
        """Apply the automatic fixes suggested for a failed check.

        Errors raised while running repair commands are recorded on the
        returned attempt instead of propagating.
        """
        started = time.monotonic()
        fixes_applied: list[str] = []
        success = False
        error_message: str | None = None

        suggestions = self.analyze(kind, result)
        commands = list(
            dict.fromkeys(s.command for s in suggestions if s.type == "auto" and s.command)
        )

        try:
            for command in commands:
                outcome = await self.runner.run_configured(
                    command, cwd=self.settings.project_root, timeout=self._timeout
                )
                if outcome.ok:
                    fixes_applied.append(
                        "Applied lint auto-fix"
                        if command == self.settings.commands.effective_lint_fix
                        else f"Ran {command}"
                    )
                    success = True
                else:
                    log.debug("fix_command_failed", command=command, exit_code=outcome.exit_code)
        except CommandError as e:
            error_message = e.message
            log.warning("fix_attempt_error", kind=kind.value, iteration=iteration, error=e.message)

        attempt = FixAttempt(
            iteration=iteration,
            kind=kind,
            fixes_applied=fixes_applied,
            success=success,
            duration_ms=_elapsed_ms(started),
            error_message=error_message,
        )
        log.info(
            "fix_attempt_finished",
            kind=kind.value,
            iteration=iteration,
            success=success,
            fixes=len(fixes_applied),
        )
        return attempt

    async def _run_with_fixes(
        self, kind: VerificationKind, fix_attempts: list[FixAttempt]
    ) -> VerificationStepResult:
        result = await self.run_step(kind)
        if result.passed:
            return result

        for iteration in range(1, self.settings.verification.max_fix_iterations + 1):
            attempt = await self.attempt_fix(kind, result, iteration)
            fix_attempts.append(attempt)

            result = await self.run_step(kind)
            if attempt.success:
                result.auto_fix_applied = True
            if result.passed:
                log.info("verification_step_repaired", kind=kind.value, iterations=iteration)
                break

        return result

    async def run(self, task_id: str, raise_on_escalation: bool = True) -> VerificationReport:
        """Run every configured check with repairs.

        Args:
            task_id: Identifier recorded on the report
            raise_on_escalation: Raise instead of returning an escalated report

        Returns:
            The verification report

        Raises:
            EscalationRequiredError: If a check stays red and
                ``raise_on_escalation`` is true
            CommandTimeoutError: If a check exceeds the command timeout
        """
        started = time.monotonic()
        config = self.settings.verification
        results: dict[VerificationKind, VerificationStepResult | None] = {
            kind: None for kind in config.steps_to_run
        }
        fix_attempts: list[FixAttempt] = []
        failed: list[VerificationKind] = []
        error_logs: list[str] = []

        log.info("self_verification_started", task_id=task_id, steps=[k.value for k in config.steps_to_run])

        for kind in config.steps_to_run:
            result = await self._run_with_fixes(kind, fix_attempts)
            results[kind] = result
            if result.passed:
                continue

            failed.append(kind)
            error_logs.append(f"[{kind.value}] {result.output[:ERROR_LOG_LIMIT]}")
            if not config.continue_on_failure:
                break

        final_status = self._final_status(failed, results)
        report = self._build_report(
            task_id, results, fix_attempts, final_status, _elapsed_ms(started), failed, error_logs
        )

        log.info(
            "self_verification_finished",
            task_id=task_id,
            status=final_status.value,
            fix_attempts=len(fix_attempts),
        )

        if final_status == VerificationStatus.ESCALATED and raise_on_escalation:
            raise EscalationRequiredError(
                task_id=task_id,
                failed_steps=[kind.value for kind in failed],
                total_attempts=len(fix_attempts),
                error_logs=error_logs,
                analysis=report.escalation.analysis if report.escalation else "",
                report=report,
            )
        return report

    @staticmethod
    def _final_status(
        failed: list[VerificationKind],
        results: dict[VerificationKind, VerificationStepResult | None],
    ) -> VerificationStatus:
        if not failed:
            return VerificationStatus.PASSED
        # A kind is unresolved when its last run is red, however many repairs it got.
        unresolved = [kind for kind in failed if results[kind] is not None and not results[kind].passed]
        if unresolved:
            return VerificationStatus.ESCALATED
        return VerificationStatus.FAILED

    def analyze_failures(
        self,
        failed: list[VerificationKind],
        results: dict[VerificationKind, VerificationStepResult | None],
        fix_attempts: list[FixAttempt],
    ) -> str:
        """Human-readable summary of what failed and what was tried."""
        lines = ["Analysis Summary:"]
        for kind in failed:
            result = results.get(kind)
            if result is None:
                continue
            codes = sorted({f.code for f in parse_findings(kind, result.output) if f.code})
            error_types = ", ".join(codes) if codes else "unknown"
            lines.append(
                f"{kind.value}: {result.error_count} error(s), {result.warning_count} warning(s). "
                f"Error types: {error_types}"
            )

        successful = sum(1 for attempt in fix_attempts if attempt.success)
        lines.append("")
        lines.append(f"Fix Attempts: {len(fix_attempts)} total, {successful} successful")
        return "\n".join(lines)

    def _build_report(
        self,
        task_id: str,
        results: dict[VerificationKind, VerificationStepResult | None],
        fix_attempts: list[FixAttempt],
        final_status: VerificationStatus,
        total_duration_ms: int,
        failed: list[VerificationKind],
        error_logs: list[str],
    ) -> VerificationReport:
        report = VerificationReport(
            task_id=task_id,
            timestamp=datetime.now(UTC),
            results=results,
            fix_attempts=fix_attempts,
            final_status=final_status,
            total_duration_ms=total_duration_ms,
        )

        test_result = results.get(VerificationKind.TEST)
        if test_result is not None:
            report.test_summary = summarize_tests(test_result.output)

        lint_result = results.get(VerificationKind.LINT)
        if lint_result is not None:
            auto_fixed = sum(
                1
                for attempt in fix_attempts
                if attempt.kind == VerificationKind.LINT and attempt.success
            )
            report.lint_summary = summarize_lint(lint_result.output, auto_fixed)

        if final_status == VerificationStatus.ESCALATED:
            report.escalation = EscalationInfo(
                reason=f"{len(failed)} verification step(s) failed after {len(fix_attempts)} fix attempt(s)",
                failed_steps=list(failed),
                error_logs=list(error_logs),
                attempted_fixes=[fix for attempt in fix_attempts for fix in attempt.fixes_applied],
                analysis=self.analyze_failures(failed, results, fix_attempts),
            )
        return report
