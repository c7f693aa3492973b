"""Tests for worker_engine.engine.classifier."""

import errno

import pytest

from worker_engine.engine.classifier import classify, classify_error, suggested_action
from worker_engine.enums import ErrorCategory
from worker_engine.exceptions import (
    CommandNotAllowedError,
    CommandTimeoutError,
    EscalationRequiredError,
    ImplementationBlockedError,
    MissingDependencyError,
    PathTraversalError,
    TypeCheckError,
    VerificationError,
    WorkerEngineError,
)


class CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


class DeclaredError(Exception):
    category = "recoverable"


class TestClassifyByType:
    """Classification from the error type table."""

    @pytest.mark.parametrize(
        "error",
        [
            VerificationError("test", "1 failed"),
            TypeCheckError(3, "error TS2322"),
        ],
    )
    def test_verification_failures_are_recoverable(self, error):
        assert classify(error) == ErrorCategory.RECOVERABLE

    @pytest.mark.parametrize(
        "error",
        [
            TimeoutError(),
            CommandTimeoutError("pytest -q", 300),
            ConnectionResetError("reset by peer"),
            ConnectionRefusedError(),
        ],
    )
    def test_timeouts_and_connection_errors_are_transient(self, error):
        assert classify(error) == ErrorCategory.TRANSIENT

    @pytest.mark.parametrize(
        "error",
        [
            PermissionError("denied"),
            ModuleNotFoundError("No module named 'x'"),
            MissingDependencyError("ruff"),
            CommandNotAllowedError("rm -rf /", "executable 'rm' is not allowed"),
            PathTraversalError("../etc/passwd", "/repo"),
            ImplementationBlockedError("ISS-1", ["needs API key"]),
        ],
    )
    def test_permission_and_dependency_errors_are_fatal(self, error):
        assert classify(error) == ErrorCategory.FATAL

    def test_escalation_is_fatal(self):
        error = EscalationRequiredError("ISS-1", ["lint"], 3, ["[lint] bad"], "analysis")
        assert classify(error) == ErrorCategory.FATAL


class TestClassifyPrecedence:
    """Earlier rules win over later ones."""

    def test_declared_category_beats_message(self):
        error = DeclaredError("connection timeout")
        assert classify(error) == ErrorCategory.RECOVERABLE

    def test_declared_category_on_engine_error_instance(self):
        error = WorkerEngineError("permission denied")
        error.category = ErrorCategory.TRANSIENT
        assert classify(error) == ErrorCategory.TRANSIENT

    def test_invalid_declared_category_is_ignored(self):
        error = DeclaredError("boom")
        error.category = "sometimes"
        assert classify(error) == ErrorCategory.TRANSIENT

    def test_code_beats_message(self):
        error = CodedError("connection dropped", "EACCES")
        assert classify(error) == ErrorCategory.FATAL

    def test_type_beats_code(self):
        error = PermissionError(errno.ECONNRESET, "odd")
        assert classify(error) == ErrorCategory.FATAL


class TestClassifyByCode:
    @pytest.mark.parametrize("code", ["ECONNRESET", "ETIMEDOUT", "RATE_LIMITED", "GATEWAY_TIMEOUT"])
    def test_transient_codes(self, code):
        assert classify(CodedError("failure", code)) == ErrorCategory.TRANSIENT

    @pytest.mark.parametrize("code", ["EACCES", "ENOENT", "MISSING_DEPENDENCY", "module_not_found"])
    def test_fatal_codes(self, code):
        assert classify(CodedError("failure", code)) == ErrorCategory.FATAL

    def test_errno_attribute(self):
        error = OSError(errno.ENOENT, "No such file or directory")
        assert classify(error) == ErrorCategory.FATAL

    def test_unknown_code_falls_through(self):
        assert classify(CodedError("failure", "E_WEIRD")) == ErrorCategory.TRANSIENT


class TestClassifyByMessage:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Request Timeout while fetching", ErrorCategory.TRANSIENT),
            ("network unreachable", ErrorCategory.TRANSIENT),
            ("Permission denied for /repo", ErrorCategory.FATAL),
            ("binary not found", ErrorCategory.FATAL),
            ("missing dependency: node", ErrorCategory.FATAL),
            ("Test failed in suite", ErrorCategory.RECOVERABLE),
            ("lint error on line 3", ErrorCategory.RECOVERABLE),
            ("Build failed", ErrorCategory.RECOVERABLE),
        ],
    )
    def test_message_patterns(self, message, expected):
        assert classify(RuntimeError(message)) == expected

    def test_unrecognized_error_is_transient(self):
        assert classify(RuntimeError("something odd happened")) == ErrorCategory.TRANSIENT

    def test_empty_error_is_transient(self):
        assert classify(Exception()) == ErrorCategory.TRANSIENT


class TestClassificationBundle:
    def test_classify_error_carries_category_and_action(self):
        error = RuntimeError("network down")
        classification = classify_error(error)

        assert classification.error is error
        assert classification.category == ErrorCategory.TRANSIENT
        assert "Retry" in classification.suggested_action
        assert classification.message == "network down"

    def test_message_falls_back_to_type_name(self):
        assert classify_error(ValueError()).message == "ValueError"

    def test_suggested_action_for_fatal(self):
        assert "Manual intervention" in suggested_action(PermissionError("denied"))

    def test_suggested_action_for_verification(self):
        assert "lint" in suggested_action(VerificationError("lint", "E501"))

    def test_classification_is_deterministic(self):
        error = CodedError("reset", "ECONNRESET")
        assert {classify(error) for _ in range(5)} == {ErrorCategory.TRANSIENT}
