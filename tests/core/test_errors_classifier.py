"""Tests for mapflow.core.errors and mapflow.core.classifier."""

import builtins

import pytest

from mapflow.core.classifier import Classification, ErrorClassifier
from mapflow.core.errors import (
    AcquireTimeoutError,
    BusinessRuleViolation,
    CircuitOpenError,
    ErrorContext,
    ErrorType,
    MapflowError,
    MappingExecutionError,
    NetworkError,
    RecoveryStrategy,
    RetryExhaustedError,
    Severity,
    TimeoutError,
    TransformationError,
    ValidationError,
    WorkflowEngineError,
    is_retryable,
)


class TestErrorHierarchy:
    def test_defaults_per_subclass(self):
        """Subclasses carry their kind, severity and retryability."""
        assert NetworkError("x").kind == ErrorType.NETWORK_ERROR
        assert NetworkError("x").retryable is True
        assert ValidationError("x").severity == Severity.LOW
        assert ValidationError("x").retryable is False
        assert BusinessRuleViolation("x").kind == ErrorType.BUSINESS_RULE_VIOLATION

    def test_timeout_is_builtin_timeout(self):
        """The runtime TimeoutError is also a builtin TimeoutError."""
        err = AcquireTimeoutError("slow", timeout=1.5)
        assert isinstance(err, builtins.TimeoutError)
        assert err.timeout == 1.5
        assert err.code == "ETIMEDOUT"

    def test_with_context_sets_fields_and_metadata(self):
        """Known context keys become fields, unknown ones go to metadata."""
        err = TransformationError("bad").with_context(rule="r1", record_index=4, extra="yes")
        assert err.context.rule == "r1"
        assert err.context.record_index == 4
        assert err.context.metadata == {"extra": "yes"}

    def test_to_dict_includes_context_and_cause(self):
        """Serialized errors expose kind, severity, context and cause."""
        cause = ValueError("root")
        err = MappingExecutionError(
            "run failed",
            context=ErrorContext(execution_id="ctx-1", record_index=2),
            cause=cause,
        )
        data = err.to_dict()
        assert data["kind"] == "SYSTEM_ERROR"
        assert data["severity"] == "HIGH"
        assert data["context"] == {"execution_id": "ctx-1", "record_index": 2}
        assert data["cause"] == "root"
        assert err.__cause__ is cause
        assert err.context_id == "ctx-1"
        assert err.record_index == 2

    def test_retry_exhausted_inherits_kind(self):
        """RetryExhaustedError keeps the last error's kind."""
        last = NetworkError("down")
        err = RetryExhaustedError("gave up", attempts=4, last_error=last)
        assert err.kind == ErrorType.NETWORK_ERROR
        assert err.attempts == 4
        assert err.__cause__ is last

    @pytest.mark.parametrize("status,retryable", [(500, True), (503, True), (429, True), (404, False)])
    def test_workflow_error_retryable_by_status(self, status, retryable):
        """5xx and 429 workflow engine responses are retryable."""
        assert WorkflowEngineError("x", status_code=status).retryable is retryable

    def test_is_retryable_helper(self):
        """Builtin connection and timeout errors are retryable."""
        assert is_retryable(ConnectionResetError()) is True
        assert is_retryable(builtins.TimeoutError()) is True
        assert is_retryable(ValueError()) is False
        assert is_retryable(ValidationError("x")) is False


class TestClassifier:
    @pytest.fixture
    def classifier(self):
        return ErrorClassifier()

    def test_connection_refused_is_network(self, classifier):
        """ConnectionRefusedError maps to a retryable network error."""
        c = classifier.classify(ConnectionRefusedError("refused"))
        assert c.type == ErrorType.NETWORK_ERROR
        assert c.severity == Severity.HIGH
        assert c.recovery_strategy == RecoveryStrategy.RETRY_WITH_BACKOFF
        assert c.is_retryable

    def test_code_attribute(self, classifier):
        """A string ``code`` attribute is matched against known codes."""
        err = Exception("boom")
        err.code = "ETIMEDOUT"
        assert classifier.classify(err).type == ErrorType.TIMEOUT_ERROR

    def test_message_patterns(self, classifier):
        """Messages are matched case-insensitively when no code matches."""
        assert classifier.classify(Exception("Duplicate key value")).type == ErrorType.DUPLICATE_KEY_ERROR
        assert classifier.classify(Exception("Validation failed: x")).type == ErrorType.VALIDATION_ERROR
        assert classifier.classify(Exception("heap out of memory")).type == ErrorType.MEMORY_ERROR
        assert classifier.classify(Exception("Business rule broken")).type == ErrorType.BUSINESS_RULE_VIOLATION

    def test_unknown_error(self, classifier):
        """Unmatched errors are UNKNOWN / MEDIUM / SKIP_AND_LOG."""
        c = classifier.classify(Exception("something odd"))
        assert c.type == ErrorType.UNKNOWN_ERROR
        assert c.severity == Severity.MEDIUM
        assert c.recovery_strategy == RecoveryStrategy.SKIP_AND_LOG
        assert c.source == "unknown"
        assert not c.is_retryable

    def test_code_wins_over_message(self, classifier):
        """Stable codes are consulted before message patterns."""
        c = classifier.classify(NetworkError("validation failed while sending"))
        assert c.type == ErrorType.NETWORK_ERROR
        assert c.source == "code"

    def test_custom_classifier_first(self, classifier):
        """Custom classifiers are consulted before built-in rules."""

        def custom(error, ctx):
            if "special" in str(error):
                return Classification(ErrorType.MEMORY_ERROR, Severity.CRITICAL, RecoveryStrategy.FAIL)
            return None

        classifier.register_classifier(custom)
        assert classifier.classify(ConnectionError("special")).type == ErrorType.MEMORY_ERROR
        assert classifier.classify(ConnectionError("plain")).type == ErrorType.NETWORK_ERROR

    def test_failing_custom_classifier_is_skipped(self, classifier):
        """A raising custom classifier does not break classification."""

        def broken(error, ctx):
            raise RuntimeError("bug")

        classifier.register_classifier(broken)
        assert classifier.classify(ConnectionError("x")).type == ErrorType.NETWORK_ERROR

    def test_mapflow_error_retryable_flag_respected(self, classifier):
        """A non-retryable MapflowError stays non-retryable."""
        c = classifier.classify(MapflowError("plain"))
        assert c.type == ErrorType.SYSTEM_ERROR
        assert not c.is_retryable

    def test_circuit_open_is_circuit_break(self, classifier):
        """Breaker rejections classify as CIRCUIT_BREAK."""
        c = classifier.classify(CircuitOpenError())
        assert c.recovery_strategy == RecoveryStrategy.CIRCUIT_BREAK
        assert not c.is_retryable

    def test_timeout_error_classified(self, classifier):
        """The runtime TimeoutError is retryable."""
        assert classifier.classify(TimeoutError("slow")).is_retryable

    def test_rule_policy_controls_transformation_retry(self, classifier):
        """A ``retryable`` context flag decides transformation retries."""
        err = TransformationError("bad input")
        assert not classifier.classify(err).is_retryable
        assert classifier.classify(err, {"retryable": True}).is_retryable

    def test_integrity_flag(self, classifier):
        """Duplicate keys and validation errors affect data integrity."""
        assert classifier.classify(Exception("unique constraint violated")).affects_data_integrity
        assert not classifier.classify(ConnectionError("x")).affects_data_integrity


class TestErrorTrend:
    def _c(self, severity):
        return Classification(ErrorType.SYSTEM_ERROR, severity, RecoveryStrategy.SKIP_AND_LOG)

    def test_critical_majority_recommends_circuit_break(self):
        """More than half critical errors recommends breaking the circuit."""
        trend = ErrorClassifier().analyze_error_trend([self._c(Severity.CRITICAL)] * 3 + [self._c(Severity.LOW)])
        assert trend.total == 4
        assert trend.critical_fraction == pytest.approx(0.75)
        assert trend.recommendation == RecoveryStrategy.CIRCUIT_BREAK

    def test_high_share_recommends_backoff(self):
        """Above 30% high severity recommends retry with backoff."""
        items = [self._c(Severity.HIGH)] * 2 + [self._c(Severity.LOW)] * 3
        assert ErrorClassifier().analyze_error_trend(items).recommendation == RecoveryStrategy.RETRY_WITH_BACKOFF

    def test_window_and_empty(self):
        """The window limits the analysed entries; empty input has no advice."""
        classifier = ErrorClassifier()
        assert classifier.analyze_error_trend([]).recommendation is None
        items = [self._c(Severity.CRITICAL)] * 5 + [self._c(Severity.LOW)] * 5
        trend = classifier.analyze_error_trend(items, window=5)
        assert trend.total == 5
        assert trend.by_severity == {"LOW": 5}
