"""Tests for reconcile error classification."""

import pytest

from caps.errors import (
    ReconcileError,
    ReconcileErrorKind,
    ServiceError,
    find_reconcile_error,
    format_delay,
    is_terminal_error,
    is_transient_error,
    iter_error_chain,
    with_terminal_error,
    with_transient_error,
)


class TestFormatDelay:
    """Tests for delay rendering."""

    @pytest.mark.parametrize(
        "seconds,expected",
        [
            (0.5, "500ms"),
            (1, "1s"),
            (30, "30s"),
            (90, "1m30s"),
            (3600, "1h0m0s"),
        ],
    )
    def test_format(self, seconds: float, expected: str) -> None:
        """Test durations render like Go durations."""
        assert format_delay(seconds) == expected


class TestReconcileError:
    """Tests for ReconcileError construction and rendering."""

    def test_transient_message_mentions_requeue(self) -> None:
        """Test a transient error tells when the object comes back."""
        err = with_transient_error("lb is not ready", 5)

        assert err.is_transient
        assert not err.is_terminal
        assert err.requeue_after == 5
        assert str(err) == "lb is not ready. Object will be requeued after 5s"

    def test_terminal_message(self) -> None:
        """Test a terminal error is rendered as a reconcile error."""
        err = with_terminal_error("zone foo is not valid")

        assert err.is_terminal
        assert err.requeue_after is None
        assert str(err) == "reconcile error: zone foo is not valid"

    def test_terminal_ignores_requeue_after(self) -> None:
        """Test only transient errors keep a delay."""
        err = ReconcileError("boom", ReconcileErrorKind.TERMINAL, requeue_after=10)
        assert err.requeue_after is None

    def test_transient_requires_positive_delay(self) -> None:
        """Test a transient error without delay is refused."""
        with pytest.raises(ValueError):
            with_transient_error("boom", 0)

    def test_wrapping_exception_chains_cause(self) -> None:
        """Test the wrapped exception becomes the cause."""
        cause = RuntimeError("in use")
        err = with_transient_error(cause, 1)
        assert err.__cause__ is cause
        assert err.err is cause


class TestErrorChain:
    """Tests for recovering classification through wrapping layers."""

    def test_classification_survives_wrapping(self) -> None:
        """Test a ReconcileError is found below RuntimeError and ServiceError."""
        inner = with_transient_error("not ready", 3)
        try:
            try:
                try:
                    raise inner
                except ReconcileError as e:
                    raise RuntimeError(f"failed to ensure lb: {e}") from e
            except RuntimeError as e:
                raise ServiceError("lb", "reconcile ScalewayCluster service", e) from e
        except ServiceError as outer:
            assert find_reconcile_error(outer) is inner
            assert is_transient_error(outer)
            assert not is_terminal_error(outer)

    def test_implicit_context_is_walked(self) -> None:
        """Test errors raised while handling another keep the classification."""
        terminal = with_terminal_error("bad config")
        try:
            try:
                raise terminal
            except ReconcileError:
                raise RuntimeError("cleanup failed")
        except RuntimeError as outer:
            assert is_terminal_error(outer)

    def test_unclassified_error(self) -> None:
        """Test plain exceptions carry no classification."""
        err = RuntimeError("boom")
        assert find_reconcile_error(err) is None
        assert not is_transient_error(err)
        assert not is_terminal_error(err)
        assert not is_transient_error(None)

    def test_outermost_classification_wins(self) -> None:
        """Test the closest ReconcileError to the caller is returned."""
        inner = with_terminal_error("inner")
        outer = with_transient_error(inner, 2)
        assert find_reconcile_error(outer) is outer

    def test_chain_cycle_terminates(self) -> None:
        """Test a cyclic chain is walked once."""
        a = RuntimeError("a")
        b = RuntimeError("b")
        a.__cause__ = b
        b.__cause__ = a
        assert list(iter_error_chain(a)) == [a, b]


class TestServiceError:
    """Tests for ServiceError."""

    def test_message_names_service(self) -> None:
        """Test the message carries the action, the service and the cause."""
        err = ServiceError("vpc", "reconcile ScalewayCluster service", RuntimeError("boom"))
        assert str(err) == "failed to reconcile ScalewayCluster service vpc: boom"
        assert err.service == "vpc"
