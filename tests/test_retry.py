"""
Tests for centralized retry logic.
"""

from unittest.mock import MagicMock, patch

import pytest

from shared.retry import RetryConfig, calculate_delay, retry_call


class Conflict(Exception):
    pass


def test_calculate_delay_exponential():
    """Delay should increase exponentially."""
    config = RetryConfig(base_delay=1.0, exponential_base=2.0, jitter_factor=0.0)

    assert calculate_delay(0, config) == pytest.approx(1.0)
    assert calculate_delay(1, config) == pytest.approx(2.0)
    assert calculate_delay(2, config) == pytest.approx(4.0)


def test_calculate_delay_respects_max():
    """Delay should not exceed max_delay."""
    config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter_factor=0.0)

    assert calculate_delay(10, config) <= 5.0


def test_calculate_delay_adds_jitter():
    """Jitter should stay within the configured fraction."""
    config = RetryConfig(base_delay=1.0, jitter_factor=0.3)

    for _ in range(20):
        assert 1.0 <= calculate_delay(0, config) <= 1.3


@patch("shared.retry.time.sleep")
def test_retry_call_succeeds_after_retryable_failures(mock_sleep):
    """Retryable exceptions should be retried until success."""
    func = MagicMock(side_effect=[Conflict("stale"), Conflict("stale"), "ok"])
    config = RetryConfig(max_retries=3, base_delay=0.01, retryable_exceptions=(Conflict,))

    assert retry_call(func, config=config) == "ok"
    assert func.call_count == 3
    assert mock_sleep.call_count == 2


@patch("shared.retry.time.sleep")
def test_retry_call_raises_after_exhaustion(mock_sleep):
    """The last exception should propagate once retries run out."""
    func = MagicMock(side_effect=Conflict("stale"))
    config = RetryConfig(max_retries=2, base_delay=0.01, retryable_exceptions=(Conflict,))

    with pytest.raises(Conflict):
        retry_call(func, config=config)

    assert func.call_count == 3


@patch("shared.retry.time.sleep")
def test_retry_call_does_not_retry_other_exceptions(mock_sleep):
    """Exceptions outside retryable_exceptions should propagate immediately."""
    func = MagicMock(side_effect=KeyError("missing"))
    config = RetryConfig(max_retries=5, retryable_exceptions=(Conflict,))

    with pytest.raises(KeyError):
        retry_call(func, config=config)

    assert func.call_count == 1
    mock_sleep.assert_not_called()


def test_retry_call_passes_arguments():
    """Positional and keyword arguments should reach the function."""
    func = MagicMock(return_value=42)

    assert retry_call(func, 1, 2, config=RetryConfig(max_retries=0), flag=True) == 42
    func.assert_called_once_with(1, 2, flag=True)


@patch("shared.retry.time.sleep")
def test_zero_retries_means_single_attempt(mock_sleep):
    """max_retries=0 should call once and re-raise."""
    func = MagicMock(side_effect=Conflict("stale"))

    with pytest.raises(Conflict):
        retry_call(func, config=RetryConfig(max_retries=0, retryable_exceptions=(Conflict,)))

    assert func.call_count == 1
    mock_sleep.assert_not_called()
