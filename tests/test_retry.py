import pytest

from conftest import NOW
from refresh_engine.errors import (
    QuotaExceeded, StalenessViolation, TransientNetworkError, ValidationError,
)
from refresh_engine.queue.retry import RetryPolicy

POLICY = RetryPolicy(max_attempts=3, base_delay_s=30, max_delay_s=100, staleness_retry_delay_s=300)


def _upper(lo, hi):
    return hi


@pytest.mark.parametrize("attempt,ceiling", [(1, 30), (2, 60), (3, 100), (10, 100)])
def test_backoff_ceiling_grows_then_caps(attempt, ceiling):
    assert POLICY.backoff(attempt, rand=_upper) == ceiling


def test_backoff_is_jittered_within_bounds():
    for attempt in range(1, 6):
        d = POLICY.backoff(attempt)
        assert 0 <= d <= 100


def test_delay_for_each_category():
    assert POLICY.delay_for(QuotaExceeded("cap"), 1, NOW) == 1_760_054_400 - NOW
    assert POLICY.delay_for(StalenessViolation("same"), 1, NOW) == 300
    assert 0 <= POLICY.delay_for(TransientNetworkError("503"), 2, NOW) <= 60
    assert POLICY.delay_for(ValidationError("drift"), 1, NOW) == 0.0
    assert POLICY.delay_for(RuntimeError("bug"), 1, NOW) == 0.0


def test_should_retry():
    assert POLICY.should_retry(1) is True
    assert POLICY.should_retry(2) is True
    assert POLICY.should_retry(3) is False
    assert POLICY.should_retry(1, retryable=False) is False
