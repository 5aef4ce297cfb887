from __future__ import annotations

import pytest

from portfolio_stream.runtime.backoff import CAP_DELAY_MS, BackoffPolicy, backoff_delay_ms


@pytest.mark.parametrize(
    "attempt,expected",
    [(0, 1000), (1, 2000), (2, 4000), (3, 8000), (4, 16000), (5, 30000), (6, 30000), (500, 30000)],
)
def test_backoff_delay_table(attempt, expected):
    assert backoff_delay_ms(attempt) == expected


def test_backoff_matches_closed_form_and_never_exceeds_cap():
    for attempt in range(80):
        delay = backoff_delay_ms(attempt)
        assert delay == min(1000 * 2 ** attempt, 30000)
        assert delay <= CAP_DELAY_MS


def test_backoff_rejects_negative_attempt():
    with pytest.raises(ValueError):
        backoff_delay_ms(-1)


def test_policy_custom_bounds():
    policy = BackoffPolicy(base_ms=250, cap_ms=1000)
    assert [policy.delay_ms(n) for n in range(5)] == [250, 500, 1000, 1000, 1000]


@pytest.mark.parametrize("base,cap", [(-5, 1000), (2000, 1000), (10, 5)])
def test_policy_rejects_bad_bounds(base, cap):
    with pytest.raises(ValueError):
        BackoffPolicy(base_ms=base, cap_ms=cap)
