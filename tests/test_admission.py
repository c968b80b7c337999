import pytest

from runbox.core.models import ExecutionMode
from runbox.services.admission import AdmissionPolicy, decide

SYNC, ASYNC = ExecutionMode.SYNC, ExecutionMode.ASYNC


@pytest.mark.parametrize(
    "language, size, timeout, expected",
    [
        ("python", 10, 2_000, SYNC),
        ("javascript", 1_000, 10_000, SYNC),   # both thresholds inclusive
        ("python", 1_001, 2_000, ASYNC),
        ("python", 10, 10_001, ASYNC),
        ("java", 10, 2_000, ASYNC),
        ("rust", 10, 100, ASYNC),
    ],
)
def test_decide_boundaries(language, size, timeout, expected):
    assert decide(language, size, timeout) is expected


def test_missing_timeout_uses_language_default():
    # python defaults to 30s, above the 10s inline ceiling
    assert decide("python", 10, None) is ASYNC
    assert AdmissionPolicy().effective_timeout("java", None) == 45_000
    assert AdmissionPolicy().effective_timeout("python", 1_500) == 1_500


def test_unknown_language_is_never_inline():
    assert decide("cobol", 1, 100) is ASYNC


def test_policy_thresholds_are_configurable():
    policy = AdmissionPolicy(fast_languages=frozenset({"go"}), max_sync_timeout_ms=60_000)
    assert policy.decide("go", 10, None) is SYNC
    assert policy.decide("python", 10, 1_000) is ASYNC


def test_decide_is_pure():
    results = {decide("python", 500, 5_000) for _ in range(50)}
    assert results == {SYNC}
