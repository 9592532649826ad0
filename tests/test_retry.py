from unittest.mock import MagicMock

import pytest

from director_aws.retry import RetryPolicy, on_error_code, on_not_found, only
from tests.conftest import FakeClock, client_error

pytestmark = [pytest.mark.xdist_group("unit")]


def policy(clock: FakeClock, seconds: float = 10.0, **kwargs) -> RetryPolicy:
    return RetryPolicy.within(seconds, clock=clock, sleep=clock.sleep, **kwargs)


class TestShouldRetry:
    def test_transient_before_deadline(self, clock):
        assert policy(clock).should_retry(client_error("RequestLimitExceeded"))

    def test_transient_after_deadline(self, clock):
        p = policy(clock)
        assert not p.should_retry(client_error("RequestLimitExceeded"), now=p.deadline)

    def test_unrecoverable_is_not_retried(self, clock):
        assert not policy(clock).should_retry(client_error("InvalidParameterValue"))

    def test_also_overrides_classification(self, clock):
        p = policy(clock, also=on_error_code("InvalidLaunchTemplateName.NotFoundException"))
        assert p.should_retry(client_error("InvalidLaunchTemplateName.NotFoundException"))
        assert not p.should_retry(client_error("InvalidParameterValue"))

    def test_interrupts_are_never_retried(self, clock):
        p = policy(clock, also=lambda e: True)
        assert not p.should_retry(KeyboardInterrupt())


class TestCall:
    def test_retries_until_success(self, clock):
        fn = MagicMock(side_effect=[client_error("Throttling"), client_error("Throttling"), "done"])
        assert policy(clock, backoff=2.0).call(fn) == "done"
        assert fn.call_count == 3
        assert clock.sleeps == [2.0, 2.0]

    def test_unrecoverable_raises_immediately(self, clock):
        error = client_error("InvalidParameterValue")
        fn = MagicMock(side_effect=error)
        with pytest.raises(type(error)) as exc_info:
            policy(clock).call(fn)
        assert exc_info.value is error
        assert fn.call_count == 1

    def test_deadline_reraises_last_error(self, clock):
        fn = MagicMock(side_effect=client_error("Throttling"))
        with pytest.raises(Exception, match="Throttling"):
            policy(clock, seconds=3.0, backoff=1.0).call(fn)
        assert fn.call_count == 4

    def test_passes_arguments(self, clock):
        fn = MagicMock(return_value=1)
        policy(clock).call(fn, "a", key="b")
        fn.assert_called_once_with("a", key="b")


class TestPredicates:
    def test_on_not_found(self):
        assert on_not_found(client_error("InvalidInstanceID.NotFound"))
        assert not on_not_found(client_error("Throttling"))

    def test_only_retries_nothing_else(self, clock):
        p = RetryPolicy(
            deadline=clock() + 10,
            unrecoverable=only(on_not_found),
            clock=clock,
            sleep=clock.sleep,
        )
        assert p.retryable(client_error("InvalidInstanceID.NotFound"))
        assert not p.retryable(client_error("Throttling"))
