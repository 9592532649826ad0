"""Deadline-bounded retry built on tenacity.

A RetryPolicy is a value: a classification function, an optional extra
predicate, a fixed backoff and an absolute deadline. ``should_retry`` is
pure; ``call`` runs a function under the policy with ``tenacity.Retrying``.

Example:
    from director_aws.retry import RetryPolicy, on_error_code

    policy = RetryPolicy.until(
        deadline,
        backoff=1.0,
        also=on_error_code("InvalidLaunchTemplateName.NotFoundException"),
    )
    policy.call(autoscaling.create_auto_scaling_group, **request)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import ParamSpec, TypeVar

from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception, wait_fixed

from director_aws.aws_errors import error_code, is_not_found, is_unrecoverable

P = ParamSpec("P")
T = TypeVar("T")

type ErrorPredicate = Callable[[BaseException], bool]
type Clock = Callable[[], float]
type Sleep = Callable[[float], None]

log = logger.bind(component="retry")


def _never(_: BaseException) -> bool:
    return False


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Retry while an error is recoverable and the deadline has not passed.

    Args:
        deadline: Absolute time on ``clock`` after which no retry happens.
        backoff: Fixed seconds to wait between attempts.
        also: Extra predicate that makes otherwise unrecoverable errors
            retryable (e.g. a resource not yet visible after creation).
        unrecoverable: Base classification. Errors it accepts are not
            retried unless ``also`` matches.
        clock: Monotonic clock used for the deadline.
        sleep: Sleep function between attempts.
    """

    deadline: float
    backoff: float = 1.0
    also: ErrorPredicate = _never
    unrecoverable: ErrorPredicate = is_unrecoverable
    clock: Clock = field(default=time.monotonic, compare=False)
    sleep: Sleep = field(default=time.sleep, compare=False)

    @classmethod
    def until(
        cls,
        deadline: float,
        *,
        backoff: float = 1.0,
        also: ErrorPredicate | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = time.sleep,
    ) -> RetryPolicy:
        return cls(deadline=deadline, backoff=backoff, also=also or _never, clock=clock, sleep=sleep)

    @classmethod
    def within(
        cls,
        seconds: float,
        *,
        backoff: float = 1.0,
        also: ErrorPredicate | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = time.sleep,
    ) -> RetryPolicy:
        return cls.until(clock() + seconds, backoff=backoff, also=also, clock=clock, sleep=sleep)

    def retryable(self, error: BaseException) -> bool:
        """Classification only, ignoring the deadline."""
        if not isinstance(error, Exception):
            return False
        return not self.unrecoverable(error) or self.also(error)

    def should_retry(self, error: BaseException, now: float | None = None) -> bool:
        now = self.clock() if now is None else now
        return now < self.deadline and self.retryable(error)

    def _stop(self, _: RetryCallState) -> bool:
        return self.clock() >= self.deadline

    def _before_sleep(self, state: RetryCallState) -> None:
        error = state.outcome.exception() if state.outcome else None
        log.debug(
            "Attempt {n} failed with {err}, retrying in {s:.1f}s",
            n=state.attempt_number, err=type(error).__name__, s=self.backoff,
        )

    def call(self, fn: Callable[P, T], /, *args: P.args, **kwargs: P.kwargs) -> T:
        """Run ``fn`` under this policy; the last error is re-raised as is."""
        retrying = Retrying(
            stop=self._stop,
            wait=wait_fixed(self.backoff),
            retry=retry_if_exception(self.retryable),
            sleep=self.sleep,
            before_sleep=self._before_sleep,
            reraise=True,
        )
        return retrying(fn, *args, **kwargs)


# =============================================================================
# Common Predicates
# =============================================================================


def on_error_code(*codes: str) -> ErrorPredicate:
    """Match AWS errors with any of the given codes."""

    def predicate(e: BaseException) -> bool:
        return error_code(e) in codes

    return predicate


def on_not_found(e: BaseException) -> bool:
    """Resource not visible yet; EC2 is eventually consistent."""
    if is_not_found(e):
        log.info("Resource not found, might be a transient error: {code}", code=error_code(e))
        return True
    return False


def only(predicate: ErrorPredicate) -> ErrorPredicate:
    """Classification that retries nothing except what ``predicate`` matches."""

    def unrecoverable(e: BaseException) -> bool:
        return not predicate(e)

    return unrecoverable
