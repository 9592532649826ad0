"""Concurrent utilities for independent cloud calls."""

import contextvars
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

from director_aws.exceptions import Outcome


def call_all(*fns: Callable[[], object]) -> Outcome:
    """Run every function concurrently and wait for all of them.

    No call is cancelled when another fails. Every failure is recorded in
    the returned Outcome, in argument order, so the first failing function
    provides the primary error.

    Example:
        >>> call_all(delete_group, delete_launch_template).raise_if_failed()
    """
    outcome = Outcome()
    if not fns:
        return outcome

    # ctx.run cannot be shared between threads, copy once per task
    with ThreadPoolExecutor(max_workers=len(fns)) as executor:
        futures = [executor.submit(contextvars.copy_context().run, fn) for fn in fns]
        for future in futures:
            if (error := future.exception()) is not None:
                outcome.record(error)
    return outcome
