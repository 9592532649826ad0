"""Exception hierarchy for director-aws.

All errors raised by the provider inherit from DirectorAwsError, so callers
can catch every provider failure with a single except clause. The three
provider error classes mirror how a failure should be handled:

- InvalidCredentialsError: the account or role cannot perform the call.
- TransientProviderError: retrying the same operation later may succeed.
- UnrecoverableProviderError: the request itself is wrong, or the deadline
  passed without enough instances. Do not retry.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any


class DirectorAwsError(Exception):
    """Base exception for all director-aws errors."""


class ProviderError(DirectorAwsError):
    """A classified cloud-side failure.

    Args:
        message: Human readable description.
        secondary: Errors raised while handling this one (cleanup failures).
            They never replace the primary error.
        context: Extra structured details, e.g. which virtual instance ids
            were allocated and which failed.
    """

    def __init__(
        self,
        message: str,
        *,
        secondary: Iterable[BaseException] = (),
        context: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.secondary: list[BaseException] = list(secondary)
        self.context: dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        if not self.secondary:
            return self.message
        return f"{self.message} (+{len(self.secondary)} secondary error(s))"


class InvalidCredentialsError(ProviderError):
    """Raised when AWS rejects the caller's credentials or permissions."""


class TransientProviderError(ProviderError):
    """Raised for retryable cloud-side failures."""


class UnrecoverableProviderError(ProviderError):
    """Raised for failures that retrying will not fix."""


class ConfigurationError(DirectorAwsError):
    """Raised for malformed configuration files or settings."""


class ValidationError(DirectorAwsError):
    """Raised when a template fails validation before allocation.

    Validation itself never raises; the provider raises this only when asked
    to build a template that has accumulated conditions.
    """

    def __init__(self, template_name: str, conditions: Sequence[Any]) -> None:
        self.template_name = template_name
        self.conditions = tuple(conditions)
        lines = "\n".join(f"  - {c}" for c in self.conditions)
        super().__init__(f"Template '{template_name}' is invalid:\n{lines}")


# =============================================================================
# Primary + secondary outcome
# =============================================================================


@dataclass(slots=True)
class Outcome:
    """Result of running several independent actions.

    The first failure becomes the primary error; later failures are kept as
    secondary errors in the order they were observed.
    """

    primary: BaseException | None = None
    secondary: list[BaseException] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.primary is None

    @property
    def errors(self) -> list[BaseException]:
        return [] if self.primary is None else [self.primary, *self.secondary]

    def record(self, error: BaseException) -> None:
        if self.primary is None:
            self.primary = error
        else:
            self.secondary.append(error)

    def raise_if_failed(self) -> None:
        """Raise the primary error with every secondary error attached.

        Process-level exceptions (anything that is not an ``Exception``) are
        raised first, even when they are not the primary error.
        """
        if self.primary is None:
            return
        for error in self.errors:
            if not isinstance(error, Exception):
                raise error
        raise attach_secondary(self.primary, self.secondary)


def attach_secondary(error: BaseException, secondary: Iterable[BaseException]) -> BaseException:
    """Attach secondary errors to ``error`` without masking it."""
    extra = [e for e in secondary if e is not error]
    if not extra:
        return error
    if isinstance(error, ProviderError):
        error.secondary.extend(extra)
    else:
        for e in extra:
            error.add_note(f"secondary error: {type(e).__name__}: {e}")
    return error

