import pytest
from botocore.exceptions import EndpointConnectionError, NoCredentialsError

from director_aws.aws_errors import (
    classify,
    error_message,
    is_not_found,
    is_retryable,
    is_unrecoverable,
    propagate,
    propagate_if_unrecoverable,
)
from director_aws.exceptions import (
    InvalidCredentialsError,
    Outcome,
    TransientProviderError,
    UnrecoverableProviderError,
    attach_secondary,
)
from tests.conftest import client_error

pytestmark = [pytest.mark.xdist_group("unit")]


class TestClassify:
    @pytest.mark.parametrize("code", ["AuthFailure", "UnauthorizedOperation"])
    def test_authorization_codes(self, code):
        assert isinstance(classify(client_error(code)), InvalidCredentialsError)

    def test_missing_credentials(self):
        assert isinstance(classify(NoCredentialsError()), InvalidCredentialsError)

    @pytest.mark.parametrize("code", ["RequestLimitExceeded", "Throttling", "InternalError"])
    def test_transient_codes(self, code):
        assert isinstance(classify(client_error(code)), TransientProviderError)

    def test_server_status_is_transient(self):
        assert isinstance(classify(client_error("Weird", status=503)), TransientProviderError)

    def test_client_error_is_unrecoverable(self):
        error = classify(client_error("InvalidParameterValue", "bad ami"))
        assert isinstance(error, UnrecoverableProviderError)
        assert error.message == "InvalidParameterValue: bad ami"

    def test_transport_error_is_transient(self):
        error = EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com")
        assert isinstance(classify(error), TransientProviderError)

    def test_provider_errors_pass_through(self):
        error = TransientProviderError("later")
        assert classify(error) is error

    def test_unknown_exception_is_unrecoverable(self):
        assert isinstance(classify(RuntimeError("boom")), UnrecoverableProviderError)


class TestPredicates:
    @pytest.mark.parametrize(
        ("code", "expected"),
        [
            ("InvalidInstanceID.NotFound", True),
            ("InvalidLaunchTemplateName.NotFoundException", True),
            ("InvalidInstanceID.Malformed", False),
        ],
    )
    def test_is_not_found(self, code, expected):
        assert is_not_found(client_error(code)) is expected

    def test_is_not_found_ignores_other_exceptions(self):
        assert not is_not_found(ValueError("NotFound"))

    def test_is_retryable(self):
        assert is_retryable(client_error("RequestLimitExceeded"))
        assert not is_retryable(client_error("InvalidAMIID.Malformed"))

    def test_interrupts_are_unrecoverable(self):
        assert is_unrecoverable(KeyboardInterrupt())

    def test_error_message_falls_back_to_str(self):
        assert error_message(ValueError("plain")) == "plain"


class TestPropagate:
    def test_unrecoverable_is_raised_classified(self):
        original = client_error("InvalidParameterValue")
        with pytest.raises(UnrecoverableProviderError) as exc_info:
            propagate_if_unrecoverable(original)
        assert exc_info.value.__cause__ is original

    def test_transient_is_not_raised(self):
        propagate_if_unrecoverable(client_error("RequestLimitExceeded"))

    def test_propagate_defaults_to_transient(self):
        with pytest.raises(TransientProviderError, match="slow down"):
            propagate(client_error("RequestLimitExceeded", "slow down"))


class TestOutcome:
    def test_first_error_is_primary(self):
        first, second = ValueError("first"), ValueError("second")
        outcome = Outcome()
        outcome.record(first)
        outcome.record(second)
        assert outcome.primary is first
        assert outcome.secondary == [second]
        assert outcome.errors == [first, second]

    def test_ok_raises_nothing(self):
        outcome = Outcome()
        assert outcome.ok
        outcome.raise_if_failed()

    def test_secondary_attached_to_provider_error(self):
        primary = UnrecoverableProviderError("delete group")
        secondary = TransientProviderError("delete template")
        outcome = Outcome()
        outcome.record(primary)
        outcome.record(secondary)

        with pytest.raises(UnrecoverableProviderError) as exc_info:
            outcome.raise_if_failed()

        assert exc_info.value is primary
        assert exc_info.value.secondary == [secondary]
        assert str(exc_info.value) == "delete group (+1 secondary error(s))"

    def test_secondary_added_as_note_on_plain_exceptions(self):
        error = attach_secondary(ValueError("primary"), [RuntimeError("cleanup")])
        assert error.__notes__ == ["secondary error: RuntimeError: cleanup"]

    def test_interrupt_wins(self):
        outcome = Outcome()
        outcome.record(ValueError("primary"))
        outcome.record(KeyboardInterrupt())
        with pytest.raises(KeyboardInterrupt):
            outcome.raise_if_failed()
