"""Tests for permanent/transient error classification."""

from idempotent_coordinator.codec import CachedError
from idempotent_coordinator.core.middleware import Response, ResponseError
from idempotent_coordinator.recoverable import (
    PermanentError,
    Recoverable,
    RecoverableClassifier,
    TransientError,
)


class CardDeclined(PermanentError):
    pass


class GatewayTimeout(TransientError):
    pass


class ThirdPartyError(Exception):
    pass


class ThirdPartyCardError(ThirdPartyError):
    pass


class BrokenClassification(Exception):
    def is_retryable(self) -> bool:
        raise RuntimeError("cannot tell")


class TestRecoverableClassifier:
    def test_permanent_error(self) -> None:
        assert RecoverableClassifier().is_retryable(CardDeclined()) is False

    def test_transient_error(self) -> None:
        assert RecoverableClassifier().is_retryable(GatewayTimeout()) is True

    def test_unknown_error_defaults_to_transient(self) -> None:
        assert RecoverableClassifier().is_retryable(ThirdPartyError()) is True

    def test_non_exception_reason_defaults_to_transient(self) -> None:
        classifier = RecoverableClassifier()
        assert classifier.is_retryable({"code": "declined"}) is True
        assert classifier.is_retryable("declined") is True

    def test_default_can_be_permanent(self) -> None:
        assert RecoverableClassifier(default_retryable=False).is_retryable("declined") is False

    def test_override_matches_subclasses(self) -> None:
        classifier = RecoverableClassifier(overrides={ThirdPartyError: False})
        assert classifier.is_retryable(ThirdPartyCardError()) is False

    def test_most_specific_override_wins(self) -> None:
        classifier = RecoverableClassifier(overrides={ThirdPartyError: False})
        classifier.register(ThirdPartyCardError, True)
        assert classifier.is_retryable(ThirdPartyCardError()) is True
        assert classifier.is_retryable(ThirdPartyError()) is False

    def test_error_answer_beats_override(self) -> None:
        classifier = RecoverableClassifier(overrides={CardDeclined: True})
        assert classifier.is_retryable(CardDeclined()) is False

    def test_raising_is_retryable_falls_back_to_default(self) -> None:
        assert RecoverableClassifier().is_retryable(BrokenClassification()) is True
        assert (
            RecoverableClassifier(default_retryable=False).is_retryable(BrokenClassification())
            is False
        )

    def test_cached_error_is_transient_by_default(self) -> None:
        assert RecoverableClassifier().is_retryable(CachedError("x.Y", "boom")) is True


class TestResponseErrorClassification:
    def test_protocol(self) -> None:
        assert isinstance(ResponseError(Response(status=500)), Recoverable)

    def test_server_errors_are_transient(self) -> None:
        classifier = RecoverableClassifier()
        assert classifier.is_retryable(ResponseError(Response(status=503))) is True

    def test_throttling_and_timeouts_are_transient(self) -> None:
        classifier = RecoverableClassifier()
        assert classifier.is_retryable(ResponseError(Response(status=429))) is True
        assert classifier.is_retryable(ResponseError(Response(status=408))) is True

    def test_client_errors_are_permanent(self) -> None:
        classifier = RecoverableClassifier()
        assert classifier.is_retryable(ResponseError(Response(status=402))) is False
        assert classifier.is_retryable(ResponseError(Response(status=422))) is False
