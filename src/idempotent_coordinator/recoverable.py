"""Classification of operation errors as permanent or transient.

When a wrapped operation returns ``Err(reason)`` the coordinator asks a
classifier whether the failure is worth retrying:

- permanent (not retryable): the error is cached and replayed to every
  later caller with the same key; the operation never runs again.
- transient (retryable): the claim is released so a later call runs the
  operation again.

Error types opt in by implementing ``Recoverable``. Anything the classifier
cannot place, including values that are not exceptions at all, is treated
as transient.

Examples:
    Declaring error types::

        class CardDeclined(PermanentError):
            pass

        class GatewayTimeout(TransientError):
            pass

    Classifying third-party errors without touching them::

        classifier = RecoverableClassifier(
            overrides={stripe.error.CardError: False, httpx.TimeoutException: True},
        )
"""

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from idempotent_coordinator.observability.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class Recoverable(Protocol):
    """Errors that know whether they are worth retrying."""

    def is_retryable(self) -> bool: ...


class Classifier(Protocol):
    """Capability consulted by the coordinator for ``Err`` outcomes."""

    def is_retryable(self, error: Any) -> bool: ...


class PermanentError(Exception):
    """Base class for errors that must not be retried."""

    def is_retryable(self) -> bool:
        return False


class TransientError(Exception):
    """Base class for errors that may succeed on retry."""

    def is_retryable(self) -> bool:
        return True


class RecoverableClassifier:
    """Default classifier.

    Resolution order:

    1. ``error.is_retryable()`` when the error implements ``Recoverable``.
    2. ``overrides``, matched against the error's class and its bases in MRO
       order.
    3. ``default_retryable`` (True, i.e. transient).

    If ``is_retryable()`` itself raises, the default applies.

    Attributes:
        default_retryable: Answer for errors nothing else classifies.
    """

    def __init__(
        self,
        default_retryable: bool = True,
        overrides: Mapping[type, bool] | None = None,
    ) -> None:
        self.default_retryable = default_retryable
        self._overrides: dict[type, bool] = dict(overrides or {})

    def register(self, error_type: type, retryable: bool) -> None:
        """Classify ``error_type`` (and its subclasses) explicitly."""
        self._overrides[error_type] = retryable

    def is_retryable(self, error: Any) -> bool:
        if isinstance(error, Recoverable):
            try:
                return bool(error.is_retryable())
            except Exception as e:
                logger.warning(
                    "classifier.is_retryable_failed",
                    error_type=type(error).__name__,
                    exception=str(e),
                )
                return self.default_retryable

        for cls in type(error).__mro__:
            if cls in self._overrides:
                return self._overrides[cls]

        return self.default_retryable
