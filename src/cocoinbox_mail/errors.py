# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exceptions raised by the delivery policy.

Only premium misconfiguration and total exhaustion reach the caller during a
normal send; transport failures are recovered by falling through to the next
strategy and only surface when the last strategy fails.
"""


class MailServiceError(RuntimeError):
    """Base class for delivery errors, carrying a machine readable ``code``."""

    code = "mail_service_error"


class ConfigurationError(MailServiceError):
    """Raised when the credentials required by the premium branch are missing."""

    code = "missing_premium_configuration"

    def __init__(
        self,
        message: str = "Mailchimp API key and server prefix must be provided for premium email sending",
    ):
        super().__init__(message)


class TransportFailure(MailServiceError):
    """Raised when a reachable transport failed to deliver a message."""

    code = "transport_failure"

    def __init__(self, strategy: str, cause: BaseException | str):
        super().__init__(f"{strategy} transport failed: {cause}")
        self.strategy = strategy
        self.cause = cause


class TransportExhausted(MailServiceError):
    """Raised when no delivery strategy was applicable or succeeded.

    ``failures`` lists the transport failures that were recovered by falling
    through before the strategies ran out, oldest first.
    """

    code = "transport_exhausted"

    def __init__(
        self,
        message: str = (
            "No email transport configured or free tier quota exhausted. "
            "Please add domains or upgrade to premium."
        ),
        failures: list[TransportFailure] | None = None,
    ):
        super().__init__(message)
        self.failures = list(failures or [])
