"""Error taxonomy for authorization, token lifecycle and feed polling.

Every error carries a stable code prefix (in the style `error-<area>-<n>`) so log lines
and UI messages can be correlated, and a `user_message` that is safe to show.
"""

from typing import Optional


class NotifyError(Exception):
    """Base class for all errors raised by the notify flows."""

    code: str = "error-notify-1999"
    user_message: str = "Something went wrong. Please try again."

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(f"{self.code} {detail}".strip())


class InvalidCallbackError(NotifyError):
    """The callback is missing its code or state."""

    code = "error-auth-1000"
    user_message = "The sign-in response was incomplete. Please start again."


class UnknownStateError(NotifyError):
    """The callback state does not match any pending authorization."""

    code = "error-auth-1001"
    user_message = "This sign-in attempt has expired or was not started here. Please start again."


class DuplicateCallbackError(NotifyError):
    """The callback for this state was already handled."""

    code = "error-auth-1002"
    user_message = "This sign-in was already processed."


class RejectedGrantError(NotifyError):
    """The authorization server refused the grant with a structured OAuth error."""

    code = "error-auth-1003"

    def __init__(self, error_code: str, description: Optional[str] = None) -> None:
        self.error_code = error_code
        self.description = description
        super().__init__(f"{error_code}: {description or 'no description'}")

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return f"Sign-in was rejected: {self.description or self.error_code}"


class MalformedTokenResponseError(NotifyError):
    """A successful token response lacks a required field."""

    code = "error-auth-1004"
    user_message = "The server sent an incomplete sign-in response. Please try again."


class ProtocolError(NotifyError):
    """A response could not be understood."""

    code = "error-protocol-1000"
    user_message = "The server sent an unexpected response. Please try again."


class TransientError(NotifyError):
    """A network failure, timeout or server side error that may succeed later."""

    code = "error-network-1000"
    user_message = "The server could not be reached. Please try again shortly."


class RevokedError(NotifyError):
    """The refresh token was rejected and the account has been removed."""

    code = "error-token-1000"
    user_message = "Your session has ended. Please sign in again."

    def __init__(self, account_id: str, detail: str = "") -> None:
        self.account_id = account_id
        super().__init__(f"{account_id} {detail}".strip())


class FeedNotImplementedError(NotifyError):
    """The account's server does not implement the requested feed."""

    code = "error-feed-1000"
    user_message = "This feed is not available for the account."
