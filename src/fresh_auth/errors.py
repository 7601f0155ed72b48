"""Auth error classification and the fresh-auth exception hierarchy.

The broker reports authorization problems as JSON payloads. Each payload is
classified into exactly one `AuthErrorKind` by `classify_auth_error`, which
checks a fixed list of rules in order; the first match wins. Only the
grant-related kinds are retried automatically, everything else needs a
human to log in, link an account or approve additional access.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from fresh_auth.services import account_label

CLI_NAME = "fresh-auth"

# Error codes that a fresh grant request can fix
RETRYABLE_ERROR_CODES = frozenset({"no_grant", "grant_expired", "single_use_exhausted"})


class AuthErrorKind(Enum):
    """Remediation kinds, in classification precedence order."""
    NO_SESSION = "no_session"
    NO_GRANT = "no_grant"
    ACCOUNT_NOT_LINKED = "account_not_linked"
    SCOPE_OR_TOKEN_EXPIRED = "scope_or_token_expired"
    ELEVATION_REQUIRED = "elevation_required"
    GENERIC = "generic"


@dataclass(frozen=True)
class AuthError:
    """A classified auth payload with the data its remediation needs."""
    kind: AuthErrorKind
    service: str = ""
    message: str = ""
    url: Optional[str] = None  # connect, reauthorize or elevate URL
    missing_scopes: tuple[str, ...] = field(default_factory=tuple)

    def remediation(self) -> str:
        """Human-readable diagnosis plus the next action to take."""
        kind = self.kind
        if kind is AuthErrorKind.NO_SESSION:
            return f"No agent session. Run '{CLI_NAME} login' first."

        if kind is AuthErrorKind.NO_GRANT:
            return "\n".join([
                f"No active grant for {self.service}.",
                "",
                "Request access by running:",
                f"  {CLI_NAME} request {self.service}",
            ])

        if kind is AuthErrorKind.ACCOUNT_NOT_LINKED:
            return "\n".join([
                f"{account_label(self.service)} account not linked.",
                "",
                "Link account at:",
                f"  {self.url}",
            ])

        if kind is AuthErrorKind.SCOPE_OR_TOKEN_EXPIRED:
            lines = ["Access token expired or missing scopes."]
            if self.missing_scopes:
                lines.append(f"Missing scopes: {' '.join(self.missing_scopes)}")
            lines += ["", "Re-authorize at:", f"  {self.url}"]
            return "\n".join(lines)

        if kind is AuthErrorKind.ELEVATION_REQUIRED:
            return "\n".join([
                self.message or "Additional authorization required.",
                "",
                "Approve at:",
                f"  {self.url}",
            ])

        return self.message or "Authentication failed"


def normalize_auth_payload(payload: Any) -> dict:
    """Flatten a broker error payload, lifting a nested `details` object."""
    if not isinstance(payload, dict):
        return {}
    details = payload.get("details")
    if isinstance(details, dict):
        return {**payload, **details}
    return dict(payload)


def _error_code(data: dict) -> str:
    code = data.get("error")
    return code if isinstance(code, str) else ""


def classify_auth_error(payload: Any, service: str = "") -> AuthError:
    """Classify a broker error payload.

    Rules, first match wins:

    1. error == "no_agent_session"                        -> NO_SESSION
    2. error in no_grant/grant_expired/single_use_exhausted -> NO_GRANT
    3. error == "no_oauth_token" with a connectUrl        -> ACCOUNT_NOT_LINKED
    4. reauthorizeUrl present                             -> SCOPE_OR_TOKEN_EXPIRED
    5. elevateUrl present                                 -> ELEVATION_REQUIRED
    6. anything else                                      -> GENERIC

    Args:
        payload: Parsed JSON error body (non-dict values are treated as empty).
        service: CLI service name the failed call was made for.

    Returns:
        The classified error.
    """
    data = normalize_auth_payload(payload)
    code = _error_code(data)
    message = data.get("message") if isinstance(data.get("message"), str) else ""

    if code == "no_agent_session":
        return AuthError(AuthErrorKind.NO_SESSION, service=service, message=message)

    if code in RETRYABLE_ERROR_CODES:
        return AuthError(AuthErrorKind.NO_GRANT, service=service, message=message)

    if code == "no_oauth_token" and data.get("connectUrl"):
        return AuthError(
            AuthErrorKind.ACCOUNT_NOT_LINKED,
            service=service,
            message=message,
            url=data["connectUrl"],
        )

    if data.get("reauthorizeUrl"):
        missing = data.get("missingScopes")
        return AuthError(
            AuthErrorKind.SCOPE_OR_TOKEN_EXPIRED,
            service=service,
            message=message,
            url=data["reauthorizeUrl"],
            missing_scopes=tuple(str(s) for s in missing) if isinstance(missing, list) else (),
        )

    if data.get("elevateUrl"):
        return AuthError(
            AuthErrorKind.ELEVATION_REQUIRED,
            service=service,
            message=message or code,
            url=data["elevateUrl"],
        )

    return AuthError(
        AuthErrorKind.GENERIC,
        service=service,
        message=message or code or "Authentication failed",
    )


def is_retryable_auth_error(payload: Any) -> bool:
    """True only for errors a new grant request can resolve."""
    return _error_code(normalize_auth_payload(payload)) in RETRYABLE_ERROR_CODES


# =============================================================================
# Exceptions
# =============================================================================


class FreshAuthError(Exception):
    """Base class for failures surfaced to the operator."""


class NotLoggedIn(FreshAuthError):
    """No local agent session; the user has to log in first."""

    def __init__(self, message: str | None = None):
        super().__init__(message or f"No agent session. Run '{CLI_NAME} login' first.")


class AuthorizationRequired(FreshAuthError):
    """The broker refused a call for a reason a human has to fix."""

    def __init__(self, error: AuthError, status_code: int | None = None):
        super().__init__(error.remediation())
        self.error = error
        self.status_code = status_code

    @property
    def kind(self) -> AuthErrorKind:
        return self.error.kind


class GrantDenied(FreshAuthError):
    """The grant request was denied or expired on the broker."""

    def __init__(self, message: str, status: str):
        super().__init__(message)
        self.status = status


class GrantTimeout(FreshAuthError):
    """No terminal grant state before the local deadline."""

    def __init__(self):
        super().__init__("Timed out waiting for authorization approval.")


class RegistrationError(FreshAuthError):
    """Agent registration (login) failed."""


class BrokerError(FreshAuthError):
    """Unexpected response from the broker or a proxied API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
