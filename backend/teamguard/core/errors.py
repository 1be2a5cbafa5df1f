"""Exception hierarchy for authentication, authorization and credentials.

Authentication errors all surface to callers as the same generic
"not authorized" response; the subclasses exist so logs can tell them
apart. Authorization errors surface as "forbidden".
"""


class TeamGuardError(Exception):
    """Base exception for all TeamGuard errors."""
    pass


# Authentication


class AuthenticationError(TeamGuardError):
    """The request could not be authenticated."""
    pass


class NoTokenError(AuthenticationError):
    """Neither a cookie nor an Authorization header carried a token."""
    pass


class InvalidTokenError(AuthenticationError):
    """Token is malformed, expired, or has a bad signature."""
    pass


class TokenRevokedError(InvalidTokenError):
    """Token was revoked individually or by a per-user cutoff."""
    pass


class PrincipalNotFoundError(AuthenticationError):
    """Token was valid but no live account exists for its subject."""
    pass


class InvalidCredentialsError(AuthenticationError):
    """Login with an unknown email, a wrong password, or a disabled account."""
    pass


# Authorization


class AuthorizationError(TeamGuardError):
    """Authenticated principal may not perform the action."""

    def __init__(self, message: str, capabilities: list[str] | None = None):
        super().__init__(message)
        self.capabilities = capabilities or []


class PermissionDeniedError(AuthorizationError):
    """No qualifying grant exists."""
    pass


class PermissionExpiredError(AuthorizationError):
    """A matching grant exists but has expired."""
    pass


class EvaluationError(TeamGuardError):
    """Infrastructure failure while evaluating permissions. Fail closed."""
    pass


# Integration credentials


class CredentialError(TeamGuardError):
    """Integration credential error."""
    pass


class CredentialNotFoundError(CredentialError):
    """No credential stored for the tenant/provider pair."""
    pass


class CredentialDeactivatedError(CredentialError):
    """Credential is deactivated and needs re-authentication."""
    pass


class RefreshFailureError(CredentialError):
    """A token refresh attempt failed.

    The message is always sanitized.
    """

    def __init__(self, message: str, deactivated: bool = False):
        super().__init__(message)
        self.deactivated = deactivated


class SyncRecordNotFoundError(TeamGuardError):
    """Sync journal record does not exist."""
    pass


class SyncRecordClosedError(TeamGuardError):
    """Sync journal record was already completed or failed."""
    pass
