"""Identity and session error taxonomy.

Everything deriving from ``AuthError`` is terminal for the request and is
presented to callers as a generic 401. Subclasses stay distinct so logs can
say why a credential was rejected.
"""

from __future__ import annotations


class AuthError(PermissionError):
    reason = "unauthorized"


class InvalidAssertion(AuthError):
    reason = "invalid_assertion"


class AudienceMismatch(InvalidAssertion):
    reason = "audience_mismatch"


class AssertionExpired(InvalidAssertion):
    reason = "assertion_expired"


class NonceMismatch(AuthError):
    reason = "nonce_mismatch"


class CredentialError(AuthError):
    reason = "credential_error"


class CredentialNotFound(CredentialError):
    reason = "credential_not_found"


class CredentialRevoked(CredentialError):
    reason = "credential_revoked"


class CredentialExpired(CredentialError):
    reason = "credential_expired"


class AccessTokenError(AuthError):
    reason = "access_token_error"


class TokenInvalid(AccessTokenError):
    reason = "token_invalid"


class TokenExpired(AccessTokenError):
    reason = "token_expired"


class AccountConflict(Exception):
    """A uniqueness constraint on the account table rejected an insert."""


class CredentialConflict(Exception):
    """A uniqueness constraint on the refresh credential table rejected an insert."""


class EmailAlreadyRegistered(ValueError):
    pass


class RetryableIdentityFault(RuntimeError):
    retry_after_s = 5


class OAuthProviderUnavailable(RetryableIdentityFault):
    pass


class ProvisioningContention(RetryableIdentityFault):
    retry_after_s = 1


class CredentialIssueContention(RetryableIdentityFault):
    retry_after_s = 1


class ConfigurationFault(RuntimeError):
    pass
