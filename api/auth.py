"""
Caller authentication.

Two independent checks:
- Upload intents carry an identity bearer token (JWT). Verification is only
  enforced when VIDQUEUE_AUTH_JWT_SECRET is configured; the token subject is
  recorded as the video's uploadedBy.
- Push deliveries to the worker carry the queue's shared bearer credential,
  compared against VIDQUEUE_JOB_VERIFICATION_TOKEN when one is configured.
"""

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from api.errors import Unauthorized
from config import AUTH_JWT_ALGORITHM, AUTH_JWT_AUDIENCE

# Security event logger - separate from regular application logging
security_logger = logging.getLogger("security.auth")

bearer_scheme = HTTPBearer(auto_error=False)


def _request_context(request: Optional[Request]) -> dict:
    """Security-relevant request details for log records."""
    if request is None:
        return {"ip_address": "unknown", "user_agent": "unknown", "path": None}
    return {
        "ip_address": request.client.host if request.client else "unknown",
        "user_agent": request.headers.get("user-agent", "unknown"),
        "path": request.url.path,
    }


class JWTIdentityProvider:
    """Verifies HS256 (or configured algorithm) bearer tokens into a caller identity."""

    def __init__(self, secret: str, algorithm: str = AUTH_JWT_ALGORITHM, audience: Optional[str] = AUTH_JWT_AUDIENCE):
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self._secret = secret
        self.algorithm = algorithm
        self.audience = audience

    def create_token(self, subject: str, expires_delta: timedelta = timedelta(hours=1)) -> str:
        """Issue a token for subject (operator tooling and tests)."""
        now = datetime.now(timezone.utc)
        claims = {"sub": subject, "iat": now, "exp": now + expires_delta}
        if self.audience:
            claims["aud"] = self.audience
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)

    def verify(self, token: str) -> str:
        """
        Verify a token and return its subject.

        Raises:
            Unauthorized: If the token is malformed, expired, signed with another
                key, issued for another audience, or has no subject
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"verify_aud": self.audience is not None},
            )
        except JWTError as e:
            raise Unauthorized(f"Invalid identity token: {e}")
        subject = claims.get("sub")
        if not subject or not isinstance(subject, str):
            raise Unauthorized("Identity token has no subject")
        return subject


async def optional_identity(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> Optional[str]:
    """
    FastAPI dependency resolving the caller identity.

    Returns None when no identity provider is configured. Otherwise a valid
    bearer token is required.

    Raises:
        Unauthorized: If identity is enforced and the token is missing or invalid
    """
    provider: Optional[JWTIdentityProvider] = getattr(request.app.state, "identity", None)
    if provider is None:
        return None

    ctx = _request_context(request)
    if credentials is None or not credentials.credentials:
        security_logger.warning(
            "Authentication failed: missing bearer token",
            extra={"event": "auth_failure", "reason": "missing_token", **ctx},
        )
        raise Unauthorized("Missing bearer token")

    try:
        subject = provider.verify(credentials.credentials)
    except Unauthorized as e:
        security_logger.warning(
            "Authentication failed: invalid bearer token",
            extra={"event": "auth_failure", "reason": "invalid_token", "detail": e.message, **ctx},
        )
        raise
    return subject


def verify_job_token(request: Request, expected_token: str) -> None:
    """
    Check the push credential presented by the job queue.

    Does nothing when no token is configured.

    Raises:
        Unauthorized: If the Authorization header does not carry the expected bearer token
    """
    if not expected_token:
        return

    header = request.headers.get("authorization", "")
    scheme, _, presented = header.partition(" ")
    # Use timing-safe comparison to prevent timing attacks
    if scheme.lower() != "bearer" or not hmac.compare_digest(presented.strip().encode(), expected_token.encode()):
        security_logger.warning(
            "Authentication failed: job push credential mismatch",
            extra={"event": "auth_failure", "reason": "job_token_mismatch", **_request_context(request)},
        )
        raise Unauthorized("Invalid push credential")
