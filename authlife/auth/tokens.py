"""Access token signing/verification and opaque refresh token minting."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

import jwt

from authlife.auth.errors import AuthErrorKind, AuthFailure
from authlife.auth.models import AccessClaims
from authlife.core.config import AuthPolicy, KeyConfig
from authlife.core.security import fingerprint_token, generate_refresh_token

LOGGER = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REQUIRED_CLAIMS = ["iss", "sub", "sid", "role", "typ", "iat", "exp"]


def _timestamp(value: datetime) -> int:
    return int(value.timestamp())


def _from_timestamp(value: int | float) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class SigningKeyring:
    """Signing keys addressed by key id; only the active key signs."""

    def __init__(self, config: KeyConfig) -> None:
        """Load key material from configuration."""
        self._keys = dict(config.keys)
        self._active_kid = config.active_kid

    @property
    def active_kid(self) -> str:
        """Return key id used for new tokens."""
        return self._active_kid

    def active_secret(self) -> str:
        """Return the secret used for new tokens."""
        return self._keys[self._active_kid]

    def secret_for(self, kid: str | None) -> str | None:
        """Return verification secret for a key id, if still accepted."""
        if not kid:
            return None
        return self._keys.get(kid)


class TokenIssuer:
    """Mint and verify tokens. Access verification never touches storage."""

    def __init__(self, keys: KeyConfig, policy: AuthPolicy) -> None:
        """Initialize issuer with key material and lifetimes."""
        self._keyring = SigningKeyring(keys)
        self._issuer = keys.issuer
        self._algorithm = keys.algorithm
        self._access_ttl = policy.access_ttl
        self._refresh_ttl = policy.refresh_ttl
        self._clock_skew = policy.clock_skew

    def issue_access(
        self, principal_id: str, role: str, session_id: str, now: datetime
    ) -> tuple[str, datetime]:
        """Sign an access token and return it with its expiry."""
        issued_at = _timestamp(now)
        expires_at = issued_at + int(self._access_ttl.total_seconds())
        payload = {
            "iss": self._issuer,
            "sub": principal_id,
            "sid": session_id,
            "role": role,
            "typ": ACCESS_TOKEN_TYPE,
            "iat": issued_at,
            "exp": expires_at,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(
            payload,
            self._keyring.active_secret(),
            algorithm=self._algorithm,
            headers={"kid": self._keyring.active_kid},
        )
        return token, _from_timestamp(expires_at)

    def issue_refresh(self, now: datetime) -> tuple[str, str, datetime]:
        """Return raw refresh token, its fingerprint and expiry."""
        raw_token = generate_refresh_token()
        return raw_token, fingerprint_token(raw_token), now + self._refresh_ttl

    def verify_access(self, token: str, now: datetime) -> AccessClaims | AuthFailure:
        """Check signature, issuer, type and expiry of an access token."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError:
            return self._invalid("malformed_token")

        secret = self._keyring.secret_for(header.get("kid"))
        if secret is None:
            return self._invalid("unknown_signing_key")

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={
                    "require": REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.InvalidIssuerError:
            return self._invalid("wrong_issuer")
        except jwt.InvalidTokenError:
            return self._invalid("bad_signature_or_claims")

        if payload.get("typ") != ACCESS_TOKEN_TYPE:
            return self._invalid("wrong_token_type")

        try:
            issued_at = _from_timestamp(payload["iat"])
            expires_at = _from_timestamp(payload["exp"])
        except (TypeError, ValueError, OverflowError):
            return self._invalid("bad_timestamps")

        if now > expires_at + self._clock_skew:
            return self._invalid("token_expired")
        if issued_at > now + self._clock_skew:
            return self._invalid("issued_in_future")

        return AccessClaims(
            principal_id=str(payload["sub"]),
            role=str(payload["role"]),
            session_id=str(payload["sid"]),
            issued_at=issued_at,
            expires_at=expires_at,
        )

    @staticmethod
    def _invalid(reason: str) -> AuthFailure:
        LOGGER.info("access_token_rejected", extra={"reason": reason})
        return AuthFailure(AuthErrorKind.INVALID_OR_EXPIRED_TOKEN, reason=reason)
