from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Sequence, Tuple

from municipio_auth.config import MIN_JWT_SECRET_LENGTH, Settings
from municipio_auth.logging import get_logger
from municipio_auth.storage.models import Audience

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 32


@dataclass
class AccessClaims:
    subject: str
    audience: Audience
    roles: List[str]
    issued_at: datetime
    expires_at: datetime
    jti: str
    raw: dict = field(default_factory=dict, repr=False)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def hash_token(raw: str) -> str:
    """SHA-256 of the raw refresh token, base64url without padding."""
    return _encode_segment(hashlib.sha256(raw.encode("utf-8")).digest())


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "municipio",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=30),
        clock_skew_leeway: timedelta = timedelta(seconds=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not secret or len(secret) < MIN_JWT_SECRET_LENGTH:
            raise RuntimeError(
                f"JWT secret must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock_skew_leeway = clock_skew_leeway
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> "TokenIssuer":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            clock_skew_leeway=timedelta(seconds=settings.clock_skew_leeway_seconds),
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue_access_token(
        self, subject: str, audience: Audience, roles: Sequence[str]
    ) -> Tuple[str, datetime]:
        now = self.now()
        expires_at = now + self.access_ttl
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "aud": audience.value,
            "roles": list(roles),
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def decode_access_token(
        self, token: str, *, audience: Optional[Audience] = None
    ) -> Optional[AccessClaims]:
        """Validate an access token and return its claims, or ``None``."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("token_type") != "access":
            return None
        token_audience = Audience.parse(payload.get("aud"))
        if token_audience is None or (audience is not None and token_audience != audience):
            return None
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self.now().timestamp() - self.clock_skew_leeway.total_seconds():
            return None
        subject = payload.get("sub")
        roles = payload.get("roles")
        if not isinstance(subject, str) or not isinstance(roles, list):
            return None
        return AccessClaims(
            subject=subject,
            audience=token_audience,
            roles=[str(r) for r in roles],
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=str(payload.get("jti", "")),
            raw=payload,
        )

    def issue_refresh_token(self) -> Tuple[str, str]:
        """Return ``(raw, hash)``; only the hash is ever stored."""
        raw = _encode_segment(secrets.token_bytes(REFRESH_TOKEN_BYTES))
        return raw, hash_token(raw)

    def hash_token(self, raw: str) -> str:
        return hash_token(raw)

    def refresh_expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or self.now()) + self.refresh_ttl
