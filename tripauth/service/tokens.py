from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from tripauth.config import Settings
from tripauth.logging import get_logger
from tripauth.service.errors import (
    BadSignature,
    MalformedToken,
    TokenExpired,
    TokenNotYetValid,
    WrongTokenType,
)

logger = get_logger(__name__)

_ALGORITHM = "HS256"
_REQUIRED_TIME_CLAIMS = ("iat", "nbf", "exp")


class TokenType(str, Enum):
    """Discriminator embedded in every token under the ``typ`` claim."""

    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenSettings:
    secret: bytes
    issuer: str
    access_ttl: timedelta
    refresh_ttl: timedelta
    leeway: timedelta = timedelta(0)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSettings":
        return cls(
            secret=settings.jwt_secret.encode(),
            issuer=settings.jwt_issuer,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            leeway=timedelta(seconds=settings.clock_skew_seconds),
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    token_type: TokenType
    issued_at: datetime
    not_before: datetime
    expires_at: datetime
    issuer: str
    token_id: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Issues and verifies HS256-signed, typed, expiring bearer tokens.

    The key material and lifetimes are fixed at construction. Every other
    component treats the resulting strings as opaque.
    """

    def __init__(
        self,
        config: TokenSettings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not config.secret:
            raise ValueError("token signing secret must not be empty")
        if config.access_ttl <= timedelta(0) or config.refresh_ttl <= timedelta(0):
            raise ValueError("token lifetimes must be positive")
        self.config = config
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self.config.secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _mint(
        self, subject: str, token_type: TokenType, now: datetime, ttl: timedelta
    ) -> tuple[str, datetime]:
        issued = int(now.timestamp())
        expires = issued + int(ttl.total_seconds())
        payload = {
            "sub": subject,
            "uid": subject,
            "typ": token_type.value,
            "iat": issued,
            "nbf": issued,
            "exp": expires,
            "iss": self.config.issuer,
            "jti": uuid.uuid4().hex,
        }
        return self._encode_jwt(payload), datetime.fromtimestamp(expires, tz=timezone.utc)

    def issue(self, account_id: str) -> TokenPair:
        if not account_id:
            raise ValueError("account_id is required to issue tokens")
        now = self._now()
        access_token, access_exp = self._mint(
            account_id, TokenType.ACCESS, now, self.config.access_ttl
        )
        refresh_token, refresh_exp = self._mint(
            account_id, TokenType.REFRESH, now, self.config.refresh_ttl
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def _split(self, token: str) -> tuple[str, str, str, dict[str, Any]]:
        if not isinstance(token, str):
            raise MalformedToken("token must be a string")
        if not token.isascii():
            raise MalformedToken("token contains non-ASCII characters")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedToken("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise MalformedToken("token header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise MalformedToken("token header is not an object")
        return header_b64, payload_b64, sig_b64, header

    def _decode_payload(self, payload_b64: str) -> dict[str, Any]:
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise MalformedToken("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedToken("token payload is not an object")
        if not isinstance(payload.get("sub"), str) or not payload["sub"]:
            raise MalformedToken("token subject missing")
        for claim in _REQUIRED_TIME_CLAIMS:
            value = payload.get(claim)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise MalformedToken(f"token claim {claim} missing or not numeric")
        return payload

    def verify(self, token: str, expected: TokenType) -> TokenClaims:
        """Verify ``token`` and return its claims.

        Checks run in a fixed order: structure, algorithm and signature,
        issuer, discriminator, expiry, then not-before.
        """
        header_b64, payload_b64, sig_b64, header = self._split(token)

        # Pin the algorithm to prevent alg-confusion attacks
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise BadSignature("unsupported token algorithm")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise BadSignature("token signature mismatch")

        payload = self._decode_payload(payload_b64)
        if payload.get("iss") != self.config.issuer:
            raise BadSignature("token issuer mismatch")

        try:
            token_type = TokenType(payload.get("typ"))
        except ValueError:
            token_type = None
        if token_type is not expected:
            raise WrongTokenType(
                f"expected {expected.value} token",
                detail={"expected": expected.value, "actual": payload.get("typ")},
            )

        now_ts = self._now().timestamp()
        leeway = self.config.leeway.total_seconds()
        if float(payload["exp"]) <= now_ts - leeway:
            raise TokenExpired("token has expired")
        if float(payload["nbf"]) > now_ts + leeway:
            raise TokenNotYetValid("token is not valid yet")

        return TokenClaims(
            subject=payload["sub"],
            token_type=token_type,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            not_before=datetime.fromtimestamp(payload["nbf"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            issuer=payload["iss"],
            token_id=payload.get("jti"),
        )

    def verify_subject(self, token: str, expected: TokenType) -> str:
        return self.verify(token, expected).subject
