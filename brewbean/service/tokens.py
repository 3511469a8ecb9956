from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from brewbean.config import Settings
from brewbean.logging import get_logger
from brewbean.service.errors import AuthenticationError

logger = get_logger(__name__)

INVALID_FORMAT = "Invalid token format."
TOKEN_EXPIRED = "Token expired. Please log in again."


@dataclass
class IssuedToken:
    token: str
    token_id: str
    expires_in: int
    expires_at: datetime


class TokenService:
    """HS256 bearer tokens carrying the user id and session token id."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def _secret(self) -> bytes:
        return self.settings.jwt_secret.encode()

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret(), signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def lifetime(self, remember_me: bool) -> timedelta:
        days = (
            self.settings.remember_me_ttl_days
            if remember_me
            else self.settings.token_ttl_days
        )
        return timedelta(days=days)

    def issue(
        self, user_id: str, token_id: str, *, remember_me: bool, now: datetime
    ) -> IssuedToken:
        lifetime = self.lifetime(remember_me)
        expires_at = now + lifetime
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "jti": token_id,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedToken(
            token=self.encode(payload),
            token_id=token_id,
            expires_in=int(lifetime.total_seconds()),
            expires_at=expires_at,
        )

    def decode(self, token: str, now: datetime) -> dict[str, Any]:
        """Verify signature and claims; raise AuthenticationError naming the failure."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise AuthenticationError(INVALID_FORMAT)

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise AuthenticationError(INVALID_FORMAT)
        # Reject anything but HS256 to block algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise AuthenticationError(INVALID_FORMAT)

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise AuthenticationError(INVALID_FORMAT)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise AuthenticationError(INVALID_FORMAT)
        if not isinstance(payload, dict):
            raise AuthenticationError(INVALID_FORMAT)
        if payload.get("iss") != self.settings.jwt_issuer:
            raise AuthenticationError(INVALID_FORMAT)
        if payload.get("aud") != self.settings.jwt_audience:
            raise AuthenticationError(INVALID_FORMAT)
        if not payload.get("sub") or not payload.get("jti"):
            raise AuthenticationError(INVALID_FORMAT)
        try:
            exp_ts = float(payload["exp"])
            float(payload["iat"])
        except (KeyError, TypeError, ValueError):
            raise AuthenticationError(INVALID_FORMAT)
        if exp_ts <= now.timestamp():
            raise AuthenticationError(TOKEN_EXPIRED)
        return payload
