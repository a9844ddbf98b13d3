from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Mapping

from yishan_auth.logging import get_logger
from yishan_auth.service.errors import TokenError, TokenFailure

logger = get_logger(__name__)

TOKEN_TYPES = ("access", "refresh")


class TokenIssuer:
    """Mint and verify HS256-signed bearer tokens.

    Verification is purely cryptographic and never consults the token store,
    so a forged token (``invalid_signature``) stays distinguishable from one an
    administrator revoked. Every issued token carries a fresh ``jti`` and a
    ``type`` claim of ``access`` or ``refresh``.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode("utf-8")
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(self, claims: Mapping[str, Any], ttl_seconds: int) -> str:
        """Return a signed token embedding ``claims`` that expires in ``ttl_seconds``.

        Raises:
            ValueError: if ``claims['type']`` is not ``access`` or ``refresh`` or
                the TTL is not positive.
        """
        token_type = claims.get("type")
        if token_type not in TOKEN_TYPES:
            raise ValueError(f"token type must be one of {TOKEN_TYPES}, got {token_type!r}")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        issued_at = int(self._clock())
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, *, verify_expiry: bool = True) -> dict[str, Any]:
        """Return the claims of ``token``.

        Raises:
            TokenError: ``invalid_signature`` for malformed, tampered or foreign
                tokens; ``expired`` once ``exp`` (plus leeway) has passed.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenError(TokenFailure.INVALID_SIGNATURE)

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenError(TokenFailure.INVALID_SIGNATURE)
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenError(TokenFailure.INVALID_SIGNATURE)

        # Byte compare; str compare_digest rejects non-ASCII input with TypeError
        try:
            expected_sig = self._sign(f"{header_b64}.{payload_b64}")
            presented_sig = sig_b64.encode("utf-8", "surrogatepass")
        except UnicodeError:
            raise TokenError(TokenFailure.INVALID_SIGNATURE)
        if not hmac.compare_digest(expected_sig.encode("ascii"), presented_sig):
            raise TokenError(TokenFailure.INVALID_SIGNATURE)
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenError(TokenFailure.INVALID_SIGNATURE)
        if not isinstance(payload, dict):
            raise TokenError(TokenFailure.INVALID_SIGNATURE)

        if payload.get("iss") != self.issuer:
            raise TokenError(TokenFailure.INVALID_SIGNATURE, "token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenError(TokenFailure.INVALID_SIGNATURE, "token audience mismatch")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenError(TokenFailure.INVALID_SIGNATURE, "token has no expiry")
        if verify_expiry and exp_ts <= self._clock() - self.leeway_seconds:
            raise TokenError(TokenFailure.EXPIRED)
        return payload
