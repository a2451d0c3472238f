from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from sessionkeeper.logging import get_logger
from sessionkeeper.storage.models import TokenKind, utcnow

logger = get_logger(__name__)

ALGORITHM = "HS256"


class CodecFailure(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    CLAIM_MISMATCH = "claim_mismatch"


class CodecError(Exception):
    """Verification failure carrying the reason it failed closed."""

    def __init__(self, reason: CodecFailure, message: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    kind: TokenKind
    token_id: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str


class CredentialCodec:
    """Stateless signer/verifier for compact HS256 tokens.

    The algorithm is fixed: a token whose header names anything other than
    HS256 is rejected before the signature is even computed.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self._now = now_fn

    def issue(self, claims: dict[str, Any], ttl: timedelta) -> tuple[str, TokenClaims]:
        """Sign ``claims`` (``sub`` and ``type`` required) for ``ttl``.

        ``jti``, ``iat``, ``exp``, ``iss`` and ``aud`` are filled in here.
        Returns the signed string and the claims as written.
        """

        subject = claims.get("sub")
        if not subject:
            raise ValueError("claims must carry a subject")
        kind = TokenKind(claims.get("type"))
        now = self._now()
        # exp is whole seconds; truncate iat the same way so both round-trip
        issued_at = now.replace(microsecond=0)
        expires_at = issued_at + ttl
        payload = {
            **claims,
            "sub": subject,
            "type": kind.value,
            "jti": claims.get("jti") or str(uuid.uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        token = self._encode(payload)
        return token, self._claims_from_payload(payload)

    def verify(self, token: str, expected_kind: Optional[TokenKind] = None) -> TokenClaims:
        """Check signature, expiry, issuer, audience and (optionally) kind together."""

        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise CodecError(CodecFailure.INVALID_SIGNATURE, "malformed token") from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise CodecError(CodecFailure.INVALID_SIGNATURE, "unreadable header") from None
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise CodecError(CodecFailure.INVALID_SIGNATURE, "unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        # compare bytes; str comparison rejects non-ASCII input with TypeError
        presented_sig = sig_b64.encode("utf-8", "surrogatepass")
        if not hmac.compare_digest(expected_sig.encode("ascii"), presented_sig):
            raise CodecError(CodecFailure.INVALID_SIGNATURE, "signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise CodecError(CodecFailure.INVALID_SIGNATURE, "unreadable payload") from None
        if not isinstance(payload, dict):
            raise CodecError(CodecFailure.CLAIM_MISMATCH, "payload is not an object")

        if payload.get("iss") != self.issuer:
            raise CodecError(CodecFailure.CLAIM_MISMATCH, "issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise CodecError(CodecFailure.CLAIM_MISMATCH, "audience mismatch")

        try:
            claims = self._claims_from_payload(payload)
        except (KeyError, TypeError, ValueError):
            raise CodecError(CodecFailure.CLAIM_MISMATCH, "missing or malformed claims") from None
        if claims.expires_at <= self._now():
            raise CodecError(CodecFailure.EXPIRED, "token expired")
        if expected_kind is not None and claims.kind != expected_kind:
            raise CodecError(CodecFailure.CLAIM_MISMATCH, "unexpected token type")
        return claims

    # helpers
    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _sign(self, signing_input: str) -> str:
        message = signing_input.encode("utf-8", "surrogatepass")
        digest = hmac.new(self._secret, message, hashlib.sha256).digest()
        return self._encode_segment(digest)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any]) -> TokenClaims:
        subject = payload["sub"]
        token_id = payload["jti"]
        if not isinstance(subject, str) or not subject or not isinstance(token_id, str):
            raise ValueError("subject and jti must be strings")
        aud = payload["aud"]
        return TokenClaims(
            subject=subject,
            kind=TokenKind(payload["type"]),
            token_id=token_id,
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
            issuer=payload["iss"],
            audience=aud if isinstance(aud, str) else ",".join(aud),
        )
