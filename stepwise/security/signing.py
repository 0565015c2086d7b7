"""Signed bearer tokens for outbound callbacks."""

from __future__ import annotations

import hashlib
import time
from typing import Any, Mapping, Optional

import jwt

from ..config import DispatchConfig
from ..constants import DEFAULT_SIGNING_TTL_SECONDS


class CallbackSigner:
    """Issues HS256 tokens binding a callback body to its attempt.

    Receivers verify the token with the shared secret and compare the
    ``body_sha256`` claim against the raw request body.
    """

    algorithm = "HS256"

    def __init__(
        self,
        secret: str,
        issuer: str = "stepwise",
        ttl_seconds: int = DEFAULT_SIGNING_TTL_SECONDS,
        leeway: int = 30,
    ) -> None:
        if not secret:
            raise ValueError("A signing secret is required")
        self._secret = secret
        self.issuer = issuer
        self.ttl_seconds = ttl_seconds
        self.leeway = leeway

    @classmethod
    def from_config(cls, config: DispatchConfig) -> Optional["CallbackSigner"]:
        if not config.signing_secret:
            return None
        return cls(
            config.signing_secret,
            issuer=config.signing_issuer,
            ttl_seconds=config.signing_ttl_seconds,
        )

    @staticmethod
    def body_digest(body: bytes) -> str:
        return hashlib.sha256(body).hexdigest()

    def sign(self, attempt_id: str, body: bytes, now: Optional[float] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        claims = {
            "iss": self.issuer,
            "sub": attempt_id,
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
            "body_sha256": self.body_digest(body),
        }
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)

    def verify(self, token: str, body: bytes) -> Mapping[str, Any]:
        """Validate ``token`` for ``body`` and return its claims."""
        claims = jwt.decode(
            token,
            self._secret,
            algorithms=[self.algorithm],
            issuer=self.issuer,
            leeway=self.leeway,
            options={"require": ["exp", "iat", "sub", "body_sha256"]},
        )
        if claims["body_sha256"] != self.body_digest(body):
            raise jwt.InvalidSignatureError("Callback body does not match token")
        return claims
