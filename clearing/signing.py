"""
Clearing - Token Signing.

HMAC-SHA256 over the canonical JSON of every token field except
the signature. The server holds the key; wallets never see it.
"""

import hashlib
import hmac
import json
from dataclasses import replace

from .types import ClearingToken


def canonical_payload(token: ClearingToken) -> bytes:
    return json.dumps(
        token.signing_payload(), sort_keys=True, separators=(",", ":")
    ).encode("utf-8")


class TokenSigner:
    """Signs and verifies clearing tokens."""

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._key = secret_key.encode("utf-8")

    def signature_for(self, token: ClearingToken) -> str:
        return hmac.new(self._key, canonical_payload(token), hashlib.sha256).hexdigest()

    def sign(self, token: ClearingToken) -> ClearingToken:
        """Return a copy of the token carrying its signature."""
        return replace(token, signature=self.signature_for(token))

    def verify(self, token: ClearingToken) -> bool:
        if not token.signature:
            return False
        return hmac.compare_digest(token.signature, self.signature_for(token))


__all__ = [
    "canonical_payload",
    "TokenSigner",
]
