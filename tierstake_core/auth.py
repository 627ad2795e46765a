"""
Caller identity for the TierStake HTTP layer.

The ledger must never trust a caller-supplied identity.  Every POST body
is a signed envelope:

    {"public_key": "<hex>", "nonce": 7, "signature": "<hex DER>", ...fields}

The identity is the address derived from ``public_key``; the signature
covers the action name, the nonce and the remaining fields, serialised as
canonical JSON with the fields nested under their own key so a body can
never rebind the action.  Bodies may not use the reserved names
``action`` or ``fields`` either.  Nonces must strictly increase per identity, which stops
a captured request from being replayed.

Keys are secp256k1 (``ecdsa``), signatures deterministic (RFC 6979) over
SHA-256.
"""

from __future__ import annotations

import hashlib
import json
import threading
from typing import Any

from ecdsa import BadSignatureError, SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import sigdecode_der, sigencode_der

ADDRESS_PREFIX = "t"
ENVELOPE_FIELDS = ("public_key", "nonce", "signature")
RESERVED_FIELDS = ("action", "fields")


class AuthError(ValueError):
    """Malformed, forged or replayed request envelope."""


def derive_address(public_key: bytes) -> str:
    """``t`` + first 40 hex chars of SHA-256(public_key)."""
    return ADDRESS_PREFIX + hashlib.sha256(public_key).hexdigest()[:40]


def canonical_message(action: str, nonce: int, fields: dict[str, Any]) -> bytes:
    payload = {"action": action, "nonce": nonce, "fields": fields}
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


class KeyPair:
    """secp256k1 key-pair that signs request envelopes."""

    def __init__(self, private_key: bytes):
        self._sk = SigningKey.from_string(private_key, curve=SECP256k1)
        self.private_key = private_key
        self.public_key = b"\x04" + self._sk.get_verifying_key().to_string()
        self.address = derive_address(self.public_key)
        self._nonce = 0

    @classmethod
    def create(cls) -> KeyPair:
        return cls(SigningKey.generate(curve=SECP256k1).to_string())

    @classmethod
    def from_seed(cls, seed: str) -> KeyPair:
        """Deterministic key-pair for tests and local tooling (not for real funds)."""
        return cls(hashlib.sha256(b"TierStake/seed/" + seed.encode("utf-8")).digest())

    def sign_request(self, action: str, nonce: int | None = None, **fields: Any) -> dict:
        """Build a signed envelope; auto-increments the local nonce if none given."""
        clash = set(fields) & set(ENVELOPE_FIELDS + RESERVED_FIELDS)
        if clash:
            raise ValueError(f"Reserved field name(s): {', '.join(sorted(clash))}")
        if nonce is None:
            self._nonce += 1
            nonce = self._nonce
        else:
            self._nonce = max(self._nonce, nonce)
        sig = self._sk.sign_deterministic(
            canonical_message(action, nonce, fields),
            hashfunc=hashlib.sha256,
            sigencode=sigencode_der,
        )
        return {
            **fields,
            "public_key": self.public_key.hex(),
            "nonce": nonce,
            "signature": sig.hex(),
        }

    def __repr__(self) -> str:
        return f"KeyPair(address={self.address!r})"


def verify_request(action: str, body: dict[str, Any]) -> tuple[str, int, dict[str, Any]]:
    """
    Check an envelope's signature.

    Returns ``(address, nonce, fields)`` where *fields* is the body minus
    the envelope keys.  Raises ``AuthError`` on any problem.
    """
    if not isinstance(body, dict):
        raise AuthError("Request body must be a JSON object")
    try:
        public_key = bytes.fromhex(body["public_key"])
        signature = bytes.fromhex(body["signature"])
        nonce = body["nonce"]
    except KeyError as exc:
        raise AuthError(f"Missing envelope field: {exc.args[0]}") from exc
    except (TypeError, ValueError) as exc:
        raise AuthError("public_key and signature must be hex strings") from exc
    if isinstance(nonce, bool) or not isinstance(nonce, int) or nonce <= 0:
        raise AuthError("nonce must be a positive integer")

    fields = {k: v for k, v in body.items() if k not in ENVELOPE_FIELDS}
    reserved = sorted(k for k in fields if k in RESERVED_FIELDS)
    if reserved:
        raise AuthError(f"Reserved field(s) in request body: {', '.join(reserved)}")
    try:
        vk = VerifyingKey.from_string(public_key, curve=SECP256k1)
        vk.verify(
            signature,
            canonical_message(action, nonce, fields),
            hashfunc=hashlib.sha256,
            sigdecode=sigdecode_der,
        )
    except BadSignatureError as exc:
        raise AuthError("Signature does not match request") from exc
    except Exception as exc:
        # ecdsa raises assorted errors for malformed keys / DER blobs
        raise AuthError(f"Invalid key or signature encoding: {exc}") from exc
    return derive_address(public_key), nonce, fields


class NonceTracker:
    """Highest accepted nonce per identity."""

    def __init__(self):
        self._last: dict[str, int] = {}
        self._lock = threading.Lock()

    def consume(self, address: str, nonce: int) -> None:
        with self._lock:
            last = self._last.get(address, 0)
            if nonce <= last:
                raise AuthError(f"Stale nonce {nonce} (last accepted {last})")
            self._last[address] = nonce

    def last(self, address: str) -> int:
        return self._last.get(address, 0)
