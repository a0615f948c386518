#!/usr/bin/env python3
"""custody.signing

Domain-bound withdrawal authorizations signed with Ed25519.

Profile / invariants:
- The signed message is a fixed-schema struct
  ``Withdraw(address requester,uint256 amount,uint256 deadline,uint256 nonce)``
  encoded as its type-tag hash followed by one 32-byte word per field, in
  that order.
- The struct hash is bound to a signing context (instance name, version,
  environment/chain id, instance address) through a domain separator built
  the same way from
  ``EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)``.
- Digest = sha256(0x19 0x01 || domain_separator || struct_hash).
- A signature is 96 bytes: the signer's raw 32-byte Ed25519 public key
  followed by the 64-byte Ed25519 signature over the digest. Recovering the
  signer means checking the signature against the embedded key and deriving
  the account address from that key.
- Account address = ``0x`` + hex of the last 20 bytes of sha256(public key).

The off-chain authorizer uses `WithdrawalSigner`; the vault uses
`recover_signer`. Neither checks capabilities.
"""

from __future__ import annotations

import base64
import json
import pathlib
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

import jsonschema
from cryptography.exceptions import InvalidSignature as _CryptoInvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from custody.canonical import address_word, sha256_bytes, string_word, type_hash, uint_word
from custody.hardening import (
    CryptoUtils,
    InvalidSignature,
    Validators,
    require_account,
)
from custody.observability import VaultLayer, get_logger

logger = get_logger("signing", VaultLayer.SIGNING)

DOMAIN_TYPE = "EIP712Domain(string name,string version,uint256 chainId,address verifyingContract)"
WITHDRAW_TYPE = "Withdraw(address requester,uint256 amount,uint256 deadline,uint256 nonce)"

DOMAIN_TYPEHASH = type_hash(DOMAIN_TYPE)
WITHDRAW_TYPEHASH = type_hash(WITHDRAW_TYPE)

DIGEST_PREFIX = b"\x19\x01"

PUBLIC_KEY_LENGTH = 32
ED25519_SIGNATURE_LENGTH = 64
SIGNATURE_LENGTH = PUBLIC_KEY_LENGTH + ED25519_SIGNATURE_LENGTH

SignatureLike = Union[bytes, bytearray, str]


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def account_from_public_key(public_key: Union[bytes, Ed25519PublicKey]) -> str:
    """Derive the address-style account for an Ed25519 public key."""
    if isinstance(public_key, Ed25519PublicKey):
        public_key = public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
    if len(public_key) != PUBLIC_KEY_LENGTH:
        raise ValueError(f"Ed25519 public key must be {PUBLIC_KEY_LENGTH} bytes, got {len(public_key)}")
    return "0x" + sha256_bytes(public_key)[-20:].hex()


# ---------------------------------------------------------------------------
# Structured message
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SigningContext:
    """Execution-context binding mixed into every withdrawal digest."""
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def __post_init__(self):
        object.__setattr__(
            self, "verifying_contract", require_account(self.verifying_contract, "verifying_contract")
        )
        Validators.validate_uint(self.chain_id, "chain_id").raise_if_invalid()

    def domain_separator(self) -> bytes:
        return sha256_bytes(
            DOMAIN_TYPEHASH
            + string_word(self.name)
            + string_word(self.version)
            + uint_word(self.chain_id)
            + address_word(self.verifying_contract)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SigningContext":
        jsonschema.validate(instance=data, schema=SIGNING_CONTEXT_SCHEMA)
        return cls(
            name=data["name"],
            version=data["version"],
            chain_id=int(data["chainId"]),
            verifying_contract=data["verifyingContract"],
        )


_UINT_SCHEMA = {
    "oneOf": [
        {"type": "integer", "minimum": 0},
        {"type": "string", "pattern": "^[0-9]{1,78}$"},
    ]
}

SIGNING_CONTEXT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["name", "version", "chainId", "verifyingContract"],
    "additionalProperties": False,
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "version": {"type": "string", "minLength": 1},
        "chainId": _UINT_SCHEMA,
        "verifyingContract": {"type": "string", "pattern": "^0x[0-9a-fA-F]{40}$"},
    },
}

AUTHORIZATION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["requester", "amount", "deadline", "nonce"],
    "additionalProperties": False,
    "properties": {
        "requester": {"type": "string", "pattern": "^0x[0-9a-fA-F]{40}$"},
        "amount": _UINT_SCHEMA,
        "deadline": _UINT_SCHEMA,
        "nonce": _UINT_SCHEMA,
    },
}


@dataclass(frozen=True)
class WithdrawalAuthorization:
    """The four signed fields of a withdrawal authorization."""
    requester: str
    amount: int
    deadline: int
    nonce: int

    def __post_init__(self):
        object.__setattr__(self, "requester", require_account(self.requester, "requester"))
        for name in ("amount", "deadline", "nonce"):
            result = Validators.validate_uint(getattr(self, name), name)
            result.raise_if_invalid()

    def struct_hash(self) -> bytes:
        return sha256_bytes(
            WITHDRAW_TYPEHASH
            + address_word(self.requester)
            + uint_word(self.amount)
            + uint_word(self.deadline)
            + uint_word(self.nonce)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requester": self.requester,
            "amount": self.amount,
            "deadline": self.deadline,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WithdrawalAuthorization":
        """Build from a JSON document; integers may be given as decimal strings."""
        jsonschema.validate(instance=data, schema=AUTHORIZATION_SCHEMA)
        return cls(
            requester=data["requester"],
            amount=int(data["amount"]),
            deadline=int(data["deadline"]),
            nonce=int(data["nonce"]),
        )


def withdrawal_digest(context: SigningContext, authorization: WithdrawalAuthorization) -> bytes:
    """Domain-bound 32-byte digest the authorizer signs."""
    return sha256_bytes(DIGEST_PREFIX + context.domain_separator() + authorization.struct_hash())


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def decode_signature(signature: SignatureLike) -> Tuple[bytes, bytes]:
    """Split a signature into (public_key, ed25519_signature). Raises InvalidSignature."""
    result = Validators.validate_bytes(
        signature, "signature", min_length=SIGNATURE_LENGTH, max_length=SIGNATURE_LENGTH
    )
    if not result.is_valid:
        raise InvalidSignature(f"malformed signature: {result.errors[0].message}")
    raw = result.sanitized_value
    return raw[:PUBLIC_KEY_LENGTH], raw[PUBLIC_KEY_LENGTH:]


def recover_signer(digest: bytes, signature: SignatureLike) -> str:
    """
    Return the account that produced ``signature`` over ``digest``.

    Raises InvalidSignature when the signature is structurally malformed
    or does not verify against the embedded public key.
    """
    public_bytes, sig = decode_signature(signature)
    try:
        public_key = Ed25519PublicKey.from_public_bytes(public_bytes)
    except ValueError as ex:
        raise InvalidSignature(f"malformed signer key: {ex}") from ex
    try:
        public_key.verify(sig, digest)
    except _CryptoInvalidSignature as ex:
        raise InvalidSignature("signature does not match digest") from ex
    return account_from_public_key(public_bytes)


# ---------------------------------------------------------------------------
# Off-chain signer
# ---------------------------------------------------------------------------


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


class WithdrawalSigner:
    """Holds an authorizer's Ed25519 key and produces withdrawal signatures."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self._public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.account = account_from_public_key(self._public_bytes)

    @classmethod
    def generate(cls) -> "WithdrawalSigner":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "WithdrawalSigner":
        """Deterministic signer from a 32-byte seed (fixtures, tests)."""
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @property
    def public_key(self) -> bytes:
        return self._public_bytes

    def sign_digest(self, digest: bytes) -> bytes:
        return self._public_bytes + self._private_key.sign(digest)

    def sign(self, context: SigningContext, authorization: WithdrawalAuthorization) -> bytes:
        signature = self.sign_digest(withdrawal_digest(context, authorization))
        logger.debug(
            "withdrawal authorization signed",
            signer=self.account,
            requester=authorization.requester,
            nonce=authorization.nonce,
        )
        return signature

    def to_jwk(self, kid: str = "key-1") -> Dict[str, Any]:
        priv_bytes = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return {
            "kty": "OKP",
            "crv": "Ed25519",
            "x": b64url_encode(self._public_bytes),
            "d": b64url_encode(priv_bytes),
            "kid": kid,
        }

    @classmethod
    def from_jwk(cls, jwk: Dict[str, Any]) -> "WithdrawalSigner":
        """Load from a private OKP/Ed25519 JWK; the ``x`` member must match ``d``."""
        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
            raise ValueError("Only OKP/Ed25519 JWK is supported")

        d = jwk.get("d")
        x = jwk.get("x")
        if not d or not x:
            raise ValueError("JWK must include both 'd' (private) and 'x' (public)")

        signer = cls(Ed25519PrivateKey.from_private_bytes(b64url_decode(d)))
        if not CryptoUtils.secure_compare(signer.public_key, b64url_decode(x)):
            raise ValueError("JWK public key 'x' does not match private key 'd'")
        return signer


def load_signer(path: Union[str, pathlib.Path]) -> WithdrawalSigner:
    """Load a signer from a JSON file holding a private OKP JWK (optionally under 'private_jwk')."""
    key_obj = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
    if not isinstance(key_obj, dict):
        raise ValueError("key file must be a JSON object")
    jwk: Optional[Any] = key_obj.get("private_jwk", key_obj)
    if not isinstance(jwk, dict):
        raise ValueError("key file wrapper must contain a JWK object under 'private_jwk'")
    return WithdrawalSigner.from_jwk(jwk)
