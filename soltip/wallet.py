from __future__ import annotations

import json
from dataclasses import dataclass
from typing import List

import base58
from nacl.exceptions import ValueError as NaclValueError
from nacl.signing import SigningKey

# Solana secret keys are the 32-byte ed25519 seed followed by the 32-byte public key
SECRET_KEY_LENGTH = 64


@dataclass(frozen=True)
class Keypair:
    secret_key: bytes

    @property
    def public_key(self) -> bytes:
        return self.secret_key[32:]

    @property
    def address(self) -> str:
        return base58.b58encode(self.public_key).decode()

    def to_json_bytes(self) -> List[int]:
        """Keypair file format understood by the solana CLI."""
        return list(self.secret_key)

    def to_json(self) -> str:
        return json.dumps(self.to_json_bytes())


def generate_keypair() -> Keypair:
    signing_key = SigningKey.generate()
    return Keypair(secret_key=bytes(signing_key) + bytes(signing_key.verify_key))


def keypair_from_secret(secret_key: bytes) -> Keypair:
    """Rebuild a keypair and check that its public half matches the seed."""
    if len(secret_key) != SECRET_KEY_LENGTH:
        raise ValueError(f"expected {SECRET_KEY_LENGTH}-byte secret key, got {len(secret_key)}")
    try:
        signing_key = SigningKey(secret_key[:32])
    except NaclValueError as e:
        raise ValueError(f"invalid ed25519 seed: {e}") from e
    if bytes(signing_key.verify_key) != secret_key[32:]:
        raise ValueError("secret key public half does not match its seed")
    return Keypair(secret_key=bytes(secret_key))


def address_from_secret(secret_key: bytes) -> str:
    return keypair_from_secret(secret_key).address
