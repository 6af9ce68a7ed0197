"""Envelope encryption and integrity tags (core domain).

Envelopes are AES-256-CTR ciphertexts framed as `<hex iv>:<hex ciphertext>`.
The key is derived from a configured secret with scrypt and a fixed salt.
The fixed salt is kept for wire compatibility with existing producers; it
means every deployment sharing a secret also shares the derived key.

Integrity tags are SHA-256 digests over a canonical `key:value|...` rendering
of the message fields, embedded in the message under `secret_key`.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from typing import Any, Mapping

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from routestream.core.errors import DecryptionError, MalformedEnvelopeError, MalformedPayloadError

LOGGER = logging.getLogger(__name__)

ENVELOPE_SEPARATOR = ":"
TAG_FIELD = "secret_key"
IV_LENGTH = 16
KEY_LENGTH = 32
KDF_SALT = b"salt"
# scrypt cost parameters matching the defaults used by existing producers.
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1


def derive_key(secret: str) -> bytes:
    """Derive the 32-byte AES key for a secret."""

    kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(secret.encode("utf-8"))


def _render_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def canonical_hash(fields: Mapping[str, Any]) -> str:
    """Return a SHA-256 hex digest that ignores key insertion order."""

    payload = "|".join(f"{key}:{_render_value(fields[key])}" for key in sorted(fields))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def tag_message(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of `fields` with the integrity tag embedded."""

    tagged = dict(fields)
    tagged[TAG_FIELD] = canonical_hash(fields)
    return tagged


def strip_tag(message: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in message.items() if key != TAG_FIELD}


def validate_tag(message: Mapping[str, Any]) -> bool:
    """Check the embedded tag against the remaining fields.

    A mismatch is a normal outcome and returns False. Only a message without
    a tag field at all is treated as malformed.
    """

    if TAG_FIELD not in message:
        raise MalformedPayloadError(f"Missing {TAG_FIELD} field")
    return message[TAG_FIELD] == canonical_hash(strip_tag(message))


def parse_payload(plaintext: bytes) -> dict[str, Any]:
    """Decode decrypted bytes into a message mapping."""

    try:
        message = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedPayloadError(f"Payload is not valid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise MalformedPayloadError("Payload is not a JSON object")
    return message


class CryptoIntegrityLayer:
    """Encrypts and decrypts envelopes with a key derived from one secret."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Encryption secret must not be empty")
        # scrypt is deliberately slow; the key never changes for a given
        # secret so it is derived once per layer.
        self._key = derive_key(secret)

    def encrypt(self, plaintext: bytes) -> str:
        """Encrypt bytes into a `<hex iv>:<hex ciphertext>` envelope."""

        iv = os.urandom(IV_LENGTH)
        encryptor = Cipher(algorithms.AES(self._key), modes.CTR(iv)).encryptor()
        ciphertext = encryptor.update(plaintext) + encryptor.finalize()
        return f"{iv.hex()}{ENVELOPE_SEPARATOR}{ciphertext.hex()}"

    def decrypt(self, envelope: str) -> bytes:
        """Decrypt an envelope produced by `encrypt`."""

        parts = envelope.split(ENVELOPE_SEPARATOR)
        if len(parts) != 2:
            raise MalformedEnvelopeError("Invalid encrypted text format")

        iv_hex, ciphertext_hex = parts
        try:
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
            decryptor = Cipher(algorithms.AES(self._key), modes.CTR(iv)).decryptor()
            return decryptor.update(ciphertext) + decryptor.finalize()
        except ValueError as exc:
            raise DecryptionError(f"Decryption failed: {exc}") from exc

    def encrypt_message(self, message: Mapping[str, Any]) -> str:
        """Serialize a message mapping as JSON and encrypt it."""

        return self.encrypt(json.dumps(dict(message), separators=(",", ":")).encode("utf-8"))

    def decrypt_message(self, envelope: str) -> dict[str, Any]:
        return parse_payload(self.decrypt(envelope))
