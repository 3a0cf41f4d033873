# src/utils/crypto.py
"""
AES-256-GCM helpers for provider credentials stored under the process master key.

Ciphertext format: urlsafe base64 of nonce (12 bytes) followed by ciphertext+tag.
"""
import base64
import logging
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_SIZE = 32
NONCE_SIZE = 12


def pad_key(key: str) -> bytes:
    """Zero-pad or truncate the master key to 32 bytes."""
    if not key:
        raise ValueError("encryption key cannot be empty")
    raw = key.encode("utf-8")
    if len(raw) < KEY_SIZE:
        return raw + b"\x00" * (KEY_SIZE - len(raw))
    return raw[:KEY_SIZE]


def encrypt(plaintext: str, master_key: str) -> str:
    nonce = os.urandom(NONCE_SIZE)
    sealed = AESGCM(pad_key(master_key)).encrypt(nonce, plaintext.encode("utf-8"), None)
    return base64.urlsafe_b64encode(nonce + sealed).decode("ascii")


def decrypt(token: str, master_key: str) -> str:
    try:
        data = base64.urlsafe_b64decode(token.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise ValueError(f"failed to decode ciphertext: {e}") from e
    if len(data) <= NONCE_SIZE:
        raise ValueError("ciphertext too short")
    try:
        plain = AESGCM(pad_key(master_key)).decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise ValueError("ciphertext failed authentication") from e
    return plain.decode("utf-8")


def generate_secret() -> str:
    # 32 random bytes, hex encoded
    return secrets.token_hex(32)


def validate_master_key(master_key: str) -> bool:
    if not master_key:
        logging.warning("[crypto] API_ENCRYPTION_KEY is not set, provider credentials cannot be decrypted")
        return False
    if len(master_key.encode("utf-8")) != KEY_SIZE:
        logging.warning(f"[crypto] API_ENCRYPTION_KEY is {len(master_key.encode('utf-8'))} bytes, "
                        f"it will be padded or truncated to {KEY_SIZE}")
        return False
    return True
