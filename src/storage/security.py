"""Password hashing and store credential encryption helpers."""

from __future__ import annotations

import base64
from functools import lru_cache
import hashlib
import hmac
import json
import os
from typing import Any, Dict, Optional

from src.core.config import get_settings


PBKDF2_ROUNDS = 260_000


def hash_password(password: str) -> str:
    """Hash password with PBKDF2-SHA256 and a random salt."""

    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF2_ROUNDS)
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"pbkdf2_sha256${PBKDF2_ROUNDS}${salt_b64}${digest_b64}"


def verify_password(password: str, encoded_hash: str) -> bool:
    try:
        algorithm, rounds_str, salt_b64, digest_b64 = encoded_hash.split("$", 3)
        if algorithm != "pbkdf2_sha256":
            return False
        rounds = int(rounds_str)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected = base64.b64decode(digest_b64.encode("ascii"))
    except (ValueError, TypeError):
        return False

    observed = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(observed, expected)


@lru_cache(maxsize=1)
def get_credentials_key() -> bytes:
    settings = get_settings()
    seed = settings.token_encryption_key.strip() or settings.secret_key or "opshub-dev-credentials-key"
    return hashlib.sha256(seed.encode("utf-8")).digest()


def _keystream(key: bytes, nonce: bytes, length: int) -> bytes:
    stream = b""
    counter = 0
    while len(stream) < length:
        stream += hmac.new(key, nonce + counter.to_bytes(4, "big"), digestmod=hashlib.sha256).digest()
        counter += 1
    return stream[:length]


def encrypt_secret(secret_value: str) -> str:
    """Encrypt-then-MAC a secret; output is urlsafe base64 of nonce|mac|ciphertext."""

    key = get_credentials_key()
    nonce = os.urandom(16)
    plaintext = secret_value.encode("utf-8")
    stream = _keystream(key, nonce, len(plaintext))
    ciphertext = bytes(a ^ b for a, b in zip(plaintext, stream))
    mac = hmac.new(key, nonce + ciphertext, digestmod=hashlib.sha256).digest()
    return base64.urlsafe_b64encode(nonce + mac + ciphertext).decode("ascii")


def decrypt_secret(ciphertext: str) -> str:
    key = get_credentials_key()
    try:
        blob = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
    except (ValueError, UnicodeEncodeError) as exc:
        raise ValueError("Invalid encrypted payload") from exc

    if len(blob) < 48:
        raise ValueError("Invalid encrypted payload")
    nonce, mac, encrypted = blob[:16], blob[16:48], blob[48:]
    expected_mac = hmac.new(key, nonce + encrypted, digestmod=hashlib.sha256).digest()
    if not hmac.compare_digest(mac, expected_mac):
        raise ValueError("Invalid encrypted payload")

    stream = _keystream(key, nonce, len(encrypted))
    return bytes(a ^ b for a, b in zip(encrypted, stream)).decode("utf-8")


def encrypt_credentials(credentials: Dict[str, Any]) -> str:
    return encrypt_secret(json.dumps(credentials, separators=(",", ":"), sort_keys=True))


def decrypt_credentials(ciphertext: Optional[str]) -> Dict[str, Any]:
    if not ciphertext:
        return {}
    decoded = json.loads(decrypt_secret(ciphertext))
    if not isinstance(decoded, dict):
        raise ValueError("Store credentials must decode to an object")
    return decoded
