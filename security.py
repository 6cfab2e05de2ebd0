"""Password hashing, at-rest encryption for customer PII, and shared-secret checks."""

from __future__ import annotations

import hmac
import json
import os
import re
from pathlib import Path
from typing import Any, Optional

import bcrypt
from cryptography.fernet import Fernet, InvalidToken
from werkzeug.security import check_password_hash

BCRYPT_ROUNDS = 12
SENSITIVE_KEY_ENV = "SENSITIVE_DATA_KEY"
SENSITIVE_KEY_FILE = Path(__file__).with_name("sensitive_key.txt")
COMMON_PASSWORDS = {"password", "password1", "letmein", "1234", "12345", "123456", "qwerty", "iloveyou"}

_fernet: Optional[Fernet] = None


def hash_password(password: str) -> str:
    """Return a bcrypt hash for the given password."""

    if not isinstance(password, str):
        raise TypeError("Password must be a string.")
    digest = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
    return digest.decode("utf-8")


def verify_password(password: str, stored_hash: str | bytes | None) -> bool:
    """Check a password against a bcrypt hash, or a werkzeug hash from older accounts."""

    if not password or not stored_hash:
        return False

    if isinstance(stored_hash, bytes):
        stored_hash = stored_hash.decode("utf-8")

    if stored_hash.startswith(("scrypt:", "pbkdf2:")):
        return check_password_hash(stored_hash, password)

    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


def validate_password(email: str, password: str) -> str | None:
    """Return an error message if the password fails the policy, otherwise None."""

    lowered = password.lower()
    local_part = (email or "").split("@", 1)[0].lower()

    if len(password) < 8:
        return "Password must be at least eight characters."
    if lowered in COMMON_PASSWORDS:
        return "Please choose a less common password."
    if local_part and lowered == local_part:
        return "Password cannot match your email name."
    if local_part and lowered in {f"{local_part}{suffix}" for suffix in ("123", "1", "01")}:
        return "Password is too closely related to your email."
    if lowered.isdigit():
        return "Password must include letters in addition to numbers."
    if lowered.isalpha():
        return "Password must include at least one number or symbol."
    if re.search(r"(.)\1{2,}", lowered):
        return "Password cannot contain the same character three or more times in a row."
    return None


def _cipher() -> Fernet:
    """Build the Fernet cipher from the environment, a key file, or a fresh key."""

    global _fernet
    if _fernet is not None:
        return _fernet

    env_key = os.getenv(SENSITIVE_KEY_ENV)
    if env_key:
        key = env_key.strip().encode("utf-8")
    elif SENSITIVE_KEY_FILE.exists():
        key = SENSITIVE_KEY_FILE.read_bytes().strip()
    else:
        key = Fernet.generate_key()
        SENSITIVE_KEY_FILE.write_bytes(key)

    _fernet = Fernet(key)
    return _fernet


def encrypt_sensitive_value(value: Optional[str]) -> str:
    return _cipher().encrypt((value or "").encode("utf-8")).decode("utf-8")


def decrypt_sensitive_value(value: Optional[str]) -> str:
    """Decrypt a stored column value, passing plaintext rows through unchanged."""

    if not value:
        return ""
    try:
        return _cipher().decrypt(str(value).encode("utf-8")).decode("utf-8")
    except (InvalidToken, ValueError, TypeError):
        return str(value)


def encrypt_json(payload: Any) -> str:
    """Encrypt a JSON-serialisable snapshot such as a shipping address."""

    return encrypt_sensitive_value(json.dumps(payload, sort_keys=True))


def decrypt_json(value: Optional[str]) -> Any:
    raw = decrypt_sensitive_value(value)
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def secrets_match(expected: str, provided: Optional[str]) -> bool:
    """Constant-time comparison for shared secrets sent by webhooks and cron jobs."""

    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))
