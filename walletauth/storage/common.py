"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from walletauth.logging import get_logger

logger = get_logger(__name__)

# Recent IPs remembered per device for the risk check
KNOWN_IP_LIMIT = 20


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_username(username: str) -> str:
    return (username or "").strip().lower()


def generate_uuid() -> str:
    return str(uuid.uuid4())


def merge_known_ips(known: List[str], ip_addr: Optional[str]) -> List[str]:
    """Append ``ip_addr`` to the bounded recent-IP list, most recent last."""
    if not ip_addr:
        return list(known)
    merged = [ip for ip in known if ip != ip_addr]
    merged.append(ip_addr)
    return merged[-KNOWN_IP_LIMIT:]


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a JSON column that may arrive as a string or already decoded."""
    if isinstance(raw_meta, str):
        try:
            return json.loads(raw_meta)
        except ValueError:
            return None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


class SecretCipher:
    """Fernet wrapper used to keep TOTP secrets encrypted at rest.

    Key material is stretched with SHA-256 so any sufficiently random string
    (the ``MFA_SECRET_KEY`` setting) can seed it. When no material is given a
    key is generated once and persisted beside the store's data.
    """

    def __init__(self, key_material: Optional[str], fs_root: Path) -> None:
        material = key_material or self._load_or_create_material(fs_root)
        try:
            self._fernet = Fernet(self.derive_key(material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    @staticmethod
    def derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @staticmethod
    def _load_or_create_material(fs_root: Path) -> str:
        secret_path = fs_root / ".mfa_secret"
        if secret_path.exists() and not secret_path.is_symlink():
            material = secret_path.read_text().strip()
            if material:
                return material
        generated = secrets.token_urlsafe(64)
        try:
            secret_path.parent.mkdir(parents=True, exist_ok=True)
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except OSError as exc:
            raise RuntimeError("Unable to persist MFA encryption key") from exc
        return generated

    def encrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            # A secret we cannot decrypt is unusable; refuse rather than
            # verifying codes against ciphertext.
            logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("MFA secret could not be decrypted") from exc
