from __future__ import annotations

import json
import os
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar

from walletauth.logging import get_logger
from walletauth.storage.common import (
    SecretCipher,
    generate_uuid,
    merge_known_ips,
    normalize_email,
    normalize_username,
)
from walletauth.storage.errors import ConstraintViolation
from walletauth.storage.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_LOCKED,
    ACCOUNT_STATUSES,
    Device,
    MFAConfig,
    RefreshTokenRecord,
    User,
    UserAuthCredential,
    utcnow,
)

T = TypeVar("T")


class MemoryStore:
    """In-process credential store with a JSON snapshot on disk.

    Every public operation runs under one re-entrant lock, which makes each
    read-modify-write (failed-attempt counters, backup-code consumption,
    refresh-token revocation) linearizable across request threads. Callers
    receive copies; mutating a returned object never changes stored state.
    """

    def __init__(
        self, fs_root: str = "/tmp/walletauth", *, mfa_encryption_key: str | None = None
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.mfa_configs: Dict[str, MFAConfig] = {}
        self.devices: Dict[Tuple[str, str], Device] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._cipher = SecretCipher(mfa_encryption_key, self.fs_root)
        self._load_state()

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    def ping(self) -> bool:
        return True

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # -- users --------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = "user",
        profile: Optional[Dict] = None,
        password_algo: str = "argon2id",
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(
                normalize_username(existing.username) == normalize_username(username)
                for existing in self.users.values()
            ):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(
                id=generate_uuid(),
                email=email,
                username=username.strip(),
                role=role,
                profile=dict(profile or {}),
            )
            self.users[user.id] = user
            self.credentials[user.id] = UserAuthCredential(
                user_id=user.id, password_hash=password_hash, password_algo=password_algo
            )
            self._persist_state()
            return replace(user)

    def find_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def find_by_username(self, username: str) -> Optional[User]:
        wanted = normalize_username(username)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if normalize_username(u.username) == wanted),
                None,
            )
            return replace(user) if user else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return replace(record) if record else None

    def update_password_hash(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
            existing = self.credentials.get(user_id)
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else utcnow(),
                last_updated_at=utcnow(),
            )
            self._persist_state()

    # -- lockout counters ---------------------------------------------------

    def increment_failed_attempts(
        self, user_id: str, threshold: int, lock_until: datetime
    ) -> Tuple[int, str]:
        """Count one failed password check; lock at ``threshold``.

        Returns ``(failed_login_attempts, account_status)`` after the update.
        Attempts against an account that is no longer active are not counted.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if user.account_status != ACCOUNT_ACTIVE:
                return user.failed_login_attempts, user.account_status
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= threshold:
                user.account_status = ACCOUNT_LOCKED
                user.locked_until = lock_until
            self._persist_state()
            return user.failed_login_attempts, user.account_status

    def reset_failed_attempts(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.account_status != ACCOUNT_ACTIVE:
                return False
            user.failed_login_attempts = 0
            self._persist_state()
            return True

    def record_successful_login(self, user_id: str) -> bool:
        """Reset the counter and stamp ``last_login_at`` unless the account
        was locked in the meantime."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.account_status != ACCOUNT_ACTIVE:
                return False
            user.failed_login_attempts = 0
            user.last_login_at = utcnow()
            self._persist_state()
            return True

    def set_account_status(
        self, user_id: str, status: str, *, locked_until: Optional[datetime] = None
    ) -> Optional[User]:
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"unknown account status {status}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.account_status = status
            user.locked_until = locked_until if status == ACCOUNT_LOCKED else None
            if status == ACCOUNT_ACTIVE:
                user.failed_login_attempts = 0
            self._persist_state()
            return replace(user)

    def unlock_if_expired(self, user_id: str, now: datetime) -> bool:
        """Lift a lock whose cooldown has passed. Returns True if unlocked."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.account_status != ACCOUNT_LOCKED:
                return False
            if user.locked_until is None or user.locked_until > now:
                return False
            user.account_status = ACCOUNT_ACTIVE
            user.locked_until = None
            user.failed_login_attempts = 0
            self._persist_state()
            return True

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            self._persist_state()
            return replace(user)

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.mfa_enabled = enabled
            self._persist_state()

    # -- MFA configurations -------------------------------------------------

    def _public_mfa(self, cfg: MFAConfig) -> MFAConfig:
        return replace(
            cfg,
            secret=self._cipher.decrypt(cfg.secret),
            backup_code_hashes=list(cfg.backup_code_hashes),
        )

    def create_mfa_config(
        self,
        user_id: str,
        method: str,
        *,
        secret: Optional[str] = None,
        destination: Optional[str] = None,
        backup_code_hashes: Optional[List[str]] = None,
        is_primary: bool = False,
    ) -> MFAConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for mfa", {"user_id": user_id})
            cfg = MFAConfig(
                id=generate_uuid(),
                user_id=user_id,
                method=method,
                is_primary=is_primary,
                secret=self._cipher.encrypt(secret),
                destination=destination,
                backup_code_hashes=list(backup_code_hashes or []),
            )
            if is_primary:
                for other in self.mfa_configs.values():
                    if other.user_id == user_id:
                        other.is_primary = False
            self.mfa_configs[cfg.id] = cfg
            self._persist_state()
            return self._public_mfa(cfg)

    def get_mfa_config(self, config_id: str) -> Optional[MFAConfig]:
        with self._data_lock:
            cfg = self.mfa_configs.get(config_id)
            return self._public_mfa(cfg) if cfg else None

    def list_mfa_configs(self, user_id: str) -> List[MFAConfig]:
        with self._data_lock:
            configs = [c for c in self.mfa_configs.values() if c.user_id == user_id]
            return [self._public_mfa(c) for c in sorted(configs, key=lambda c: c.created_at)]

    def update_mfa_config(self, config_id: str, **updates: Any) -> Optional[MFAConfig]:
        allowed = {
            "is_enabled",
            "verified_at",
            "last_used",
            "disabled_reason",
            "disabled_at",
            "destination",
        }
        unknown = set(updates) - allowed
        if unknown:
            raise ValueError(f"unsupported mfa config fields: {sorted(unknown)}")
        with self._data_lock:
            cfg = self.mfa_configs.get(config_id)
            if not cfg:
                return None
            for name, value in updates.items():
                setattr(cfg, name, value)
            self._persist_state()
            return self._public_mfa(cfg)

    def set_primary_mfa_config(self, user_id: str, config_id: str) -> bool:
        with self._data_lock:
            target = self.mfa_configs.get(config_id)
            if not target or target.user_id != user_id:
                return False
            for cfg in self.mfa_configs.values():
                if cfg.user_id == user_id:
                    cfg.is_primary = cfg.id == config_id
            self._persist_state()
            return True

    def consume_backup_code(self, config_id: str, code_hash: str) -> Optional[int]:
        """Remove one backup code. Returns the remaining count, or None when the
        code is not (or no longer) part of the batch."""
        with self._data_lock:
            cfg = self.mfa_configs.get(config_id)
            if not cfg or code_hash not in cfg.backup_code_hashes:
                return None
            cfg.backup_code_hashes.remove(code_hash)
            cfg.backup_codes_used += 1
            cfg.last_used = utcnow()
            self._persist_state()
            return len(cfg.backup_code_hashes)

    def replace_backup_codes(self, config_id: str, code_hashes: List[str]) -> bool:
        with self._data_lock:
            cfg = self.mfa_configs.get(config_id)
            if not cfg:
                return False
            cfg.backup_code_hashes = list(code_hashes)
            cfg.backup_codes_used = 0
            self._persist_state()
            return True

    def advance_totp_step(self, config_id: str, step: int) -> bool:
        """Record ``step`` as used. False if it (or a later step) already was."""
        with self._data_lock:
            cfg = self.mfa_configs.get(config_id)
            if not cfg:
                return False
            if cfg.last_totp_step is not None and step <= cfg.last_totp_step:
                return False
            cfg.last_totp_step = step
            cfg.last_used = utcnow()
            self._persist_state()
            return True

    # -- devices ------------------------------------------------------------

    def get_device(self, user_id: str, fingerprint: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get((user_id, fingerprint))
            return replace(device, known_ips=list(device.known_ips)) if device else None

    def list_devices(self, user_id: str) -> List[Device]:
        with self._data_lock:
            return [
                replace(d, known_ips=list(d.known_ips))
                for (owner, _), d in self.devices.items()
                if owner == user_id
            ]

    def upsert_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        trusted: Optional[bool] = None,
    ) -> Device:
        with self._data_lock:
            key = (user_id, fingerprint)
            device = self.devices.get(key)
            now = utcnow()
            if device is None:
                device = Device(
                    user_id=user_id,
                    fingerprint=fingerprint,
                    ip_addr=ip_addr,
                    user_agent=user_agent,
                    trusted=bool(trusted),
                    first_seen=now,
                    last_seen=now,
                    known_ips=merge_known_ips([], ip_addr),
                )
                self.devices[key] = device
            else:
                device.ip_addr = ip_addr or device.ip_addr
                device.user_agent = user_agent or device.user_agent
                device.last_seen = now
                device.seen_count += 1
                device.known_ips = merge_known_ips(device.known_ips, ip_addr)
                if trusted is not None:
                    device.trusted = trusted
            self._persist_state()
            return replace(device, known_ips=list(device.known_ips))

    def touch_device(self, user_id: str, fingerprint: str) -> bool:
        with self._data_lock:
            device = self.devices.get((user_id, fingerprint))
            if not device:
                return False
            device.last_seen = utcnow()
            self._persist_state()
            return True

    def set_device_trust(self, user_id: str, fingerprint: str, trusted: bool) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get((user_id, fingerprint))
            if not device:
                return None
            device.trusted = trusted
            self._persist_state()
            return replace(device, known_ips=list(device.known_ips))

    def delete_device(self, user_id: str, fingerprint: str) -> bool:
        with self._data_lock:
            if self.devices.pop((user_id, fingerprint), None) is None:
                return False
            self._persist_state()
            return True

    # -- refresh tokens -----------------------------------------------------

    def create_refresh_token(
        self,
        jti: str,
        user_id: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if jti in self.refresh_tokens:
                raise ConstraintViolation("refresh token exists", {"field": "jti"})
            record = RefreshTokenRecord(
                jti=jti,
                user_id=user_id,
                expires_at=expires_at,
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
            self.refresh_tokens[jti] = record
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            return replace(record) if record else None

    def revoke_refresh_token(self, jti: str, replaced_by: Optional[str] = None) -> bool:
        """Mark one refresh token revoked. True only for the caller that
        performed the active-to-revoked transition."""
        with self._data_lock:
            record = self.refresh_tokens.get(jti)
            if not record or record.revoked_at is not None:
                return False
            record.revoked_at = utcnow()
            record.replaced_by = replaced_by
            self._persist_state()
            return True

    def list_refresh_tokens(self, user_id: str, *, active_only: bool = True) -> List[RefreshTokenRecord]:
        with self._data_lock:
            records = [
                replace(r)
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and (r.is_active or not active_only)
            ]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def revoke_user_refresh_tokens(
        self, user_id: str, *, except_jti: Optional[str] = None
    ) -> List[RefreshTokenRecord]:
        """Revoke every active refresh token of ``user_id`` but ``except_jti``;
        returns those revoked."""
        with self._data_lock:
            now = utcnow()
            revoked = []
            for record in self.refresh_tokens.values():
                if record.jti == except_jti:
                    continue
                if record.user_id == user_id and record.revoked_at is None:
                    record.revoked_at = now
                    revoked.append(replace(record))
            if revoked:
                self._persist_state()
            return revoked

    # -- snapshot -----------------------------------------------------------

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @staticmethod
    def _deserialize(cls: Type[T], data: dict) -> T:
        names = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in names:
                continue
            if isinstance(value, str) and (key.endswith("_at") or key in {
                "locked_until", "last_used", "first_seen", "last_seen"
            }):
                value = datetime.fromisoformat(value)
            kwargs[key] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [self._serialize(c) for c in self.credentials.values()],
            "mfa_configs": [self._serialize(c) for c in self.mfa_configs.values()],
            "devices": [self._serialize(d) for d in self.devices.values()],
            "refresh_tokens": [self._serialize(r) for r in self.refresh_tokens.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize(UserAuthCredential, c)
            for c in data.get("credentials", [])
        }
        self.mfa_configs = {
            c["id"]: self._deserialize(MFAConfig, c) for c in data.get("mfa_configs", [])
        }
        self.devices = {}
        for raw in data.get("devices", []):
            device = self._deserialize(Device, raw)
            self.devices[(device.user_id, device.fingerprint)] = device
        self.refresh_tokens = {
            r["jti"]: self._deserialize(RefreshTokenRecord, r)
            for r in data.get("refresh_tokens", [])
        }
        return True
