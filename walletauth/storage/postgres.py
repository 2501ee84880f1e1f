from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from walletauth.logging import get_logger
from walletauth.storage.common import (
    SecretCipher,
    generate_uuid,
    merge_known_ips,
    normalize_email,
    normalize_username,
    parse_json_meta,
    safe_row_value,
)
from walletauth.storage.errors import ConstraintViolation, StorageUnavailable
from walletauth.storage.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_LOCKED,
    ACCOUNT_STATUSES,
    Device,
    MFAConfig,
    RefreshTokenRecord,
    User,
    UserAuthCredential,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'user',
        account_status TEXT NOT NULL DEFAULT 'active'
            CHECK (account_status IN ('active', 'locked', 'disabled')),
        failed_login_attempts INTEGER NOT NULL DEFAULT 0
            CHECK (failed_login_attempts >= 0),
        locked_until TIMESTAMPTZ,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        last_login_at TIMESTAMPTZ,
        profile JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_username_key ON app_user (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_mfa_config (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        method TEXT NOT NULL CHECK (method IN ('totp', 'sms', 'email', 'biometric')),
        is_primary BOOLEAN NOT NULL DEFAULT FALSE,
        is_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        secret TEXT,
        destination TEXT,
        verified_at TIMESTAMPTZ,
        last_used TIMESTAMPTZ,
        backup_code_hashes TEXT[] NOT NULL DEFAULT '{}',
        backup_codes_used INTEGER NOT NULL DEFAULT 0,
        last_totp_step BIGINT,
        disabled_reason TEXT,
        disabled_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS user_mfa_config_one_primary
        ON user_mfa_config (user_id) WHERE is_primary
    """,
    """
    CREATE TABLE IF NOT EXISTS user_device (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        fingerprint TEXT NOT NULL,
        ip_addr TEXT,
        user_agent TEXT,
        trusted BOOLEAN NOT NULL DEFAULT FALSE,
        first_seen TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_seen TIMESTAMPTZ NOT NULL DEFAULT now(),
        seen_count INTEGER NOT NULL DEFAULT 1,
        known_ips TEXT[] NOT NULL DEFAULT '{}',
        PRIMARY KEY (user_id, fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        jti TEXT PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        replaced_by TEXT,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
)

_USER_COLUMNS = (
    "id, email, username, role, account_status, failed_login_attempts, locked_until, "
    "email_verified, mfa_enabled, last_login_at, profile, created_at"
)
_MFA_COLUMNS = (
    "id, user_id, method, is_primary, is_enabled, secret, destination, verified_at, "
    "last_used, backup_code_hashes, backup_codes_used, last_totp_step, disabled_reason, "
    "disabled_at, created_at"
)
_DEVICE_COLUMNS = (
    "user_id, fingerprint, ip_addr, user_agent, trusted, first_seen, last_seen, "
    "seen_count, known_ips"
)
_TOKEN_COLUMNS = (
    "jti, user_id, created_at, expires_at, revoked_at, replaced_by, user_agent, ip_addr"
)


class PostgresStore:
    """Postgres-backed credential store.

    Counter updates, backup-code consumption and refresh-token revocation are
    single ``UPDATE ... RETURNING`` statements guarded by their ``WHERE``
    clause, so concurrent requests serialize on the row lock instead of
    racing on a read-modify-write in Python.
    """

    def __init__(
        self,
        dsn: str,
        fs_root: str,
        *,
        mfa_encryption_key: str | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(mfa_encryption_key, self.fs_root)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self, operation: str = "query") -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StorageUnavailable(operation=operation) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""
        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect("ping") as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            role=row.get("role") or "user",
            account_status=row.get("account_status") or ACCOUNT_ACTIVE,
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            email_verified=bool(row.get("email_verified")),
            mfa_enabled=bool(row.get("mfa_enabled")),
            last_login_at=row.get("last_login_at"),
            profile=parse_json_meta(row.get("profile")) or {},
            created_at=row["created_at"],
        )

    def _mfa_from_row(self, row: Dict[str, Any]) -> MFAConfig:
        return MFAConfig(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            method=row["method"],
            is_primary=bool(row.get("is_primary")),
            is_enabled=bool(row.get("is_enabled")),
            secret=self._cipher.decrypt(row.get("secret")),
            destination=row.get("destination"),
            verified_at=row.get("verified_at"),
            last_used=row.get("last_used"),
            backup_code_hashes=list(row.get("backup_code_hashes") or []),
            backup_codes_used=int(row.get("backup_codes_used") or 0),
            last_totp_step=row.get("last_totp_step"),
            disabled_reason=row.get("disabled_reason"),
            disabled_at=row.get("disabled_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _device_from_row(row: Dict[str, Any]) -> Device:
        return Device(
            user_id=str(row["user_id"]),
            fingerprint=row["fingerprint"],
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
            trusted=bool(row.get("trusted")),
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            seen_count=int(row.get("seen_count") or 1),
            known_ips=list(row.get("known_ips") or []),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            jti=row["jti"],
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            revoked_at=row.get("revoked_at"),
            replaced_by=row.get("replaced_by"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

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
        user_id = generate_uuid()
        try:
            with self._connect("create_user") as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_user (id, email, username, role, profile)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (user_id, normalize_email(email), username.strip(), role, Jsonb(profile or {})),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            field = "username" if "username" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._user_from_row(row)

    def find_by_email(self, email: str) -> Optional[User]:
        with self._connect("find_by_email") as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE lower(email) = %s",
                (normalize_email(email),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_by_username(self, username: str) -> Optional[User]:
        with self._connect("find_by_username") as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE lower(username) = %s",
                (normalize_username(username),),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        try:
            with self._connect("find_by_id") as conn:
                row = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        return self._user_from_row(row) if row else None

    def get_password_record(self, user_id: str) -> Optional[UserAuthCredential]:
        with self._connect("get_password_record") as conn:
            row = conn.execute(
                """
                SELECT user_id, password_hash, password_algo, created_at, last_updated_at
                FROM user_auth_credential WHERE user_id = %s
                """,
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return UserAuthCredential(
            user_id=str(row["user_id"]),
            password_hash=row["password_hash"],
            password_algo=row["password_algo"],
            created_at=row["created_at"],
            last_updated_at=row.get("last_updated_at"),
        )

    def update_password_hash(
        self, user_id: str, password_hash: str, password_algo: str = "argon2id"
    ) -> None:
        with self._connect("update_password_hash") as conn:
            result = conn.execute(
                """
                UPDATE user_auth_credential
                SET password_hash = %s, password_algo = %s, last_updated_at = now()
                WHERE user_id = %s
                """,
                (password_hash, password_algo, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    # -- lockout counters ---------------------------------------------------

    def increment_failed_attempts(
        self, user_id: str, threshold: int, lock_until: datetime
    ) -> Tuple[int, str]:
        with self._connect("increment_failed_attempts") as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_login_attempts = failed_login_attempts + 1,
                    account_status = CASE
                        WHEN failed_login_attempts + 1 >= %(threshold)s THEN 'locked'
                        ELSE account_status END,
                    locked_until = CASE
                        WHEN failed_login_attempts + 1 >= %(threshold)s THEN %(lock_until)s
                        ELSE locked_until END
                WHERE id = %(user_id)s AND account_status = 'active'
                RETURNING failed_login_attempts, account_status
                """,
                {"threshold": threshold, "lock_until": lock_until, "user_id": user_id},
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT failed_login_attempts, account_status FROM app_user WHERE id = %s",
                    (user_id,),
                ).fetchone()
                if row is None:
                    raise ConstraintViolation("user not found", {"user_id": user_id})
        return int(row["failed_login_attempts"]), row["account_status"]

    def reset_failed_attempts(self, user_id: str) -> bool:
        with self._connect("reset_failed_attempts") as conn:
            result = conn.execute(
                """
                UPDATE app_user SET failed_login_attempts = 0
                WHERE id = %s AND account_status = 'active'
                """,
                (user_id,),
            )
            return result.rowcount > 0

    def record_successful_login(self, user_id: str) -> bool:
        with self._connect("record_successful_login") as conn:
            result = conn.execute(
                """
                UPDATE app_user SET failed_login_attempts = 0, last_login_at = now()
                WHERE id = %s AND account_status = 'active'
                """,
                (user_id,),
            )
            return result.rowcount > 0

    def set_account_status(
        self, user_id: str, status: str, *, locked_until: Optional[datetime] = None
    ) -> Optional[User]:
        if status not in ACCOUNT_STATUSES:
            raise ValueError(f"unknown account status {status}")
        with self._connect("set_account_status") as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET account_status = %(status)s,
                    locked_until = %(locked_until)s,
                    failed_login_attempts = CASE
                        WHEN %(status)s = 'active' THEN 0 ELSE failed_login_attempts END
                WHERE id = %(user_id)s
                RETURNING {_USER_COLUMNS}
                """,
                {
                    "status": status,
                    "locked_until": locked_until if status == ACCOUNT_LOCKED else None,
                    "user_id": user_id,
                },
            ).fetchone()
        return self._user_from_row(row) if row else None

    def unlock_if_expired(self, user_id: str, now: datetime) -> bool:
        with self._connect("unlock_if_expired") as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET account_status = 'active', locked_until = NULL, failed_login_attempts = 0
                WHERE id = %s AND account_status = 'locked'
                  AND locked_until IS NOT NULL AND locked_until <= %s
                """,
                (user_id, now),
            )
            return result.rowcount > 0

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect("mark_email_verified") as conn:
            row = conn.execute(
                f"UPDATE app_user SET email_verified = TRUE WHERE id = %s RETURNING {_USER_COLUMNS}",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_mfa_enabled(self, user_id: str, enabled: bool) -> None:
        with self._connect("set_mfa_enabled") as conn:
            conn.execute(
                "UPDATE app_user SET mfa_enabled = %s WHERE id = %s", (enabled, user_id)
            )

    # -- MFA configurations -------------------------------------------------

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
        config_id = generate_uuid()
        try:
            with self._connect("create_mfa_config") as conn:
                if is_primary:
                    conn.execute(
                        "UPDATE user_mfa_config SET is_primary = FALSE WHERE user_id = %s",
                        (user_id,),
                    )
                row = conn.execute(
                    f"""
                    INSERT INTO user_mfa_config
                        (id, user_id, method, is_primary, secret, destination, backup_code_hashes)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_MFA_COLUMNS}
                    """,
                    (
                        config_id,
                        user_id,
                        method,
                        is_primary,
                        self._cipher.encrypt(secret),
                        destination,
                        list(backup_code_hashes or []),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user not found for mfa", {"user_id": user_id}) from exc
        return self._mfa_from_row(row)

    def get_mfa_config(self, config_id: str) -> Optional[MFAConfig]:
        try:
            with self._connect("get_mfa_config") as conn:
                row = conn.execute(
                    f"SELECT {_MFA_COLUMNS} FROM user_mfa_config WHERE id = %s", (config_id,)
                ).fetchone()
        except errors.InvalidTextRepresentation:
            return None
        return self._mfa_from_row(row) if row else None

    def list_mfa_configs(self, user_id: str) -> List[MFAConfig]:
        with self._connect("list_mfa_configs") as conn:
            rows = conn.execute(
                f"""
                SELECT {_MFA_COLUMNS} FROM user_mfa_config
                WHERE user_id = %s ORDER BY created_at
                """,
                (user_id,),
            ).fetchall()
        return [self._mfa_from_row(row) for row in rows]

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
        if not updates:
            return self.get_mfa_config(config_id)
        assignments = ", ".join(f"{name} = %({name})s" for name in sorted(updates))
        with self._connect("update_mfa_config") as conn:
            row = conn.execute(
                f"""
                UPDATE user_mfa_config SET {assignments}
                WHERE id = %(config_id)s
                RETURNING {_MFA_COLUMNS}
                """,
                {**updates, "config_id": config_id},
            ).fetchone()
        return self._mfa_from_row(row) if row else None

    def set_primary_mfa_config(self, user_id: str, config_id: str) -> bool:
        with self._connect("set_primary_mfa_config") as conn:
            owned = conn.execute(
                "SELECT id FROM user_mfa_config WHERE id = %s AND user_id = %s FOR UPDATE",
                (config_id, user_id),
            ).fetchone()
            if not owned:
                return False
            conn.execute(
                "UPDATE user_mfa_config SET is_primary = FALSE WHERE user_id = %s AND id <> %s",
                (user_id, config_id),
            )
            conn.execute(
                "UPDATE user_mfa_config SET is_primary = TRUE WHERE id = %s", (config_id,)
            )
            return True

    def consume_backup_code(self, config_id: str, code_hash: str) -> Optional[int]:
        with self._connect("consume_backup_code") as conn:
            row = conn.execute(
                """
                UPDATE user_mfa_config
                SET backup_code_hashes = array_remove(backup_code_hashes, %(code)s),
                    backup_codes_used = backup_codes_used + 1,
                    last_used = now()
                WHERE id = %(config_id)s AND %(code)s = ANY(backup_code_hashes)
                RETURNING cardinality(backup_code_hashes) AS remaining
                """,
                {"code": code_hash, "config_id": config_id},
            ).fetchone()
        return int(row["remaining"]) if row else None

    def replace_backup_codes(self, config_id: str, code_hashes: List[str]) -> bool:
        with self._connect("replace_backup_codes") as conn:
            result = conn.execute(
                """
                UPDATE user_mfa_config
                SET backup_code_hashes = %s, backup_codes_used = 0
                WHERE id = %s
                """,
                (list(code_hashes), config_id),
            )
            return result.rowcount > 0

    def advance_totp_step(self, config_id: str, step: int) -> bool:
        with self._connect("advance_totp_step") as conn:
            result = conn.execute(
                """
                UPDATE user_mfa_config SET last_totp_step = %(step)s, last_used = now()
                WHERE id = %(config_id)s
                  AND (last_totp_step IS NULL OR last_totp_step < %(step)s)
                """,
                {"step": step, "config_id": config_id},
            )
            return result.rowcount > 0

    # -- devices ------------------------------------------------------------

    def get_device(self, user_id: str, fingerprint: str) -> Optional[Device]:
        with self._connect("get_device") as conn:
            row = conn.execute(
                f"""
                SELECT {_DEVICE_COLUMNS} FROM user_device
                WHERE user_id = %s AND fingerprint = %s
                """,
                (user_id, fingerprint),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def list_devices(self, user_id: str) -> List[Device]:
        with self._connect("list_devices") as conn:
            rows = conn.execute(
                f"SELECT {_DEVICE_COLUMNS} FROM user_device WHERE user_id = %s",
                (user_id,),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def upsert_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        trusted: Optional[bool] = None,
    ) -> Device:
        with self._connect("upsert_device") as conn:
            existing = conn.execute(
                f"""
                SELECT {_DEVICE_COLUMNS} FROM user_device
                WHERE user_id = %s AND fingerprint = %s FOR UPDATE
                """,
                (user_id, fingerprint),
            ).fetchone()
            if existing is None:
                row = conn.execute(
                    f"""
                    INSERT INTO user_device (user_id, fingerprint, ip_addr, user_agent, trusted, known_ips)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, fingerprint) DO UPDATE
                        SET last_seen = now(), seen_count = user_device.seen_count + 1
                    RETURNING {_DEVICE_COLUMNS}
                    """,
                    (
                        user_id,
                        fingerprint,
                        ip_addr,
                        user_agent,
                        bool(trusted),
                        merge_known_ips([], ip_addr),
                    ),
                ).fetchone()
            else:
                known_ips = merge_known_ips(
                    list(safe_row_value(existing, "known_ips", []) or []), ip_addr
                )
                row = conn.execute(
                    f"""
                    UPDATE user_device
                    SET ip_addr = COALESCE(%s, ip_addr),
                        user_agent = COALESCE(%s, user_agent),
                        trusted = COALESCE(%s, trusted),
                        last_seen = now(),
                        seen_count = seen_count + 1,
                        known_ips = %s
                    WHERE user_id = %s AND fingerprint = %s
                    RETURNING {_DEVICE_COLUMNS}
                    """,
                    (ip_addr, user_agent, trusted, known_ips, user_id, fingerprint),
                ).fetchone()
        return self._device_from_row(row)

    def touch_device(self, user_id: str, fingerprint: str) -> bool:
        with self._connect("touch_device") as conn:
            result = conn.execute(
                "UPDATE user_device SET last_seen = now() WHERE user_id = %s AND fingerprint = %s",
                (user_id, fingerprint),
            )
            return result.rowcount > 0

    def set_device_trust(self, user_id: str, fingerprint: str, trusted: bool) -> Optional[Device]:
        with self._connect("set_device_trust") as conn:
            row = conn.execute(
                f"""
                UPDATE user_device SET trusted = %s
                WHERE user_id = %s AND fingerprint = %s
                RETURNING {_DEVICE_COLUMNS}
                """,
                (trusted, user_id, fingerprint),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def delete_device(self, user_id: str, fingerprint: str) -> bool:
        with self._connect("delete_device") as conn:
            result = conn.execute(
                "DELETE FROM user_device WHERE user_id = %s AND fingerprint = %s",
                (user_id, fingerprint),
            )
            return result.rowcount > 0

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
        try:
            with self._connect("create_refresh_token") as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO refresh_token (jti, user_id, expires_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING {_TOKEN_COLUMNS}
                    """,
                    (jti, user_id, expires_at, user_agent, ip_addr),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token exists", {"field": "jti"}) from exc
        return self._token_from_row(row)

    def get_refresh_token(self, jti: str) -> Optional[RefreshTokenRecord]:
        with self._connect("get_refresh_token") as conn:
            row = conn.execute(
                f"SELECT {_TOKEN_COLUMNS} FROM refresh_token WHERE jti = %s", (jti,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def revoke_refresh_token(self, jti: str, replaced_by: Optional[str] = None) -> bool:
        with self._connect("revoke_refresh_token") as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = now(), replaced_by = %s
                WHERE jti = %s AND revoked_at IS NULL
                RETURNING jti
                """,
                (replaced_by, jti),
            ).fetchone()
        return row is not None

    def list_refresh_tokens(self, user_id: str, *, active_only: bool = True) -> List[RefreshTokenRecord]:
        with self._connect("list_refresh_tokens") as conn:
            rows = conn.execute(
                f"""
                SELECT {_TOKEN_COLUMNS} FROM refresh_token
                WHERE user_id = %s AND (revoked_at IS NULL OR NOT %s)
                ORDER BY created_at DESC
                """,
                (user_id, active_only),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def revoke_user_refresh_tokens(
        self, user_id: str, *, except_jti: Optional[str] = None
    ) -> List[RefreshTokenRecord]:
        with self._connect("revoke_user_refresh_tokens") as conn:
            rows = conn.execute(
                f"""
                UPDATE refresh_token SET revoked_at = now()
                WHERE user_id = %s AND revoked_at IS NULL
                  AND jti IS DISTINCT FROM %s
                RETURNING {_TOKEN_COLUMNS}
                """,
                (user_id, except_jti),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]
