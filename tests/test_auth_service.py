"""Unit tests for the auth orchestrator.

Tests for:
- Registration and password strength
- Login, lockout and counter reset
- MFA gating and completion
- Risk-based step-up verification
- Refresh, logout and password change/reset
- Email verification and administrative unlock
"""

import pytest

from walletauth.service.auth import RequestContext, password_problems
from walletauth.service.errors import (
    AccountLockedError,
    EmailExistsError,
    ForbiddenError,
    InsufficientPermissionsError,
    InvalidCodeError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TokenRevokedError,
    ValidationError,
    VerificationExpiredError,
    WeakPasswordError,
)
from walletauth.service.mfa import TOTP_INTERVAL, generate_totp
from walletauth.storage.models import ACCOUNT_ACTIVE, ACCOUNT_DISABLED, ACCOUNT_LOCKED

PASSWORD = "Secur3Pass!"


async def _register(auth_service, email="alice@example.com", username="alice", password=PASSWORD):
    user, _ = await auth_service.register(email, username, password)
    return user


class TestPasswordStrength:
    def test_strong_password_passes(self):
        assert password_problems(PASSWORD) == []

    @pytest.mark.parametrize(
        "password, missing",
        [
            ("Sh0rt!", "length between 8 and 128"),
            ("alllowercase1!", "uppercase letter"),
            ("ALLUPPERCASE1!", "lowercase letter"),
            ("NoDigitsHere!", "digit"),
            ("NoSpecials123", "special character"),
        ],
    )
    def test_each_rule_reported(self, password, missing):
        assert missing in password_problems(password)

    def test_overlong_password(self):
        assert password_problems("Aa1!" * 40)


class TestRegistration:
    async def test_register_issues_tokens(self, auth_service, token_service, outbox):
        user, pair = await auth_service.register("alice@example.com", "alice", PASSWORD)

        assert user.email == "alice@example.com"
        assert token_service.verify_access_token(pair.access_token).subject_id == user.id
        assert outbox.last("email_verification")["to"] == "alice@example.com"

    async def test_password_is_hashed_with_argon2id(self, auth_service, memory_store):
        user = await _register(auth_service)

        record = memory_store.get_password_record(user.id)
        assert record.password_algo == "argon2id"
        assert record.password_hash.startswith("$argon2id$")
        assert PASSWORD not in record.password_hash

    async def test_weak_password_rejected_before_storing(self, auth_service, memory_store):
        with pytest.raises(WeakPasswordError) as exc_info:
            await auth_service.register("weak@example.com", "weak", "password")

        assert "uppercase letter" in exc_info.value.detail["requirements"]
        assert memory_store.find_by_email("weak@example.com") is None

    async def test_duplicate_email(self, auth_service):
        await _register(auth_service)

        with pytest.raises(EmailExistsError) as exc_info:
            await auth_service.register("ALICE@example.com", "alice2", PASSWORD)
        assert exc_info.value.detail == {"field": "email"}

    async def test_duplicate_username(self, auth_service):
        await _register(auth_service)

        with pytest.raises(EmailExistsError) as exc_info:
            await auth_service.register("other@example.com", "Alice", PASSWORD)
        assert exc_info.value.detail == {"field": "username"}

    async def test_invalid_email(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("not-an-email", "someone", PASSWORD)

    async def test_email_verification_required(self, settings, auth_service):
        auth_service.settings = settings.model_copy(update={"require_email_verification": True})

        user, pair = await auth_service.register("alice@example.com", "alice", PASSWORD)

        assert pair is None
        with pytest.raises(ForbiddenError) as exc_info:
            await auth_service.login("alice@example.com", PASSWORD)
        assert exc_info.value.error_code == "email_not_verified"


class TestLogin:
    async def test_login_returns_tokens(self, auth_service, memory_store):
        user = await _register(auth_service)

        result = await auth_service.login("alice@example.com", PASSWORD)

        assert result.tokens is not None
        assert not result.requires_mfa
        assert memory_store.find_by_id(user.id).last_login_at is not None

    async def test_no_user_existence_oracle(self, auth_service):
        await _register(auth_service)

        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login("alice@example.com", "Wrong-Pass1!")

        assert unknown.value.error_code == wrong.value.error_code
        assert unknown.value.message == wrong.value.message
        assert unknown.value.detail == wrong.value.detail

    async def test_disabled_account_looks_like_bad_credentials(self, auth_service, memory_store):
        user = await _register(auth_service)
        memory_store.set_account_status(user.id, ACCOUNT_DISABLED)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@example.com", PASSWORD)

    async def test_lockout_after_threshold(self, auth_service, memory_store, settings, outbox):
        user = await _register(auth_service)

        for _ in range(settings.lockout_threshold - 1):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "Wrong-Pass1!")
        with pytest.raises(AccountLockedError):
            await auth_service.login("alice@example.com", "Wrong-Pass1!")

        assert memory_store.find_by_id(user.id).account_status == ACCOUNT_LOCKED
        assert outbox.last("account_locked")["to"] == "alice@example.com"

        # The correct password does not help while locked
        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login("alice@example.com", PASSWORD)
        assert exc_info.value.detail["retry_after"] > 0

    async def test_lock_lifts_after_cooldown(self, auth_service, memory_store, settings, clock):
        user = await _register(auth_service)
        for _ in range(settings.lockout_threshold):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                await auth_service.login("alice@example.com", "Wrong-Pass1!")

        clock.advance(settings.lockout_cooldown_minutes * 60 + 1)

        result = await auth_service.login("alice@example.com", PASSWORD)
        assert result.tokens is not None
        assert memory_store.find_by_id(user.id).failed_login_attempts == 0

    async def test_success_resets_counter(self, auth_service, memory_store, settings):
        user = await _register(auth_service)
        for _ in range(settings.lockout_threshold - 1):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login("alice@example.com", "Wrong-Pass1!")

        await auth_service.login("alice@example.com", PASSWORD)

        assert memory_store.find_by_id(user.id).failed_login_attempts == 0
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@example.com", "Wrong-Pass1!")
        assert memory_store.find_by_id(user.id).account_status == ACCOUNT_ACTIVE

    async def test_device_remembered_after_session(self, auth_service, memory_store):
        user = await _register(auth_service)
        context = RequestContext(ip="203.0.113.7", user_agent="Mozilla/5.0", device_fingerprint="fp-1")

        await auth_service.login("alice@example.com", PASSWORD, context)

        assert memory_store.get_device(user.id, "fp-1") is not None


class TestMFAGating:
    async def _enable_totp(self, auth_service, user, clock):
        setup = await auth_service.mfa.setup(user.id, "totp")
        await auth_service.mfa.verify_setup(
            user.id, setup.config.id, generate_totp(setup.secret, clock())
        )
        clock.advance(TOTP_INTERVAL)
        return setup

    async def test_login_requires_mfa(self, auth_service, clock):
        user = await _register(auth_service)
        await self._enable_totp(auth_service, user, clock)

        result = await auth_service.login("alice@example.com", PASSWORD)

        assert result.requires_mfa
        assert result.tokens is None
        assert result.mfa_token
        assert result.mfa_methods[0]["method"] == "totp"

    async def test_pending_token_is_not_an_access_token(self, auth_service, token_service, clock):
        user = await _register(auth_service)
        await self._enable_totp(auth_service, user, clock)

        result = await auth_service.login("alice@example.com", PASSWORD)

        with pytest.raises(InvalidTokenError):
            token_service.verify_access_token(result.mfa_token)

    async def test_complete_mfa_issues_tokens_once(self, auth_service, clock):
        user = await _register(auth_service)
        setup = await self._enable_totp(auth_service, user, clock)
        result = await auth_service.login("alice@example.com", PASSWORD)

        _, pair, verification = await auth_service.complete_mfa(
            result.mfa_token, generate_totp(setup.secret, clock())
        )

        assert pair.access_token
        assert verification.config_id == setup.config.id
        clock.advance(TOTP_INTERVAL)
        with pytest.raises(InvalidTokenError):
            await auth_service.complete_mfa(result.mfa_token, generate_totp(setup.secret, clock()))

    async def test_wrong_code_keeps_pending_token_usable(self, auth_service, clock):
        user = await _register(auth_service)
        setup = await self._enable_totp(auth_service, user, clock)
        result = await auth_service.login("alice@example.com", PASSWORD)

        with pytest.raises(InvalidCodeError):
            await auth_service.complete_mfa(result.mfa_token, "000000")

        _, pair, _ = await auth_service.complete_mfa(
            result.mfa_token, setup.backup_codes[0], is_backup_code=True
        )
        assert pair.refresh_token

    async def test_second_completion_does_not_spend_a_backup_code(self, auth_service, memory_store, clock):
        user = await _register(auth_service)
        setup = await self._enable_totp(auth_service, user, clock)
        result = await auth_service.login("alice@example.com", PASSWORD)
        await auth_service.complete_mfa(result.mfa_token, setup.backup_codes[0], is_backup_code=True)
        remaining = len(memory_store.get_mfa_config(setup.config.id).backup_code_hashes)

        with pytest.raises(InvalidTokenError):
            await auth_service.complete_mfa(result.mfa_token, setup.backup_codes[1], is_backup_code=True)

        assert len(memory_store.get_mfa_config(setup.config.id).backup_code_hashes) == remaining

    async def test_email_mfa_login_gets_code_through_pending_token(self, auth_service, outbox):
        user = await _register(auth_service)
        setup = await auth_service.mfa.setup(user.id, "email")
        await auth_service.mfa.challenge(user.id, config_id=setup.config.id)
        await auth_service.mfa.verify_setup(user.id, setup.config.id, outbox.last("mfa_code")["code"])
        result = await auth_service.login("alice@example.com", PASSWORD)
        assert result.requires_mfa

        challenge = await auth_service.mfa_login_challenge(result.mfa_token)

        assert challenge.method == "email"
        assert challenge.expires_at is not None
        _, pair, verification = await auth_service.complete_mfa(
            result.mfa_token, outbox.last("mfa_code")["code"]
        )
        assert pair.access_token
        assert verification.method == "email"

    async def test_login_challenge_needs_pending_token(self, auth_service, token_service):
        user = await _register(auth_service)
        pair = await token_service.issue_token_pair(user.id)

        with pytest.raises(InvalidTokenError):
            await auth_service.mfa_login_challenge(pair.access_token)


class TestStepUp:
    async def test_anomalous_login_requires_emailed_code(self, auth_service, memory_store, outbox):
        user = await _register(auth_service)
        known = RequestContext(ip="203.0.113.7", user_agent="Mozilla/5.0", device_fingerprint="fp-home")
        await auth_service.login("alice@example.com", PASSWORD, known)

        stranger = RequestContext(ip="198.51.100.9", user_agent="Mozilla/5.0", device_fingerprint="fp-new")
        result = await auth_service.login("alice@example.com", PASSWORD, stranger)

        assert result.requires_step_up
        assert result.tokens is None
        assert set(result.risk.reasons) == {"new_device", "new_ip"}
        code = outbox.last("mfa_code")["code"]

        _, pair = await auth_service.complete_step_up(
            result.step_up_token, code, RequestContext(ip="198.51.100.9")
        )

        assert pair.access_token
        device = memory_store.get_device(user.id, "fp-new")
        assert device is not None and device.trusted

    async def test_wrong_step_up_code(self, auth_service):
        await _register(auth_service)
        result = await auth_service.login(
            "alice@example.com",
            PASSWORD,
            RequestContext(user_agent="python-requests selenium"),
        )

        with pytest.raises(InvalidCodeError):
            await auth_service.complete_step_up(result.step_up_token, "000000")


class TestTokensAndPasswords:
    async def test_refresh_rotates(self, auth_service):
        _, pair = await auth_service.register("alice@example.com", "alice", PASSWORD)

        new_pair = await auth_service.refresh(pair.refresh_token)

        assert new_pair.refresh_token != pair.refresh_token
        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(pair.refresh_token)
        assert await auth_service.refresh(new_pair.refresh_token)

    async def test_refresh_refused_for_locked_account(self, auth_service, memory_store):
        user, pair = await auth_service.register("alice@example.com", "alice", PASSWORD)
        memory_store.set_account_status(user.id, ACCOUNT_LOCKED)

        with pytest.raises(AccountLockedError):
            await auth_service.refresh(pair.refresh_token)

    async def test_logout_revokes_only_presented_token(self, auth_service):
        _, first = await auth_service.register("alice@example.com", "alice", PASSWORD)
        second = (await auth_service.login("alice@example.com", PASSWORD)).tokens

        assert await auth_service.logout(first.refresh_token)

        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(first.refresh_token)
        assert await auth_service.refresh(second.refresh_token)

    async def test_change_password_revokes_sessions(self, auth_service):
        user, pair = await auth_service.register("alice@example.com", "alice", PASSWORD)

        revoked = await auth_service.change_password(user.id, PASSWORD, "N3w-Passphrase!")

        assert revoked == 1
        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(pair.refresh_token)
        assert (await auth_service.login("alice@example.com", "N3w-Passphrase!")).tokens

    async def test_change_password_checks_current(self, auth_service):
        user = await _register(auth_service)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(user.id, "Wrong-Pass1!", "N3w-Passphrase!")

    async def test_change_password_rejects_reuse(self, auth_service):
        user = await _register(auth_service)

        with pytest.raises(WeakPasswordError):
            await auth_service.change_password(user.id, PASSWORD, PASSWORD)

    async def test_password_reset_flow(self, auth_service, outbox):
        _, pair = await auth_service.register("alice@example.com", "alice", PASSWORD)

        await auth_service.request_password_reset("alice@example.com")
        token = outbox.last("password_reset")["token"]
        await auth_service.reset_password(token, "R3set-Passphrase!")

        assert (await auth_service.login("alice@example.com", "R3set-Passphrase!")).tokens
        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(pair.refresh_token)
        with pytest.raises(VerificationExpiredError):
            await auth_service.reset_password(token, "An0ther-Passphrase!")

    async def test_password_reset_unknown_email_is_silent(self, auth_service, outbox):
        await auth_service.request_password_reset("nobody@example.com")

        assert outbox.last("password_reset") is None

    async def test_reset_token_expires(self, auth_service, outbox, clock, settings):
        await _register(auth_service)
        await auth_service.request_password_reset("alice@example.com")
        token = outbox.last("password_reset")["token"]

        clock.advance(settings.password_reset_ttl_minutes * 60 + 1)

        with pytest.raises(VerificationExpiredError):
            await auth_service.reset_password(token, "R3set-Passphrase!")


class TestEmailVerificationAndAdmin:
    async def test_verify_email(self, auth_service, outbox):
        user = await _register(auth_service)
        token = outbox.last("email_verification")["token"]

        verified = await auth_service.verify_email(token)

        assert verified.email_verified
        assert not await auth_service.request_email_verification(user.id)
        with pytest.raises(VerificationExpiredError):
            await auth_service.verify_email(token)

    async def test_unlock_requires_admin(self, auth_service, memory_store):
        user = await _register(auth_service)
        other = await _register(auth_service, "bob@example.com", "bob")
        memory_store.set_account_status(user.id, ACCOUNT_LOCKED)

        with pytest.raises(InsufficientPermissionsError):
            await auth_service.unlock_account(other.id, user.id)

    async def test_admin_unlock(self, auth_service, memory_store):
        user = await _register(auth_service)
        pwd_hash, algo = auth_service.hash_password(PASSWORD)
        admin = memory_store.create_user(
            "admin@example.com", "admin", pwd_hash, role="admin", password_algo=algo
        )
        memory_store.set_account_status(user.id, ACCOUNT_LOCKED)

        unlocked = await auth_service.unlock_account(admin.id, user.id)

        assert unlocked.account_status == ACCOUNT_ACTIVE
        assert (await auth_service.login("alice@example.com", PASSWORD)).tokens


class TestSessionsAndDevices:
    async def test_list_marks_current_session(self, auth_service, token_service):
        user, first = await auth_service.register("alice@example.com", "alice", PASSWORD)
        context = RequestContext(ip="203.0.113.7", user_agent="Mozilla/5.0", device_fingerprint="fp-1")
        second = (await auth_service.login("alice@example.com", PASSWORD, context)).tokens
        current = token_service.verify_access_token(second.access_token).claims["sid"]

        sessions = auth_service.list_sessions(user.id, current)

        assert len(sessions) == 2
        assert [s["session_id"] for s in sessions if s["current"]] == [current]
        assert any(s["ip_addr"] == "203.0.113.7" for s in sessions)
        assert first.refresh_token

    async def test_revoke_session_ends_that_refresh_token(self, auth_service, token_service):
        user, pair = await auth_service.register("alice@example.com", "alice", PASSWORD)
        sid = token_service.verify_access_token(pair.access_token).claims["sid"]

        await auth_service.revoke_session(user.id, sid)

        assert auth_service.list_sessions(user.id) == []
        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(pair.refresh_token)
        with pytest.raises(NotFoundError):
            await auth_service.revoke_session(user.id, sid)

    async def test_cannot_revoke_someone_elses_session(self, auth_service, token_service):
        _, pair = await auth_service.register("alice@example.com", "alice", PASSWORD)
        bob = await _register(auth_service, "bob@example.com", "bob")
        sid = token_service.verify_access_token(pair.access_token).claims["sid"]

        with pytest.raises(NotFoundError):
            await auth_service.revoke_session(bob.id, sid)

        assert await auth_service.refresh(pair.refresh_token)

    async def test_revoke_all_keeps_current(self, auth_service, token_service):
        user, first = await auth_service.register("alice@example.com", "alice", PASSWORD)
        second = (await auth_service.login("alice@example.com", PASSWORD)).tokens
        third = (await auth_service.login("alice@example.com", PASSWORD)).tokens
        keep = token_service.verify_access_token(third.access_token).claims["sid"]

        revoked = await auth_service.revoke_all_sessions(user.id, keep)

        assert revoked == 2
        assert [s["session_id"] for s in auth_service.list_sessions(user.id)] == [keep]
        for pair in (first, second):
            with pytest.raises(TokenRevokedError):
                await auth_service.refresh(pair.refresh_token)

    async def test_device_trust_and_removal(self, auth_service, memory_store):
        user = await _register(auth_service)
        context = RequestContext(ip="203.0.113.7", user_agent="Mozilla/5.0", device_fingerprint="fp-1")
        await auth_service.login("alice@example.com", PASSWORD, context)

        device = await auth_service.set_device_trust(user.id, "fp-1", True)

        assert device.trusted
        assert [d.fingerprint for d in auth_service.list_devices(user.id)] == ["fp-1"]
        await auth_service.remove_device(user.id, "fp-1")
        assert auth_service.list_devices(user.id) == []
        assert memory_store.get_device(user.id, "fp-1") is None

    async def test_unknown_device(self, auth_service):
        user = await _register(auth_service)

        with pytest.raises(NotFoundError):
            await auth_service.set_device_trust(user.id, "fp-missing", True)
        with pytest.raises(NotFoundError):
            await auth_service.remove_device(user.id, "fp-missing")


class TestEndToEnd:
    async def test_register_login_refresh_and_lockout(self, auth_service, clock, settings):
        await auth_service.register("alice@example.com", "alice", PASSWORD)

        result = await auth_service.login("alice@example.com", PASSWORD)
        pair = result.tokens
        assert abs(pair.access_expires_at.timestamp() - clock() - 15 * 60) < 2
        assert abs(pair.refresh_expires_at.timestamp() - clock() - 7 * 24 * 3600) < 2

        rotated = await auth_service.refresh(pair.refresh_token)
        with pytest.raises(TokenRevokedError):
            await auth_service.refresh(pair.refresh_token)
        assert await auth_service.refresh(rotated.refresh_token)

        await auth_service.register("bob@example.com", "bob", PASSWORD)
        for _ in range(settings.lockout_threshold):
            with pytest.raises((InvalidCredentialsError, AccountLockedError)):
                await auth_service.login("bob@example.com", "Wrong-Pass1!")
        with pytest.raises(AccountLockedError):
            await auth_service.login("bob@example.com", PASSWORD)
