"""Unit tests for CredentialGate.

Covers registration, email and phone login, brute-force lockout, refresh
token rotation, logout and password changes.
"""

import asyncio
import json

import pytest

from lexgate.service.auth import CredentialGate
from lexgate.service.email import LogEmailSender
from lexgate.service.errors import ErrorKind, ServiceError
from lexgate.service.passwords import PasswordVault
from lexgate.service.tokens import TokenCodec
from lexgate.service.verification import LogSmsSender, VerificationCodeManager
from lexgate.storage import keys
from lexgate.storage.memory import MemoryStore
from lexgate.storage.models import UserStatus
from lexgate.storage.redis_cache import MemoryCache

PASSWORD = "Str0ng!Passw0rd"
EMAIL = "alice@example.com"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def tokens():
    return TokenCodec(
        "unit-test-signing-key-0123456789abcdef",
        issuer="lexgate",
        access_ttl_seconds=900,
    )


@pytest.fixture
def verification(cache):
    return VerificationCodeManager(cache, LogEmailSender(), sms_sender=LogSmsSender())


@pytest.fixture
def gate(store, cache, tokens, verification):
    return CredentialGate(
        store,
        cache,
        tokens,
        PasswordVault(1, memory_cost_kib=1024),
        verification=verification,
        refresh_ttl_seconds=3600,
        max_login_attempts=3,
        lockout_seconds=600,
        default_token_quota=500,
    )


async def _issue_code(gate, cache, identifier, purpose):
    await gate.verification.send_code(identifier, purpose)
    return await cache.get(keys.verify_code_key(purpose, identifier))


class TestRegistration:
    async def test_register_creates_active_user(self, gate):
        user = await gate.register("Alice@Example.com", PASSWORD, "Alice")
        assert user.email == EMAIL
        assert user.status == UserStatus.ACTIVE.value
        assert user.token_quota == 500
        assert user.password_hash != PASSWORD
        assert gate.vault.verify_password(PASSWORD, user.password_hash)

    async def test_duplicate_email(self, gate):
        await gate.register(EMAIL, PASSWORD, "Alice")
        with pytest.raises(ServiceError) as exc:
            await gate.register(EMAIL, PASSWORD, "Alice Again")
        assert exc.value.kind == ErrorKind.EMAIL_EXISTS

    async def test_duplicate_phone_is_conflict(self, gate):
        await gate.register(EMAIL, PASSWORD, "Alice", phone="+15550100")
        with pytest.raises(ServiceError) as exc:
            await gate.register("bob@example.com", PASSWORD, "Bob", phone="+15550100")
        assert exc.value.kind == ErrorKind.CONFLICT

    async def test_concurrent_registration_single_winner(self, gate, store):
        async def attempt():
            try:
                return await gate.register(EMAIL, PASSWORD, "Alice")
            except ServiceError as exc:
                return exc

        results = await asyncio.gather(*(attempt() for _ in range(5)))
        created = [r for r in results if not isinstance(r, ServiceError)]
        assert len(created) == 1
        assert all(r.kind == ErrorKind.EMAIL_EXISTS for r in results if isinstance(r, ServiceError))
        assert len(store.list_users()) == 1

    @pytest.mark.parametrize(
        "password,kind",
        [("short1!", ErrorKind.TOO_SHORT), ("nouppercase1!", ErrorKind.TOO_WEAK)],
    )
    async def test_weak_password_creates_nothing(self, gate, store, password, kind):
        with pytest.raises(ServiceError) as exc:
            await gate.register(EMAIL, password, "Alice")
        assert exc.value.kind == kind
        assert store.get_user_by_email(EMAIL) is None

    async def test_register_with_code(self, gate, cache):
        code = await _issue_code(gate, cache, EMAIL, "register")
        user = await gate.register_with_code(EMAIL, code, PASSWORD, "Alice")
        assert user.email == EMAIL

    async def test_weak_password_does_not_burn_code(self, gate, cache):
        code = await _issue_code(gate, cache, EMAIL, "register")
        with pytest.raises(ServiceError):
            await gate.register_with_code(EMAIL, code, "weak", "Alice")
        await gate.register_with_code(EMAIL, code, PASSWORD, "Alice")

    async def test_register_with_wrong_code(self, gate, cache):
        code = await _issue_code(gate, cache, EMAIL, "register")
        wrong = "000000" if code != "000000" else "111111"
        with pytest.raises(ServiceError) as exc:
            await gate.register_with_code(EMAIL, wrong, PASSWORD, "Alice")
        assert exc.value.kind == ErrorKind.CODE_INVALID


class TestLogin:
    async def test_login_returns_pair(self, gate, tokens):
        user = await gate.register(EMAIL, PASSWORD, "Alice")
        result = await gate.login_by_email(EMAIL, PASSWORD)
        assert result.user.id == user.id
        assert result.user.last_login_at is not None
        assert result.token.expires_in == 900
        assert result.token.token_type == "Bearer"
        assert tokens.parse_token(result.token.access_token).user_id == user.id

    async def test_unknown_email_and_wrong_password_look_alike(self, gate):
        await gate.register(EMAIL, PASSWORD, "Alice")
        with pytest.raises(ServiceError) as unknown:
            await gate.login_by_email("nobody@example.com", PASSWORD)
        with pytest.raises(ServiceError) as wrong:
            await gate.login_by_email(EMAIL, "Wr0ng!Password")
        assert unknown.value.kind == wrong.value.kind == ErrorKind.INVALID_CREDENTIALS
        assert unknown.value.message == wrong.value.message

    async def test_lockout_after_max_attempts(self, gate, clock):
        await gate.register(EMAIL, PASSWORD, "Alice")
        for _ in range(3):
            with pytest.raises(ServiceError) as exc:
                await gate.login_by_email(EMAIL, "Wr0ng!Password")
            assert exc.value.kind == ErrorKind.INVALID_CREDENTIALS
        # Correct password is refused while locked
        with pytest.raises(ServiceError) as exc:
            await gate.login_by_email(EMAIL, PASSWORD)
        assert exc.value.kind == ErrorKind.ACCOUNT_LOCKED
        clock.advance(601)
        assert (await gate.login_by_email(EMAIL, PASSWORD)).user.email == EMAIL

    async def test_success_resets_failure_counter(self, gate, cache):
        await gate.register(EMAIL, PASSWORD, "Alice")
        for _ in range(2):
            with pytest.raises(ServiceError):
                await gate.login_by_email(EMAIL, "Wr0ng!Password")
        await gate.login_by_email(EMAIL, PASSWORD)
        assert await cache.get(keys.login_attempts_key(EMAIL)) is None

    async def test_unknown_email_also_counts_toward_lockout(self, gate, cache):
        with pytest.raises(ServiceError):
            await gate.login_by_email("ghost@example.com", PASSWORD)
        assert await cache.get(keys.login_attempts_key("ghost@example.com")) == "1"

    async def test_disabled_account(self, gate, store):
        user = await gate.register(EMAIL, PASSWORD, "Alice")
        store.update_user_fields(user.id, {"status": UserStatus.BANNED.value})
        with pytest.raises(ServiceError) as exc:
            await gate.login_by_email(EMAIL, PASSWORD)
        assert exc.value.kind == ErrorKind.ACCOUNT_DISABLED

    async def test_outdated_hash_is_upgraded_on_login(self, gate, store):
        older_params = PasswordVault(2, memory_cost_kib=1024)
        user = store.create_user(EMAIL, older_params.hash_password(PASSWORD), "Alice")
        await gate.login_by_email(EMAIL, PASSWORD)
        upgraded = store.get_user(user.id).password_hash
        assert upgraded != user.password_hash
        assert not gate.vault.needs_rehash(upgraded)

    async def test_login_by_phone(self, gate, cache):
        user = await gate.register(EMAIL, PASSWORD, "Alice", phone="+15550100")
        code = await _issue_code(gate, cache, "+15550100", "login")
        result = await gate.login_by_phone("+1 555-0100", code)
        assert result.user.id == user.id

    async def test_login_by_phone_unknown_number(self, gate, cache):
        code = await _issue_code(gate, cache, "+15550199", "login")
        with pytest.raises(ServiceError) as exc:
            await gate.login_by_phone("+15550199", code)
        assert exc.value.kind == ErrorKind.INVALID_CREDENTIALS


class TestRefreshAndLogout:
    async def test_refresh_rotates_and_is_single_use(self, gate):
        await gate.register(EMAIL, PASSWORD, "Alice")
        login = await gate.login_by_email(EMAIL, PASSWORD)
        rotated = await gate.refresh_token(login.token.refresh_token)
        assert rotated.refresh_token != login.token.refresh_token
        with pytest.raises(ServiceError) as exc:
            await gate.refresh_token(login.token.refresh_token)
        assert exc.value.kind == ErrorKind.REFRESH_TOKEN_INVALID
        await gate.refresh_token(rotated.refresh_token)

    async def test_concurrent_refresh_single_winner(self, gate):
        await gate.register(EMAIL, PASSWORD, "Alice")
        login = await gate.login_by_email(EMAIL, PASSWORD)

        async def redeem():
            try:
                return await gate.refresh_token(login.token.refresh_token)
            except ServiceError as exc:
                return exc

        results = await asyncio.gather(*(redeem() for _ in range(5)))
        assert sum(not isinstance(r, ServiceError) for r in results) == 1

    async def test_refresh_record_format(self, gate, cache):
        user = await gate.register(EMAIL, PASSWORD, "Alice")
        login = await gate.login_by_email(EMAIL, PASSWORD)
        raw = await cache.get(keys.refresh_key(login.token.refresh_token))
        record = json.loads(raw)
        assert record["userId"] == user.id
        assert "createdAt" in record
        assert await cache.ttl(keys.refresh_key(login.token.refresh_token)) == pytest.approx(3600)

    async def test_refresh_expires(self, gate, clock):
        await gate.register(EMAIL, PASSWORD, "Alice")
        login = await gate.login_by_email(EMAIL, PASSWORD)
        clock.advance(3601)
        with pytest.raises(ServiceError) as exc:
            await gate.refresh_token(login.token.refresh_token)
        assert exc.value.kind == ErrorKind.REFRESH_TOKEN_INVALID

    async def test_refresh_for_disabled_user(self, gate, store):
        user = await gate.register(EMAIL, PASSWORD, "Alice")
        login = await gate.login_by_email(EMAIL, PASSWORD)
        store.update_user_fields(user.id, {"status": UserStatus.INACTIVE.value})
        with pytest.raises(ServiceError) as exc:
            await gate.refresh_token(login.token.refresh_token)
        assert exc.value.kind == ErrorKind.ACCOUNT_DISABLED

    async def test_unknown_refresh_token(self, gate):
        with pytest.raises(ServiceError) as exc:
            await gate.refresh_token("never-issued")
        assert exc.value.kind == ErrorKind.REFRESH_TOKEN_INVALID

    async def test_logout_blacklists_jti(self, gate, cache, tokens):
        await gate.register(EMAIL, PASSWORD, "Alice")
        login = await gate.login_by_email(EMAIL, PASSWORD)
        await gate.logout(login.token.access_token)
        jti = tokens.parse_token(login.token.access_token).jti
        assert await cache.exists(keys.blacklist_key(jti))
        assert await cache.ttl(keys.blacklist_key(jti)) == pytest.approx(3600)

    async def test_logout_rejects_forged_token(self, gate):
        with pytest.raises(ServiceError):
            await gate.logout("not.a.token")


class TestPasswordManagement:
    async def test_reset_password(self, gate, cache):
        await gate.register(EMAIL, PASSWORD, "Alice")
        code = await _issue_code(gate, cache, EMAIL, "reset_password")
        await gate.reset_password(EMAIL, code, "N3w!Password")
        await gate.login_by_email(EMAIL, "N3w!Password")
        with pytest.raises(ServiceError):
            await gate.login_by_email(EMAIL, PASSWORD)

    async def test_reset_unknown_email_reports_invalid_code(self, gate, cache):
        code = await _issue_code(gate, cache, "ghost@example.com", "reset_password")
        with pytest.raises(ServiceError) as exc:
            await gate.reset_password("ghost@example.com", code, "N3w!Password")
        assert exc.value.kind == ErrorKind.CODE_INVALID

    async def test_reset_clears_lockout(self, gate, cache):
        await gate.register(EMAIL, PASSWORD, "Alice")
        for _ in range(3):
            with pytest.raises(ServiceError):
                await gate.login_by_email(EMAIL, "Wr0ng!Password")
        code = await _issue_code(gate, cache, EMAIL, "reset_password")
        await gate.reset_password(EMAIL, code, "N3w!Password")
        await gate.login_by_email(EMAIL, "N3w!Password")

    async def test_change_password(self, gate):
        user = await gate.register(EMAIL, PASSWORD, "Alice")
        with pytest.raises(ServiceError) as exc:
            await gate.change_password(user.id, "Wr0ng!Password", "N3w!Password")
        assert exc.value.kind == ErrorKind.INVALID_CREDENTIALS
        with pytest.raises(ServiceError) as exc:
            await gate.change_password(user.id, PASSWORD, "weak")
        assert exc.value.kind == ErrorKind.TOO_SHORT
        await gate.change_password(user.id, PASSWORD, "N3w!Password")
        await gate.login_by_email(EMAIL, "N3w!Password")

    async def test_get_current_user_missing(self, gate):
        with pytest.raises(ServiceError) as exc:
            await gate.get_current_user("missing")
        assert exc.value.kind == ErrorKind.USER_NOT_FOUND
