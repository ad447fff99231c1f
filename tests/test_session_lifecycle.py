"""Login, logout and registration."""

import pytest

from harbinger.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    StoreUnavailableError,
)
from harbinger.storage.models import User

SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"
PASSWORD = "wonderland-42"


@pytest.fixture
def alice(store, lifecycle):
    return store.add_user(
        User(
            id=7,
            username="alice",
            email="alice@example.com",
            password_hash=lifecycle.hash_password(PASSWORD),
        )
    )


class TestLogin:
    async def test_login_by_username_issues_token(self, lifecycle, codec, alice):
        token = await lifecycle.login("alice", PASSWORD)
        claims = codec.verify(token, SECRET)
        assert claims.subject_id == 7
        assert claims.username == "alice"

    async def test_login_by_email(self, lifecycle, codec, alice):
        token = await lifecycle.login("alice@example.com", PASSWORD)
        assert codec.verify(token, SECRET).subject_id == 7

    async def test_wrong_password_and_unknown_user_look_the_same(self, lifecycle, alice):
        with pytest.raises(InvalidCredentialsError) as wrong:
            await lifecycle.login("alice", "not-the-password")
        with pytest.raises(InvalidCredentialsError) as unknown:
            await lifecycle.login("mallory", "not-the-password")
        assert wrong.value.message == unknown.value.message
        assert wrong.value.error_code == unknown.value.error_code

    async def test_unknown_user_still_runs_a_verification(self, store, cache, codec, fast_hasher):
        from harbinger.service.auth import SessionLifecycle

        calls = []

        class CountingHasher(type(fast_hasher)):
            def verify(self, hash, password):
                calls.append(hash)
                return super().verify(hash, password)

        counting = CountingHasher(time_cost=1, memory_cost=8, parallelism=1)
        lifecycle = SessionLifecycle(store, cache, codec, SECRET, password_hasher=counting)
        with pytest.raises(InvalidCredentialsError):
            await lifecycle.login("nobody", "whatever-password")
        assert len(calls) == 1

    async def test_login_writes_no_session_marker(self, lifecycle, redis_client, alice):
        await lifecycle.login("alice", PASSWORD)
        assert not any(key.startswith("Session:") for key in redis_client._data)


class TestLogout:
    async def test_blacklist_ttl_covers_remaining_lifetime(
        self, lifecycle, codec, cache, redis_client, alice
    ):
        token = await lifecycle.login("alice", PASSWORD)
        claims = codec.verify(token, SECRET)

        result = await lifecycle.logout(token, claims)

        assert result.blacklist_ttl == 24 * 3600
        assert await cache.is_token_blacklisted(token) is True
        assert await redis_client.ttl(token) == 24 * 3600

    async def test_blacklist_ttl_never_below_floor(self, lifecycle, codec, clock, alice):
        token = await lifecycle.login("alice", PASSWORD)
        claims = codec.verify(token, SECRET)
        clock.advance(codec.ttl.total_seconds() - 60)

        result = await lifecycle.logout(token, claims)
        assert result.blacklist_ttl == 300

    async def test_logout_purges_session_markers(self, lifecycle, codec, cache, alice):
        for index in range(3):
            await cache.mark_session(7, f"s{index}", 3600)
        token = await lifecycle.login("alice", PASSWORD)

        result = await lifecycle.logout(token, codec.verify(token, SECRET))
        assert result.sessions_purged == 3
        assert result.purge_complete is True

    async def test_blacklist_failure_fails_logout(self, lifecycle, codec, redis_client, alice):
        token = await lifecycle.login("alice", PASSWORD)
        redis_client.fail_ops.add("set")

        with pytest.raises(StoreUnavailableError):
            await lifecycle.logout(token, codec.verify(token, SECRET))

    async def test_purge_failure_is_logged_not_raised(
        self, lifecycle, codec, cache, redis_client, alice
    ):
        for index in range(5):
            await cache.mark_session(7, f"s{index}", 3600)
        token = await lifecycle.login("alice", PASSWORD)
        redis_client.fail_delete_after = 1

        result = await lifecycle.logout(token, codec.verify(token, SECRET))

        assert result.purge_complete is False
        assert result.sessions_purged == 2
        assert await cache.is_token_blacklisted(token) is True


class TestRegister:
    async def test_register_hashes_password(self, lifecycle, store):
        user = await lifecycle.register("bob", "bob@example.com", "builder-1234")
        stored = store.get_user(user.id)
        assert stored.password_hash != "builder-1234"
        assert stored.password_hash.startswith("$argon2id$")
        assert lifecycle.verify_password(stored.password_hash, "builder-1234")

    async def test_duplicate_username_conflicts(self, lifecycle):
        await lifecycle.register("bob", "bob@example.com", "builder-1234")
        with pytest.raises(ConflictError):
            await lifecycle.register("bob", "other@example.com", "builder-1234")

    async def test_duplicate_email_conflicts(self, lifecycle):
        await lifecycle.register("bob", "bob@example.com", "builder-1234")
        with pytest.raises(ConflictError):
            await lifecycle.register("robert", "bob@example.com", "builder-1234")
