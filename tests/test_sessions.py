"""
tests/test_sessions.py -- Token Service: issue, rotate, revoke, verify.

The concurrency test runs two threads against one SQLite file with a barrier
so both present the same refresh token at the same moment. Exactly one may
succeed; that is the property that makes a stolen refresh token usable once.
"""

from __future__ import annotations

import threading

import pytest

from auth.sessions import ALL, TokenService
from auth.tokens import create_access_token, decode_access_token, hash_token
from core.errors import AccountInactive, InvalidToken, TokenExpired, TokenMalformed


class TestIssue:
    def test_issue_stores_only_the_hash(self, services, make_user) -> None:
        user = make_user()
        pair = services.tokens.issue(user)
        rows = services.store.list_refresh_tokens(user.id)
        assert len(rows) == 1
        assert rows[0].token_hash == hash_token(pair.refresh_token, services.settings)
        assert rows[0].token_hash != pair.refresh_token
        assert pair.expires_in == 900
        assert pair.refresh_expires_in == 3600
        assert pair.token_type == "bearer"

    def test_access_token_claims(self, services, make_user) -> None:
        user = make_user(admin=True)
        pair = services.tokens.issue(user)
        payload = decode_access_token(pair.access_token, services.settings)
        assert payload["user_id"] == user.id
        assert payload["email"] == "ada@acme.io"
        assert payload["roles"] == ["user", "admin"]

    def test_cap_evicts_oldest(self, services, make_user) -> None:
        """max_refresh_tokens_per_user=3: the fourth login pushes out the first."""
        user = make_user()
        pairs = []
        for _ in range(4):
            pairs.append(services.tokens.issue(user))
            services.clock.advance(1)
        assert len(services.store.list_refresh_tokens(user.id)) == 3
        with pytest.raises(InvalidToken):
            services.tokens.refresh(pairs[0].refresh_token)
        assert services.tokens.refresh(pairs[3].refresh_token).refresh_token


class TestRefresh:
    def test_rotation_is_single_use(self, services, make_user) -> None:
        user = make_user()
        first = services.tokens.issue(user)
        second = services.tokens.refresh(first.refresh_token)
        assert second.refresh_token != first.refresh_token
        with pytest.raises(InvalidToken):
            services.tokens.refresh(first.refresh_token)
        # The replacement still works.
        services.tokens.refresh(second.refresh_token)

    def test_unknown_token(self, services) -> None:
        with pytest.raises(InvalidToken):
            services.tokens.refresh("not-a-token")

    def test_expired_token_is_rejected_and_deleted(self, services, make_user) -> None:
        user = make_user()
        pair = services.tokens.issue(user)
        services.clock.advance(3601)
        with pytest.raises(InvalidToken, match="expired"):
            services.tokens.refresh(pair.refresh_token)
        assert services.store.list_refresh_tokens(user.id) == []

    def test_inactive_owner(self, services, make_user) -> None:
        user = make_user()
        pair = services.tokens.issue(user)
        with services.store.transaction() as tx:
            loaded = tx.find_by_id(user.id)
            loaded.is_active = False
            tx.save(loaded)
        with pytest.raises(AccountInactive):
            services.tokens.refresh(pair.refresh_token)

    def test_concurrent_refresh_only_one_wins(self, services, make_user) -> None:
        """Two threads race the same refresh token; one pair comes back, one InvalidToken."""
        user = make_user()
        pair = services.tokens.issue(user)
        barrier = threading.Barrier(2)
        results: list[str] = []
        lock = threading.Lock()

        def attempt() -> None:
            barrier.wait()
            try:
                services.tokens.refresh(pair.refresh_token)
                outcome = "ok"
            except InvalidToken:
                outcome = "invalid"
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        assert sorted(results) == ["invalid", "ok"]
        assert len(services.store.list_refresh_tokens(user.id)) == 1


class TestRevoke:
    def test_revoke_one(self, services, make_user) -> None:
        user = make_user()
        keep = services.tokens.issue(user)
        drop = services.tokens.issue(user)
        assert services.tokens.revoke(user.id, drop.refresh_token) == 1
        assert services.tokens.revoke(user.id, drop.refresh_token) == 0
        with pytest.raises(InvalidToken):
            services.tokens.refresh(drop.refresh_token)
        services.tokens.refresh(keep.refresh_token)

    def test_revoke_all(self, services, make_user) -> None:
        user = make_user()
        services.tokens.issue(user)
        services.tokens.issue(user)
        assert services.tokens.revoke(user.id, ALL) == 2
        assert services.store.list_refresh_tokens(user.id) == []

    def test_revoke_other_users_token_is_noop(self, services, make_user) -> None:
        owner = make_user(email="owner@acme.io")
        other = make_user(email="other@acme.io")
        pair = services.tokens.issue(owner)
        assert services.tokens.revoke(other.id, pair.refresh_token) == 0
        services.tokens.refresh(pair.refresh_token)


class TestVerifyAccess:
    def test_valid(self, services, make_user) -> None:
        user = make_user()
        pair = services.tokens.issue(user)
        assert services.tokens.verify_access(pair.access_token)["user_id"] == user.id

    def test_expired(self, services, make_user) -> None:
        """Access tokens carry a real exp; one issued an hour ago with 60 s life is expired."""
        user = make_user()
        services.clock.advance(-3600)
        token = create_access_token(user, services.settings, now=services.clock(), expire_seconds=60)
        with pytest.raises(TokenExpired):
            services.tokens.verify_access(token)

    def test_wrong_key(self, services, make_user, settings) -> None:
        user = make_user()
        other = settings.model_copy(update={"secret_key": "another-secret-key-that-is-long-enough-1234"})
        token = create_access_token(user, other)
        with pytest.raises(TokenMalformed):
            services.tokens.verify_access(token)

    def test_garbage(self, services) -> None:
        with pytest.raises(TokenMalformed):
            services.tokens.verify_access("not.a.jwt")

    def test_service_defaults_to_get_settings(self, store, make_user) -> None:
        user = make_user()
        tokens = TokenService(store)
        pair = tokens.issue(user)
        assert tokens.verify_access(pair.access_token)["sub"] == str(user.id)
