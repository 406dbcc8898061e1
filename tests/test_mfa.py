"""
tests/test_mfa.py -- TOTP primitives, MFA challenge completion, and enrollment.

Codes are generated with totp_code() at the injected clock's time, the same
way an authenticator app would at that moment.
"""

from __future__ import annotations

import pytest

from auth.mfa import generate_backup_codes, provisioning_uri, random_secret, totp_code, totp_matches
from auth.tokens import hash_backup_code
from core.errors import AlreadyExists, InvalidCredentials, InvalidToken, NotFound, ValidationFailed

PASSWORD = "P@ssw0rd1"


def _enable_mfa(services, user) -> list[str]:
    """Run setup + enable for the user and return the plain backup codes."""
    enrollment = services.mfa.setup(user.id)
    return services.mfa.enable(user.id, totp_code(enrollment.secret, services.clock()))


def _ticket(services, email: str = "ada@acme.io") -> str:
    result = services.orchestrator.login(email, PASSWORD)
    assert result.mfa_required
    return result.mfa_ticket


class TestTotp:
    def test_current_code_matches(self, clock) -> None:
        secret = random_secret()
        assert totp_matches(secret, totp_code(secret, clock()), clock())

    def test_window_allows_one_step_of_skew(self, clock) -> None:
        secret = random_secret()
        code = totp_code(secret, clock())
        clock.advance(30)
        assert totp_matches(secret, code, clock(), window=1)
        clock.advance(60)
        assert not totp_matches(secret, code, clock(), window=1)

    def test_rejects_non_numeric(self, clock) -> None:
        assert not totp_matches(random_secret(), "abcdef", clock())
        assert not totp_matches(random_secret(), "12345", clock())

    def test_secret_is_base32(self) -> None:
        secret = random_secret()
        assert len(secret) == 32
        assert set(secret) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZ234567")

    def test_provisioning_uri(self) -> None:
        uri = provisioning_uri(random_secret(), "ada@acme.io", "Passgate")
        assert uri.startswith("otpauth://totp/")
        assert "issuer=Passgate" in uri

    def test_backup_codes_are_hashed(self) -> None:
        codes, hashes = generate_backup_codes(4)
        assert len(set(codes)) == 4
        assert hashes == [hash_backup_code(c) for c in codes]
        assert all(len(c) == 10 for c in codes)


class TestEnrollment:
    def test_setup_then_enable(self, services, make_user) -> None:
        user = make_user()
        codes = _enable_mfa(services, user)
        stored = services.store.get_by_id(user.id)
        assert stored.is_mfa_enabled
        assert len(codes) == 4
        assert stored.mfa_backup_codes == [hash_backup_code(c) for c in codes]

    def test_enable_without_setup(self, services, make_user) -> None:
        user = make_user()
        with pytest.raises(ValidationFailed):
            services.mfa.enable(user.id, "123456")

    def test_enable_with_wrong_code(self, services, make_user) -> None:
        user = make_user()
        enrollment = services.mfa.setup(user.id)
        wrong = "000000" if totp_code(enrollment.secret, services.clock()) != "000000" else "111111"
        with pytest.raises(InvalidCredentials):
            services.mfa.enable(user.id, wrong)
        assert not services.store.get_by_id(user.id).is_mfa_enabled

    def test_setup_when_enabled(self, services, make_user) -> None:
        user = make_user(mfa=True)
        with pytest.raises(AlreadyExists):
            services.mfa.setup(user.id)

    def test_setup_unknown_user(self, services) -> None:
        with pytest.raises(NotFound):
            services.mfa.setup(999)

    def test_disable_needs_password_and_code(self, services, make_user) -> None:
        user = make_user()
        _enable_mfa(services, user)
        secret = services.store.get_by_id(user.id).mfa_secret
        with pytest.raises(InvalidCredentials):
            services.mfa.disable(user.id, "wrong", totp_code(secret, services.clock()))
        services.mfa.disable(user.id, PASSWORD, totp_code(secret, services.clock()))
        stored = services.store.get_by_id(user.id)
        assert not stored.is_mfa_enabled
        assert stored.mfa_secret is None
        assert stored.mfa_backup_codes == []

    def test_disable_when_not_enabled(self, services, make_user) -> None:
        user = make_user()
        with pytest.raises(ValidationFailed):
            services.mfa.disable(user.id, PASSWORD, "123456")


class TestChallenge:
    def test_complete_with_totp(self, services, make_user) -> None:
        user = make_user()
        _enable_mfa(services, user)
        ticket = _ticket(services)
        secret = services.store.get_by_id(user.id).mfa_secret
        pair = services.mfa.complete(ticket, totp_code(secret, services.clock()))
        assert pair.access_token
        assert services.store.get_by_id(user.id).last_login_at is not None
        # Ticket is single use.
        with pytest.raises(InvalidToken):
            services.mfa.complete(ticket, totp_code(secret, services.clock()))

    def test_backup_code_is_consumed(self, services, make_user) -> None:
        user = make_user()
        codes = _enable_mfa(services, user)
        services.mfa.complete(_ticket(services), codes[0])
        assert len(services.store.get_by_id(user.id).mfa_backup_codes) == 3
        with pytest.raises(InvalidCredentials):
            services.mfa.complete(_ticket(services), codes[0])

    def test_wrong_code_counts_attempts_until_ticket_dies(self, services, make_user) -> None:
        """mfa_ticket_max_attempts=3: third wrong code deletes the ticket."""
        user = make_user()
        _enable_mfa(services, user)
        ticket = _ticket(services)
        secret = services.store.get_by_id(user.id).mfa_secret
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                services.mfa.complete(ticket, "zzzzzzzzzz")
        with pytest.raises(InvalidToken):
            services.mfa.complete(ticket, totp_code(secret, services.clock()))

    def test_expired_ticket(self, services, make_user) -> None:
        user = make_user()
        _enable_mfa(services, user)
        ticket = _ticket(services)
        services.clock.advance(301)
        secret = services.store.get_by_id(user.id).mfa_secret
        with pytest.raises(InvalidToken, match="expired"):
            services.mfa.complete(ticket, totp_code(secret, services.clock()))
        # The expired ticket was deleted, so a retry reports it as unknown.
        with pytest.raises(InvalidToken):
            services.mfa.complete(ticket, totp_code(secret, services.clock()))

    def test_unknown_ticket(self, services) -> None:
        with pytest.raises(InvalidToken):
            services.mfa.complete("no-such-ticket", "123456")

    def test_deactivated_user_cannot_complete(self, services, make_user) -> None:
        user = make_user()
        _enable_mfa(services, user)
        ticket = _ticket(services)
        with services.store.transaction() as tx:
            loaded = tx.find_by_id(user.id)
            loaded.is_active = False
            tx.save(loaded)
        secret = services.store.get_by_id(user.id).mfa_secret
        with pytest.raises(InvalidToken):
            services.mfa.complete(ticket, totp_code(secret, services.clock()))
