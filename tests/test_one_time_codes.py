from datetime import timedelta
from threading import Barrier, Thread

import pytest

import db
from delivery import deliver_now
from engines.one_time_codes import (
    AuthCode,
    ChannelIdentity,
    CodeRegistry,
    OneTimeCodeAuthenticator,
    VerifyOutcome,
    generate_code,
)
from errors import CodeExpired, InvalidCode, InvalidInput


class RecordingChannels:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.emails = []
        self.sms = []
        self.bot_messages = []

    def send_email(self, to, subject, body):
        self.emails.append((to, subject, body))
        if self.fail:
            raise ConnectionError("smtp down")
        return True

    def send_sms(self, to, message):
        self.sms.append((to, message))
        if self.fail:
            raise ConnectionError("sms gateway down")
        return True

    def send_bot_message(self, chat_id, text):
        self.bot_messages.append((chat_id, text))
        if self.fail:
            raise ConnectionError("bot api down")
        return True


@pytest.fixture
def channels():
    return RecordingChannels()


@pytest.fixture
def authenticator(temp_db, clock, channels):
    return OneTimeCodeAuthenticator(
        CodeRegistry(),
        channels,
        clock=clock,
        ttl=timedelta(minutes=5),
        dispatch=deliver_now,
    )


def test_generated_codes_are_six_digits():
    for _ in range(200):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()
        assert 100000 <= int(code) <= 999999


def test_issue_binds_code_and_delivers_by_email(authenticator, channels, clock):
    entry = authenticator.issue_code(ChannelIdentity.email("Student@Example.com"))

    assert entry.identity == ChannelIdentity("email", "student@example.com")
    assert entry.expires_at == clock.now + timedelta(minutes=5)
    assert entry.code in authenticator.registry
    assert len(channels.emails) == 1
    to, subject, body = channels.emails[0]
    assert to == "student@example.com"
    assert "Login code" in subject
    assert entry.code in body


def test_email_code_succeeds_exactly_once(authenticator):
    entry = authenticator.issue_code(ChannelIdentity.email("student@example.com"))

    user = authenticator.verify_code(entry.code)

    assert user["email"] == "student@example.com"
    assert user["name"] == "student"
    assert entry.code not in authenticator.registry
    with pytest.raises(InvalidCode):
        authenticator.verify_code(entry.code)


def test_verify_reuses_existing_user(authenticator):
    existing = db.create_user(email="known@example.com", name="Known")
    entry = authenticator.issue_code(ChannelIdentity.email("known@example.com"))

    user = authenticator.verify_code(entry.code)

    assert user["id"] == existing["id"]
    assert user["name"] == "Known"


def test_unknown_code_is_invalid(authenticator):
    with pytest.raises(InvalidCode):
        authenticator.verify_code("123456")


def test_blank_code_is_invalid_input(authenticator):
    with pytest.raises(InvalidInput):
        authenticator.verify_code("   ")


def test_expired_code_is_removed(authenticator, clock):
    entry = authenticator.issue_code(ChannelIdentity.email("late@example.com"))
    clock.advance(minutes=5, seconds=1)

    with pytest.raises(CodeExpired):
        authenticator.verify_code(entry.code)

    assert entry.code not in authenticator.registry
    assert db.find_user_by_identity("email", "late@example.com") is None
    with pytest.raises(InvalidCode):
        authenticator.verify_code(entry.code)


def test_code_is_still_valid_at_exact_expiry(authenticator, clock):
    entry = authenticator.issue_code(ChannelIdentity.email("edge@example.com"))
    clock.advance(minutes=5)

    assert authenticator.verify_code(entry.code)["email"] == "edge@example.com"


def test_sms_code_creates_user_named_after_phone(authenticator, channels):
    entry = authenticator.issue_code(ChannelIdentity.phone("+79990001122"))

    user = authenticator.verify_code(entry.code, ChannelIdentity.phone("+79990001122"))

    assert channels.sms == [("+79990001122", f"Login code: {entry.code}")]
    assert user["phone"] == "+79990001122"
    assert user["name"] == "+79990001122"


def test_sms_phone_mismatch_keeps_code_usable(authenticator):
    entry = authenticator.issue_code(ChannelIdentity.phone("+79990001122"))

    with pytest.raises(InvalidCode):
        authenticator.verify_code(entry.code, ChannelIdentity.phone("+70000000000"))

    assert entry.code in authenticator.registry
    user = authenticator.verify_code(entry.code, ChannelIdentity.phone("+79990001122"))
    assert user["phone"] == "+79990001122"


def test_sms_mismatch_is_checked_before_expiry(authenticator, clock):
    entry = authenticator.issue_code(ChannelIdentity.phone("+79990001122"))
    clock.advance(minutes=10)

    with pytest.raises(InvalidCode):
        authenticator.verify_code(entry.code, ChannelIdentity.phone("+70000000000"))
    with pytest.raises(CodeExpired):
        authenticator.verify_code(entry.code, ChannelIdentity.phone("+79990001122"))


def test_code_cannot_be_redeemed_through_another_channel(authenticator):
    entry = authenticator.issue_code(ChannelIdentity.phone("+79990001122"))

    for kind in ("email", "bot"):
        with pytest.raises(InvalidCode):
            authenticator.verify_code(entry.code, kind=kind)

    assert entry.code in authenticator.registry
    assert db.find_user_by_identity("phone", "+79990001122") is None
    user = authenticator.verify_code(entry.code, ChannelIdentity.phone("+79990001122"))
    assert user["phone"] == "+79990001122"


def test_registry_take_checks_channel_kind(clock):
    registry = CodeRegistry()
    registry.bind(AuthCode("123456", ChannelIdentity.bot(7), clock.now + timedelta(minutes=5)), clock.now)

    assert registry.take("123456", clock.now, kind="email")[0] is VerifyOutcome.MISMATCH
    assert "123456" in registry
    assert registry.take("123456", clock.now, kind="bot")[0] is VerifyOutcome.CONSUMED


def test_issuing_drops_expired_codes(authenticator, clock):
    for index in range(50):
        authenticator.issue_code(ChannelIdentity.email(f"user{index}@example.com"))
    assert len(authenticator.registry) == 50

    clock.advance(days=1)
    fresh = authenticator.issue_code(ChannelIdentity.email("late@example.com"))

    assert len(authenticator.registry) == 1
    assert fresh.code in authenticator.registry


def test_bot_code_flow(authenticator, channels):
    entry = authenticator.issue_code(ChannelIdentity.bot(424242))

    user = authenticator.verify_code(entry.code)

    assert channels.bot_messages[0][0] == "424242"
    assert entry.code in channels.bot_messages[0][1]
    assert user["bot_chat_id"] == "424242"
    assert user["name"] == "424242"


def test_delivery_failure_does_not_fail_issuance(temp_db, clock):
    failing = RecordingChannels(fail=True)
    authenticator = OneTimeCodeAuthenticator(
        CodeRegistry(), failing, clock=clock, dispatch=deliver_now
    )

    entry = authenticator.issue_code(ChannelIdentity.email("student@example.com"))

    assert len(failing.emails) == 1
    assert authenticator.verify_code(entry.code)["email"] == "student@example.com"


def test_issue_draws_again_when_code_is_taken(temp_db, clock, channels):
    codes = iter(["111111", "111111", "222222"])
    authenticator = OneTimeCodeAuthenticator(
        CodeRegistry(), channels, clock=clock, dispatch=deliver_now,
        code_factory=lambda: next(codes),
    )

    first = authenticator.issue_code(ChannelIdentity.email("a@example.com"))
    second = authenticator.issue_code(ChannelIdentity.email("b@example.com"))

    assert first.code == "111111"
    assert second.code == "222222"
    assert authenticator.verify_code("111111")["email"] == "a@example.com"


def test_registry_replaces_expired_entry(clock):
    registry = CodeRegistry()
    old = AuthCode("123456", ChannelIdentity.email("a@example.com"), clock.now)
    assert registry.bind(old, clock.now)
    clock.advance(seconds=1)

    fresh = AuthCode("123456", ChannelIdentity.email("b@example.com"), clock.now + timedelta(minutes=5))
    assert registry.bind(fresh, clock.now)

    outcome, entry = registry.take("123456", clock.now)
    assert outcome is VerifyOutcome.CONSUMED
    assert entry.identity.value == "b@example.com"


def test_registry_purges_expired_entries(clock):
    registry = CodeRegistry()
    registry.bind(AuthCode("111111", ChannelIdentity.phone("1"), clock.now), clock.now)
    registry.bind(AuthCode("222222", ChannelIdentity.phone("2"), clock.now + timedelta(minutes=5)), clock.now)
    clock.advance(minutes=1)

    assert registry.purge_expired(clock.now) == 1
    assert len(registry) == 1
    assert "222222" in registry


def test_concurrent_verification_consumes_once(authenticator):
    entry = authenticator.issue_code(ChannelIdentity.email("race@example.com"))
    barrier = Barrier(6)
    outcomes = []

    def _attempt():
        barrier.wait()
        try:
            authenticator.verify_code(entry.code)
            outcomes.append("ok")
        except InvalidCode:
            outcomes.append("invalid")

    threads = [Thread(target=_attempt) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("invalid") == 5


@pytest.mark.parametrize("kind, value", [("fax", "123"), ("email", ""), ("phone", "   ")])
def test_channel_identity_validation(kind, value):
    with pytest.raises(InvalidInput):
        ChannelIdentity(kind, value)
