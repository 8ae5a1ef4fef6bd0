"""Unit tests for one-time code generation and verification."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from olakz_auth.config import Settings
from olakz_auth.service.errors import CodeAlreadyUsed, CodeExpired, CodeInvalid, ValidationError
from olakz_auth.service.otp import (
    PURPOSE_RESET_PASSWORD,
    PURPOSE_VERIFY_EMAIL,
    OTPEngine,
    _random_digits,
)
from olakz_auth.storage.memory import MemoryStore


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


class SequenceCodes:
    """Deterministic code factory handing out codes in order."""

    def __init__(self, *codes: str):
        self._codes = list(codes)

    def __call__(self, length: int) -> str:
        return self._codes.pop(0)


@pytest.fixture
def settings():
    return Settings(
        jwt_access_secret="access-secret-for-unit-tests-only-0123456789",
        jwt_refresh_secret="refresh-secret-for-unit-tests-only-0123456789",
        otp_secret="otp-secret-for-unit-tests",
        otp_ttl_minutes=10,
        otp_max_attempts=3,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FrozenClock(datetime.now(timezone.utc))


@pytest.fixture
def account(store):
    return store.create_account("driver@example.com", roles=["driver"])


def _engine(store, settings, clock, *codes):
    return OTPEngine(store, settings, code_factory=SequenceCodes(*codes), clock=clock)


class TestGeneration:
    """Code creation and storage."""

    def test_random_digits_have_requested_length(self):
        """Generated codes are numeric with the configured length."""
        code = _random_digits(6)
        assert len(code) == 6
        assert code.isdigit()

    def test_only_a_hash_is_stored(self, store, settings, clock, account):
        """The plaintext code never reaches the store."""
        engine = _engine(store, settings, clock, "482913")
        code = engine.generate(account, PURPOSE_VERIFY_EMAIL)

        record = store.get_latest_otp(account.id, PURPOSE_VERIFY_EMAIL)
        assert code == "482913"
        assert record.code_hash != code
        assert code not in record.code_hash
        assert record.expires_at == clock.now + timedelta(minutes=10)

    def test_unknown_purpose_is_rejected(self, store, settings, clock, account):
        """Only the known purposes are accepted."""
        engine = _engine(store, settings, clock, "111111")
        with pytest.raises(ValidationError):
            engine.generate(account, "login")


class TestVerification:
    """Verification outcomes."""

    def test_correct_code_verifies_once(self, store, settings, clock, account):
        """A correct code succeeds and cannot be replayed."""
        engine = _engine(store, settings, clock, "123456")
        code = engine.generate(account, PURPOSE_VERIFY_EMAIL)

        assert engine.verify(account, PURPOSE_VERIFY_EMAIL, code).ok is True
        replay = engine.verify(account, PURPOSE_VERIFY_EMAIL, code)
        assert replay.ok is False
        assert replay.error_code == "OTP_ALREADY_USED"

    def test_new_code_supersedes_previous(self, store, settings, clock, account):
        """Issuing a new code invalidates the earlier one."""
        engine = _engine(store, settings, clock, "111111", "222222")
        first = engine.generate(account, PURPOSE_VERIFY_EMAIL)
        second = engine.resend(account, PURPOSE_VERIFY_EMAIL)

        stale = engine.verify(account, PURPOSE_VERIFY_EMAIL, first)
        assert stale.ok is False
        assert stale.error_code == "OTP_INVALID"
        assert engine.verify(account, PURPOSE_VERIFY_EMAIL, second).ok is True

    def test_expired_code_is_rejected(self, store, settings, clock, account):
        """Codes past their TTL fail with OTP_EXPIRED."""
        engine = _engine(store, settings, clock, "654321")
        code = engine.generate(account, PURPOSE_VERIFY_EMAIL)
        clock.advance(minutes=10)

        with pytest.raises(CodeExpired):
            engine.verify_or_raise(account, PURPOSE_VERIFY_EMAIL, code)

    def test_purposes_are_independent(self, store, settings, clock, account):
        """A verification code cannot be used to reset a password."""
        engine = _engine(store, settings, clock, "777777", "888888")
        verify_code = engine.generate(account, PURPOSE_VERIFY_EMAIL)
        engine.generate(account, PURPOSE_RESET_PASSWORD)

        result = engine.verify(account, PURPOSE_RESET_PASSWORD, verify_code)
        assert result.ok is False
        assert engine.verify(account, PURPOSE_VERIFY_EMAIL, verify_code).ok is True

    def test_missing_code_is_invalid(self, store, settings, clock, account):
        """Verifying with nothing issued is OTP_INVALID."""
        engine = _engine(store, settings, clock)
        with pytest.raises(CodeInvalid):
            engine.verify_or_raise(account, PURPOSE_VERIFY_EMAIL, "000000")

    def test_attempts_are_limited(self, store, settings, clock, account):
        """After the maximum mismatches even the right code is refused."""
        engine = _engine(store, settings, clock, "135790")
        code = engine.generate(account, PURPOSE_VERIFY_EMAIL)

        remaining = []
        for _ in range(3):
            result = engine.verify(account, PURPOSE_VERIFY_EMAIL, "000000")
            remaining.append(result.error.detail["attempts_remaining"])
        assert remaining == [2, 1, 0]

        locked = engine.verify(account, PURPOSE_VERIFY_EMAIL, code)
        assert locked.ok is False
        assert locked.error_code == "OTP_INVALID"

    def test_consume_is_compare_and_set(self, store, settings, clock, account):
        """A consumed record cannot be consumed again or verified."""
        engine = _engine(store, settings, clock, "246810")
        engine.generate(account, PURPOSE_VERIFY_EMAIL)
        record = store.get_latest_otp(account.id, PURPOSE_VERIFY_EMAIL)

        assert store.consume_otp(record.id) is True
        assert store.consume_otp(record.id) is False
        with pytest.raises(CodeAlreadyUsed):
            engine.verify_or_raise(account, PURPOSE_VERIFY_EMAIL, "246810")

    def test_exhausted_record_cannot_be_consumed(self, store, settings, clock, account):
        """Reservations stop at the limit and the consume honors it."""
        engine = _engine(store, settings, clock, "246810")
        engine.generate(account, PURPOSE_VERIFY_EMAIL)
        record = store.get_latest_otp(account.id, PURPOSE_VERIFY_EMAIL)

        assert [store.reserve_otp_attempt(record.id, 3) for _ in range(4)] == [1, 2, 3, None]
        store.otps[record.id].attempts = 4
        assert store.consume_otp(record.id, 3) is False

    def test_purge_removes_expired_codes(self, store, settings, clock, account):
        """Expired codes are purged from storage."""
        engine = _engine(store, settings, clock, "112233")
        engine.generate(account, PURPOSE_VERIFY_EMAIL)
        clock.advance(minutes=11)

        assert engine.purge_expired() == 1
        assert store.get_latest_otp(account.id, PURPOSE_VERIFY_EMAIL) is None


class GatedStore(MemoryStore):
    """Holds each verifying thread at its first record read until all arrive."""

    def __init__(self, parties: int):
        super().__init__()
        self.armed = False
        self._barrier = threading.Barrier(parties)
        self._seen = threading.local()

    def get_latest_otp(self, account_id, purpose):
        record = super().get_latest_otp(account_id, purpose)
        if self.armed and not getattr(self._seen, "passed", False):
            self._seen.passed = True
            self._barrier.wait(timeout=10)
        return record


class TestConcurrentVerification:
    """Parallel guesses against one code."""

    def test_parallel_guesses_share_the_attempt_budget(self, settings, clock):
        """Ten simultaneous guesses get at most three comparisons."""
        store = GatedStore(parties=10)
        account = store.create_account("driver@example.com", roles=["driver"])
        engine = _engine(store, settings, clock, "135790")
        code = engine.generate(account, PURPOSE_VERIFY_EMAIL)
        guesses = [f"00000{i}" for i in range(9)] + [code]
        results = [None] * len(guesses)

        def attempt(index, guess):
            results[index] = engine.verify(account, PURPOSE_VERIFY_EMAIL, guess)

        store.armed = True
        threads = [
            threading.Thread(target=attempt, args=(i, guess))
            for i, guess in enumerate(guesses)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        store.armed = False

        record = store.get_latest_otp(account.id, PURPOSE_VERIFY_EMAIL)
        compared = [r for r in results if r.ok or r.error.message == "code is invalid"]
        assert record.attempts <= 3
        assert len(compared) <= 3
        assert sum(r.ok for r in results) <= 1
        assert engine.verify(account, PURPOSE_VERIFY_EMAIL, code).ok is False
