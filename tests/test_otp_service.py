import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from citizen_api.services.otp_service import InMemoryOtpStore, OtpVerifier, RedisOtpStore, VerificationCode


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _verifier(clock, **kwargs) -> OtpVerifier:
    return OtpVerifier(InMemoryOtpStore(), clock=clock, **kwargs)


class TestIssue:
    def test_code_has_configured_length(self):
        verifier = _verifier(_Clock(), length=4)
        code = asyncio.run(verifier.issue("t1", "9198"))
        assert len(code) == 4
        assert code.isdigit()

    def test_reissue_replaces_previous_code(self):
        clock = _Clock()
        verifier = _verifier(clock)
        verifier._generate = lambda: "111111"
        asyncio.run(verifier.issue("t1", "9198"))
        verifier._generate = lambda: "222222"
        asyncio.run(verifier.issue("t1", "9198"))

        assert asyncio.run(verifier.check("t1", "9198", "111111")) is False
        assert asyncio.run(verifier.check("t1", "9198", "222222")) is True


class TestCheck:
    def test_correct_code_verifies_and_consumes(self):
        clock = _Clock()
        verifier = _verifier(clock)
        code = asyncio.run(verifier.issue("t1", "9198"))

        assert asyncio.run(verifier.check("t1", "9198", code)) is True
        assert asyncio.run(verifier.is_verified("t1", "9198")) is True
        assert asyncio.run(verifier.check("t1", "9198", code)) is False

    def test_codes_are_bound_to_tenant(self):
        verifier = _verifier(_Clock())
        code = asyncio.run(verifier.issue("t1", "9198"))

        assert asyncio.run(verifier.check("t2", "9198", code)) is False
        assert asyncio.run(verifier.check("t1", "9198", code)) is True

    def test_expired_code_fails(self):
        clock = _Clock()
        verifier = _verifier(clock, ttl_seconds=300)
        code = asyncio.run(verifier.issue("t1", "9198"))

        clock.now += timedelta(seconds=301)

        assert asyncio.run(verifier.check("t1", "9198", code)) is False
        assert asyncio.run(verifier.has_live_code("t1", "9198")) is False

    def test_wrong_code_keeps_code_live(self):
        verifier = _verifier(_Clock())
        verifier._generate = lambda: "123456"
        asyncio.run(verifier.issue("t1", "9198"))

        assert asyncio.run(verifier.check("t1", "9198", "654321")) is False
        assert asyncio.run(verifier.has_live_code("t1", "9198")) is True
        assert asyncio.run(verifier.check("t1", "9198", "123456")) is True

    def test_attempts_exhausted_burns_code(self):
        verifier = _verifier(_Clock(), max_attempts=2)
        verifier._generate = lambda: "123456"
        asyncio.run(verifier.issue("t1", "9198"))

        asyncio.run(verifier.check("t1", "9198", "000000"))
        asyncio.run(verifier.check("t1", "9198", "000001"))

        assert asyncio.run(verifier.has_live_code("t1", "9198")) is False
        assert asyncio.run(verifier.check("t1", "9198", "123456")) is False

    def test_zero_max_attempts_disables_lockout(self):
        verifier = _verifier(_Clock(), max_attempts=0)
        verifier._generate = lambda: "123456"
        asyncio.run(verifier.issue("t1", "9198"))

        for _ in range(10):
            asyncio.run(verifier.check("t1", "9198", "000000"))

        assert asyncio.run(verifier.check("t1", "9198", "123456")) is True

    def test_missing_code_fails(self):
        verifier = _verifier(_Clock())
        assert asyncio.run(verifier.check("t1", "9198", "123456")) is False

    def test_non_ascii_candidate_does_not_raise(self):
        verifier = _verifier(_Clock())
        asyncio.run(verifier.issue("t1", "9198"))
        assert asyncio.run(verifier.check("t1", "9198", "१२३४५६")) is False


class TestVerifiedWindow:
    def test_verification_expires(self):
        clock = _Clock()
        verifier = _verifier(clock, verified_ttl_seconds=60)
        code = asyncio.run(verifier.issue("t1", "9198"))
        asyncio.run(verifier.check("t1", "9198", code))

        clock.now += timedelta(seconds=61)

        assert asyncio.run(verifier.is_verified("t1", "9198")) is False

    def test_unverified_phone(self):
        assert asyncio.run(_verifier(_Clock()).is_verified("t1", "9198")) is False


class TestRedisOtpStore:
    def test_put_code_sets_expiry(self):
        redis = AsyncMock()
        store = RedisOtpStore(redis)
        code = VerificationCode(code="123456", expires_at=datetime(2026, 1, 15, 9, 5, tzinfo=timezone.utc))

        asyncio.run(store.put_code("t1", "9198", code, 300))

        key, raw = redis.set.call_args.args
        assert key == "citizen:otp:t1:9198"
        assert json.loads(raw)["code"] == "123456"
        assert redis.set.call_args.kwargs == {"ex": 300}

    def test_update_code_keeps_ttl(self):
        redis = AsyncMock()
        store = RedisOtpStore(redis)
        code = VerificationCode(code="123456", expires_at=datetime(2026, 1, 15, 9, 5, tzinfo=timezone.utc), attempt_count=2)

        asyncio.run(store.update_code("t1", "9198", code))

        assert redis.set.call_args.kwargs == {"keepttl": True}

    def test_get_code_round_trips(self):
        expires_at = datetime(2026, 1, 15, 9, 5, tzinfo=timezone.utc)
        redis = AsyncMock()
        redis.get.return_value = json.dumps(VerificationCode("123456", expires_at, attempt_count=1).to_dict())

        code = asyncio.run(RedisOtpStore(redis).get_code("t1", "9198"))

        assert code.code == "123456"
        assert code.expires_at == expires_at
        assert code.attempt_count == 1

    def test_get_code_missing(self):
        redis = AsyncMock()
        redis.get.return_value = None
        assert asyncio.run(RedisOtpStore(redis).get_code("t1", "9198")) is None
