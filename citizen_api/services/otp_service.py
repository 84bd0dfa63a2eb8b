"""One-time verification codes bound to a (tenant, phone) pair."""

from __future__ import annotations

import hmac
import json
import secrets
import string
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from citizen_api.logging_config import get_logger

logger = get_logger("otp_service")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VerificationCode:
    code: str
    expires_at: datetime
    attempt_count: int = 0
    consumed: bool = False

    def is_live(self, now: datetime) -> bool:
        return not self.consumed and now < self.expires_at

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "expires_at": self.expires_at.isoformat(),
            "attempt_count": self.attempt_count,
            "consumed": self.consumed,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VerificationCode":
        return cls(
            code=data["code"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            attempt_count=int(data.get("attempt_count") or 0),
            consumed=bool(data.get("consumed")),
        )


class OtpStore(ABC):
    @abstractmethod
    async def get_code(self, tenant_id: str, phone: str) -> Optional[VerificationCode]:
        ...

    @abstractmethod
    async def put_code(self, tenant_id: str, phone: str, code: VerificationCode, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def update_code(self, tenant_id: str, phone: str, code: VerificationCode) -> None:
        """Persist attempt count or consumption without extending the expiry."""

    @abstractmethod
    async def get_verified_until(self, tenant_id: str, phone: str) -> Optional[datetime]:
        ...

    @abstractmethod
    async def set_verified_until(self, tenant_id: str, phone: str, until: datetime, ttl_seconds: int) -> None:
        ...


class InMemoryOtpStore(OtpStore):
    def __init__(self):
        self._codes: dict[tuple[str, str], VerificationCode] = {}
        self._verified: dict[tuple[str, str], datetime] = {}

    async def get_code(self, tenant_id: str, phone: str) -> Optional[VerificationCode]:
        return self._codes.get((tenant_id, phone))

    async def put_code(self, tenant_id: str, phone: str, code: VerificationCode, ttl_seconds: int) -> None:
        self._codes[(tenant_id, phone)] = code

    async def update_code(self, tenant_id: str, phone: str, code: VerificationCode) -> None:
        self._codes[(tenant_id, phone)] = code

    async def get_verified_until(self, tenant_id: str, phone: str) -> Optional[datetime]:
        return self._verified.get((tenant_id, phone))

    async def set_verified_until(self, tenant_id: str, phone: str, until: datetime, ttl_seconds: int) -> None:
        self._verified[(tenant_id, phone)] = until


class RedisOtpStore(OtpStore):
    def __init__(self, redis_client):
        self.redis = redis_client

    @staticmethod
    def _code_key(tenant_id: str, phone: str) -> str:
        return f"citizen:otp:{tenant_id}:{phone}"

    @staticmethod
    def _verified_key(tenant_id: str, phone: str) -> str:
        return f"citizen:otp:verified:{tenant_id}:{phone}"

    async def get_code(self, tenant_id: str, phone: str) -> Optional[VerificationCode]:
        raw = await self.redis.get(self._code_key(tenant_id, phone))
        return VerificationCode.from_dict(json.loads(raw)) if raw else None

    async def put_code(self, tenant_id: str, phone: str, code: VerificationCode, ttl_seconds: int) -> None:
        await self.redis.set(self._code_key(tenant_id, phone), json.dumps(code.to_dict()), ex=max(ttl_seconds, 1))

    async def update_code(self, tenant_id: str, phone: str, code: VerificationCode) -> None:
        await self.redis.set(self._code_key(tenant_id, phone), json.dumps(code.to_dict()), keepttl=True)

    async def get_verified_until(self, tenant_id: str, phone: str) -> Optional[datetime]:
        raw = await self.redis.get(self._verified_key(tenant_id, phone))
        return datetime.fromisoformat(raw) if raw else None

    async def set_verified_until(self, tenant_id: str, phone: str, until: datetime, ttl_seconds: int) -> None:
        await self.redis.set(self._verified_key(tenant_id, phone), until.isoformat(), ex=max(ttl_seconds, 1))


class OtpVerifier:
    """Issues and checks short-lived numeric codes.

    At most one live code exists per (tenant, phone): issuing replaces the previous one.
    A successful check consumes the code and marks the phone as verified for
    ``verified_ttl_seconds``. With ``max_attempts`` > 0, that many wrong guesses burn the code.
    """

    def __init__(
        self,
        store: OtpStore,
        length: int = 6,
        ttl_seconds: int = 300,
        verified_ttl_seconds: int = 3600,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.length = int(length)
        self.ttl_seconds = ttl_seconds
        self.verified_ttl_seconds = verified_ttl_seconds
        self.max_attempts = max_attempts
        self.clock = clock

    def _generate(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self.length))

    async def issue(self, tenant_id: str, phone: str) -> str:
        code = self._generate()
        record = VerificationCode(code=code, expires_at=self.clock() + timedelta(seconds=self.ttl_seconds))
        await self.store.put_code(tenant_id, phone, record, self.ttl_seconds)
        logger.info(
            "OTP issued",
            extra={"context": {"tenant_id": tenant_id, "phone": phone, "expires_at": record.expires_at.isoformat()}},
        )
        return code

    async def check(self, tenant_id: str, phone: str, candidate: str) -> bool:
        record = await self.store.get_code(tenant_id, phone)
        now = self.clock()
        if record is None or not record.is_live(now):
            return False

        if hmac.compare_digest(record.code.encode("utf-8"), (candidate or "").strip().encode("utf-8")):
            record.consumed = True
            await self.store.update_code(tenant_id, phone, record)
            await self.store.set_verified_until(
                tenant_id,
                phone,
                now + timedelta(seconds=self.verified_ttl_seconds),
                self.verified_ttl_seconds,
            )
            logger.info("OTP verified", extra={"context": {"tenant_id": tenant_id, "phone": phone}})
            return True

        record.attempt_count += 1
        if self.max_attempts > 0 and record.attempt_count >= self.max_attempts:
            record.consumed = True
            logger.warning(
                "OTP attempts exhausted",
                extra={"context": {"tenant_id": tenant_id, "phone": phone, "attempts": record.attempt_count}},
            )
        await self.store.update_code(tenant_id, phone, record)
        return False

    async def has_live_code(self, tenant_id: str, phone: str) -> bool:
        record = await self.store.get_code(tenant_id, phone)
        return record is not None and record.is_live(self.clock())

    async def is_verified(self, tenant_id: str, phone: str) -> bool:
        until = await self.store.get_verified_until(tenant_id, phone)
        return until is not None and self.clock() < until
