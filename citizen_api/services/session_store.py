"""Per-citizen conversation sessions keyed by (tenant_id, phone_number).

The store is a plain key-value abstraction. It never looks at ``step`` or ``draft``;
the conversation engine owns their meaning.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from redis.exceptions import WatchError

from citizen_api.constants import DEFAULT_LANGUAGE
from citizen_api.logging_config import get_logger
from citizen_api.services.state_machine import ConversationStep

logger = get_logger("session_store")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    tenant_id: str
    phone_number: str
    language: str = DEFAULT_LANGUAGE
    step: ConversationStep = ConversationStep.START
    pending_action: Optional[str] = None
    draft: dict[str, Any] = field(default_factory=dict)
    last_activity_at: datetime = field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return self.tenant_id, self.phone_number

    def reset_flow(self) -> None:
        self.step = ConversationStep.START
        self.pending_action = None
        self.draft = {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "phone_number": self.phone_number,
            "language": self.language,
            "step": self.step.value,
            "pending_action": self.pending_action,
            "draft": self.draft,
            "last_activity_at": self.last_activity_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        try:
            step = ConversationStep(data.get("step") or ConversationStep.START.value)
        except ValueError:
            logger.warning(f"Unknown session step {data.get('step')!r}, restarting conversation")
            step = ConversationStep.START
        last_activity_raw = data.get("last_activity_at")
        last_activity_at = datetime.fromisoformat(last_activity_raw) if last_activity_raw else _utcnow()
        return cls(
            tenant_id=data["tenant_id"],
            phone_number=data["phone_number"],
            language=data.get("language") or DEFAULT_LANGUAGE,
            step=step,
            pending_action=data.get("pending_action"),
            draft=data.get("draft") or {},
            last_activity_at=last_activity_at,
        )


class SessionStore(ABC):
    @abstractmethod
    async def get(self, tenant_id: str, phone_number: str) -> Session:
        """Return the stored session, or a fresh one at the start step."""

    @abstractmethod
    async def save(self, session: Session) -> None:
        """Persist the session and refresh its last activity timestamp."""

    @abstractmethod
    async def delete(self, tenant_id: str, phone_number: str) -> None:
        ...

    @abstractmethod
    async def evict(self, older_than: datetime) -> int:
        """Remove sessions idle since before ``older_than``. Returns how many were removed."""


class InMemorySessionStore(SessionStore):
    """Process-local store. Suitable for a single receiver instance and for tests."""

    def __init__(self):
        self._sessions: dict[tuple[str, str], dict[str, Any]] = {}

    async def get(self, tenant_id: str, phone_number: str) -> Session:
        stored = self._sessions.get((tenant_id, phone_number))
        if stored is None:
            return Session(tenant_id=tenant_id, phone_number=phone_number)
        # Copies keep in-flight mutations invisible until save().
        return Session.from_dict(json.loads(json.dumps(stored)))

    async def save(self, session: Session) -> None:
        session.last_activity_at = _utcnow()
        self._sessions[session.key] = session.to_dict()

    async def delete(self, tenant_id: str, phone_number: str) -> None:
        self._sessions.pop((tenant_id, phone_number), None)

    async def evict(self, older_than: datetime) -> int:
        stale = [
            key
            for key, data in self._sessions.items()
            if datetime.fromisoformat(data["last_activity_at"]) < older_than
        ]
        for key in stale:
            del self._sessions[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._sessions)


class RedisSessionStore(SessionStore):
    """JSON sessions in Redis plus a sorted-set index of last activity for eviction."""

    INDEX_KEY = "citizen:sessions:activity"

    def __init__(self, redis_client, idle_ttl_seconds: int):
        self.redis = redis_client
        self.idle_ttl_seconds = max(int(idle_ttl_seconds), 1)

    @staticmethod
    def _member(tenant_id: str, phone_number: str) -> str:
        return f"{tenant_id}:{phone_number}"

    @staticmethod
    def _key(member: str) -> str:
        return f"citizen:session:{member}"

    async def get(self, tenant_id: str, phone_number: str) -> Session:
        raw = await self.redis.get(self._key(self._member(tenant_id, phone_number)))
        if not raw:
            return Session(tenant_id=tenant_id, phone_number=phone_number)
        return Session.from_dict(json.loads(raw))

    async def save(self, session: Session) -> None:
        session.last_activity_at = _utcnow()
        member = self._member(session.tenant_id, session.phone_number)
        pipe = self.redis.pipeline()
        # Twice the idle window: evict() is the primary cleanup, the TTL only backs it up.
        pipe.set(self._key(member), json.dumps(session.to_dict(), ensure_ascii=False), ex=self.idle_ttl_seconds * 2)
        pipe.zadd(self.INDEX_KEY, {member: session.last_activity_at.timestamp()})
        await pipe.execute()

    async def delete(self, tenant_id: str, phone_number: str) -> None:
        member = self._member(tenant_id, phone_number)
        pipe = self.redis.pipeline()
        pipe.delete(self._key(member))
        pipe.zrem(self.INDEX_KEY, member)
        await pipe.execute()

    async def evict(self, older_than: datetime) -> int:
        cutoff = older_than.timestamp()
        members = await self.redis.zrangebyscore(self.INDEX_KEY, "-inf", f"({cutoff}")
        removed = 0
        for member in members:
            if await self._evict_member(member, cutoff):
                removed += 1
        return removed

    async def _evict_member(self, member: str, cutoff: float) -> bool:
        key = self._key(member)
        async with self.redis.pipeline() as pipe:
            try:
                # save() rewrites the key, so a save racing this check aborts the delete.
                await pipe.watch(key)
                score = await pipe.zscore(self.INDEX_KEY, member)
                if score is None or score >= cutoff:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                pipe.zrem(self.INDEX_KEY, member)
                await pipe.execute()
            except WatchError:
                logger.info("Session touched during eviction, keeping it", extra={"context": {"member": member}})
                return False
        return True
