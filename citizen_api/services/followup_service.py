"""Delayed follow-up events, such as re-presenting the main menu after a grievance is filed.

Follow-ups are queued with a due time and drained by a background worker, so tests can
drive them with an explicit clock and a restart does not lose them when Redis backs the queue.
"""

from __future__ import annotations

import heapq
import itertools
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from citizen_api.logging_config import get_logger

logger = get_logger("followup_service")


class FollowUpKind(str, Enum):
    MAIN_MENU = "main_menu"


@dataclass(frozen=True)
class FollowUp:
    tenant_id: str
    channel_id: str
    phone_number: str
    language: str
    kind: FollowUpKind
    due_at: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "tenant_id": self.tenant_id,
                "channel_id": self.channel_id,
                "phone_number": self.phone_number,
                "language": self.language,
                "kind": self.kind.value,
                "due_at": self.due_at.isoformat(),
            },
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str) -> "FollowUp":
        data = json.loads(raw)
        return cls(
            tenant_id=data["tenant_id"],
            channel_id=data["channel_id"],
            phone_number=data["phone_number"],
            language=data["language"],
            kind=FollowUpKind(data["kind"]),
            due_at=datetime.fromisoformat(data["due_at"]),
        )


class FollowUpQueue(ABC):
    @abstractmethod
    async def schedule(self, followup: FollowUp) -> None:
        ...

    @abstractmethod
    async def pop_due(self, now: datetime, limit: int = 50) -> list[FollowUp]:
        """Remove and return follow-ups due at or before ``now``, earliest first."""


class InMemoryFollowUpQueue(FollowUpQueue):
    def __init__(self):
        self._heap: list[tuple[float, int, FollowUp]] = []
        self._counter = itertools.count()

    async def schedule(self, followup: FollowUp) -> None:
        heapq.heappush(self._heap, (followup.due_at.timestamp(), next(self._counter), followup))

    async def pop_due(self, now: datetime, limit: int = 50) -> list[FollowUp]:
        due: list[FollowUp] = []
        cutoff = now.timestamp()
        while self._heap and self._heap[0][0] <= cutoff and len(due) < limit:
            due.append(heapq.heappop(self._heap)[2])
        return due

    def __len__(self) -> int:
        return len(self._heap)


class RedisFollowUpQueue(FollowUpQueue):
    KEY = "citizen:followups"

    def __init__(self, redis_client):
        self.redis = redis_client

    async def schedule(self, followup: FollowUp) -> None:
        await self.redis.zadd(self.KEY, {followup.to_json(): followup.due_at.timestamp()})

    async def pop_due(self, now: datetime, limit: int = 50) -> list[FollowUp]:
        members = await self.redis.zrangebyscore(self.KEY, "-inf", now.timestamp(), start=0, num=limit)
        due: list[FollowUp] = []
        for member in members:
            # ZREM decides ownership when several workers drain the same queue.
            if not await self.redis.zrem(self.KEY, member):
                continue
            try:
                due.append(FollowUp.from_json(member))
            except (ValueError, KeyError) as e:
                logger.warning(f"Dropping malformed follow-up: {e}")
        return due
