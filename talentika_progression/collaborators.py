"""
External collaborators

The engine calls out to these for requirement checks, badge delivery and
notifications. Every call is bounded by OPERATION_TIMEOUT_SECONDS.
"""

import logging
from dataclasses import asdict
from numbers import Number
from typing import Any, Dict, Optional, Protocol

import httpx

from talentika_progression.models import (
    BadgeUnlockedEvent,
    LevelUpEvent,
    NewLongestStreakEvent,
    RewardPurchasedEvent,
)

logger = logging.getLogger(__name__)

EVENT_TYPES = {
    LevelUpEvent: "level_up",
    NewLongestStreakEvent: "new_longest_streak",
    RewardPurchasedEvent: "reward_purchased",
    BadgeUnlockedEvent: "badge_unlocked",
}


class RequirementEvaluator(Protocol):
    async def is_satisfied(
        self,
        requirements: Optional[Dict[str, Any]],
        evidence: Optional[Dict[str, Any]]
    ) -> bool: ...


class BadgeUnlocker(Protocol):
    async def unlock_badge(self, user_id: str, badge: str, source: str) -> None: ...


class Notifier(Protocol):
    async def notify(self, event: Any) -> None: ...


def _is_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


class DefaultRequirementEvaluator:
    """
    Key-by-key comparison of requirements against evidence

    - No requirements: satisfied
    - Numeric requirement: evidence value must be a number >= it
    - Anything else: evidence value must be equal
    """

    async def is_satisfied(
        self,
        requirements: Optional[Dict[str, Any]],
        evidence: Optional[Dict[str, Any]]
    ) -> bool:
        if not requirements:
            return True
        evidence = evidence or {}

        for key, required in requirements.items():
            if key not in evidence:
                return False
            provided = evidence[key]
            if _is_number(required):
                if not _is_number(provided) or provided < required:
                    return False
            elif provided != required:
                return False
        return True


class LoggingBadgeUnlocker:
    """Badge delivery for deployments without a badge service"""

    async def unlock_badge(self, user_id: str, badge: str, source: str) -> None:
        logger.info(f"Badge {badge!r} unlocked for user {user_id} (source: {source})")


class LoggingNotifier:
    """Writes events to the log"""

    async def notify(self, event: Any) -> None:
        event_type = EVENT_TYPES.get(type(event), type(event).__name__)
        logger.info(f"[EVENT] {event_type}: {asdict(event)}")


class WebhookNotifier:
    """POSTs events as JSON to a webhook"""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def notify(self, event: Any) -> None:
        payload = {
            "type": EVENT_TYPES.get(type(event), type(event).__name__),
            "data": asdict(event),
        }
        response = await self._client.post(self.url, json=payload)
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()
