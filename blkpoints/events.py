from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LoyaltyEvent:
    user_id: str
    occurred_at: datetime


@dataclass(frozen=True)
class PointsEarned(LoyaltyEvent):
    entry_id: UUID
    points: int
    reason: str
    booking_id: Optional[str] = None


@dataclass(frozen=True)
class ReferralBonusPending(LoyaltyEvent):
    referral_id: UUID
    entry_id: UUID
    points: int
    confirm_at: datetime


@dataclass(frozen=True)
class ReferralBonusConfirmed(LoyaltyEvent):
    referral_id: UUID
    entry_id: UUID
    points: int
    balance: int


@dataclass(frozen=True)
class ReferralBonusReleased(LoyaltyEvent):
    referral_id: UUID
    entry_id: UUID
    points: int
    booking_status: str


@dataclass(frozen=True)
class PointsRedeemed(LoyaltyEvent):
    entry_id: UUID
    points: int
    value_pence: int
    balance: int


@dataclass(frozen=True)
class RedemptionReleased(LoyaltyEvent):
    entry_id: UUID
    reversal_id: UUID
    points: int
    booking_id: str
    balance: int


@dataclass(frozen=True)
class FraudBlocked(LoyaltyEvent):
    code: str
    stage: str
    referee_id: Optional[str] = None
    context: dict = field(default_factory=dict)


Handler = Callable[[LoyaltyEvent], None]


class EventBus:
    """Synchronous in-process dispatch of loyalty events.

    Handlers subscribe to an event class and also receive its subclasses.
    Publishing happens after the producing transaction has committed, so a
    failing handler is logged and never undoes ledger state.
    """

    def __init__(self):
        self.handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self.handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: Handler) -> None:
        if handler in self.handlers.get(event_type, []):
            self.handlers[event_type].remove(handler)

    def publish(self, event: LoyaltyEvent) -> list[dict]:
        results = []
        for event_type in type(event).__mro__:
            for handler in list(self.handlers.get(event_type, [])):
                try:
                    handler(event)
                    results.append({"handler": getattr(handler, "__name__", repr(handler)), "success": True})
                except Exception as e:
                    logger.exception(
                        "event_handler_failed",
                        event_type=type(event).__name__,
                        user_id=event.user_id,
                    )
                    results.append({"handler": getattr(handler, "__name__", repr(handler)), "success": False, "error": str(e)})
        return results

    def publish_all(self, events: list[LoyaltyEvent]) -> None:
        for event in events:
            self.publish(event)
