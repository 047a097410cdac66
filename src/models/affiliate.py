"""Enumerations shared by the affiliate, commission and analytics layers."""
from __future__ import annotations

from enum import Enum


class AffiliateStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


class CommissionType(str, Enum):
    FLAT_RATE = "flat_rate"
    PERCENTAGE = "percentage"


class SellingSubscriptions(str, Enum):
    """How an offer credits subscription rebills."""
    NO = "no"
    CREDIT_ALL = "credit_all"
    CREDIT_NONE = "credit_none"
    CREDIT_FIRST_ONLY = "credit_first_only"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    ELIGIBLE = "eligible"
    APPROVED = "approved"
    PAID = "paid"
    REVERSED = "reversed"

    @property
    def is_terminal(self) -> bool:
        return self in (CommissionStatus.PAID, CommissionStatus.REVERSED)


# Statuses a payout run may pay out
PAYABLE_STATUSES = (CommissionStatus.ELIGIBLE.value, CommissionStatus.APPROVED.value)

# Statuses whose eligible_date follows the affiliate's payout terms
OPEN_STATUSES = (
    CommissionStatus.PENDING.value,
    CommissionStatus.ELIGIBLE.value,
    CommissionStatus.APPROVED.value,
)


class PayoutRunStatus(str, Enum):
    DRAFT = "draft"
    APPROVED = "approved"


class WebhookLogStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class WebhookEvent(str, Enum):
    """What triggered a postback."""
    CREATED = "created"
    APPROVED = "approved"
    PAID = "paid"
    MANUAL = "manual"


class ViewMode(str, Enum):
    REALTIME = "realtime"
    HISTORICAL = "historical"


class TimeRange(str, Enum):
    ONE_HOUR = "1h"
    ONE_DAY = "24h"
    SEVEN_DAYS = "7d"
    THIRTY_DAYS = "30d"

    @property
    def milliseconds(self) -> int:
        return _TIME_RANGE_MS[self.value]


_TIME_RANGE_MS = {
    "1h": 60 * 60 * 1000,
    "24h": 24 * 60 * 60 * 1000,
    "7d": 7 * 24 * 60 * 60 * 1000,
    "30d": 30 * 24 * 60 * 60 * 1000,
}
