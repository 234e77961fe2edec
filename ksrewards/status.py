"""
Upstream status vocabulary

The game backend answers redemptions with loosely formatted messages
("Success.", "TIME_ERROR!", "Usage_Limit"). Every message is normalized and
looked up in MESSAGE_TABLE; anything missing from the table is UNKNOWN.
"""

import re
from enum import Enum
from typing import Dict, Optional


class RedemptionStatus(Enum):
    """Enumeration of possible redemption outcomes"""
    SUCCESS = "SUCCESS"
    RECEIVED = "RECEIVED"
    SAME_TYPE_EXCHANGE = "SAME_TYPE_EXCHANGE"
    TOO_SMALL_SPEND_MORE = "TOO_SMALL_SPEND_MORE"  # valid, account does not qualify
    TOO_POOR_SPEND_MORE = "TOO_POOR_SPEND_MORE"
    TIME_ERROR = "TIME_ERROR"  # redemption window has passed
    USAGE_LIMIT = "USAGE_LIMIT"
    CDK_NOT_FOUND = "CDK_NOT_FOUND"
    TIMEOUT_RETRY = "TIMEOUT_RETRY"
    NOT_LOGIN = "NOT_LOGIN"
    ERROR = "ERROR"  # transport failure on our side, never sent by upstream
    UNKNOWN = "UNKNOWN"


class Classification(Enum):
    VALIDATED = "validated"
    INVALID = "invalid"
    EXPIRED = "expired"
    UNCERTAIN = "uncertain"


class CodeStatus(Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    INVALID = "invalid"
    EXPIRED = "expired"


class QueueStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"


MESSAGE_TABLE: Dict[str, RedemptionStatus] = {
    "SUCCESS": RedemptionStatus.SUCCESS,
    "RECEIVED": RedemptionStatus.RECEIVED,
    "SAME_TYPE_EXCHANGE": RedemptionStatus.SAME_TYPE_EXCHANGE,
    "TOO_SMALL_SPEND_MORE": RedemptionStatus.TOO_SMALL_SPEND_MORE,
    "TOO_POOR_SPEND_MORE": RedemptionStatus.TOO_POOR_SPEND_MORE,
    "TIME_ERROR": RedemptionStatus.TIME_ERROR,
    "USAGE_LIMIT": RedemptionStatus.USAGE_LIMIT,
    "CDK_NOT_FOUND": RedemptionStatus.CDK_NOT_FOUND,
    "TIMEOUT RETRY": RedemptionStatus.TIMEOUT_RETRY,
    "TIMEOUT_RETRY": RedemptionStatus.TIMEOUT_RETRY,
    "NOT_LOGIN": RedemptionStatus.NOT_LOGIN,
    "NOT LOGIN": RedemptionStatus.NOT_LOGIN,
}

SUCCESS_STATUSES = frozenset({
    RedemptionStatus.SUCCESS,
    RedemptionStatus.RECEIVED,
    RedemptionStatus.SAME_TYPE_EXCHANGE,
})
RESTRICTED_STATUSES = frozenset({
    RedemptionStatus.TOO_SMALL_SPEND_MORE,
    RedemptionStatus.TOO_POOR_SPEND_MORE,
})
EXPIRED_STATUSES = frozenset({
    RedemptionStatus.TIME_ERROR,
    RedemptionStatus.USAGE_LIMIT,
})
NOT_FOUND_STATUSES = frozenset({
    RedemptionStatus.CDK_NOT_FOUND,
})
PERMANENT_FAILURE_STATUSES = EXPIRED_STATUSES | NOT_FOUND_STATUSES

# Values stored in redemptions.status that count as "already redeemed"
SUCCESS_LITERALS = tuple(sorted(s.value for s in SUCCESS_STATUSES))

_TRAILING_PUNCTUATION = re.compile(r"[.!?]+$")


def normalize_message(raw: Optional[str]) -> str:
    """Trim, drop trailing punctuation and upper-case an upstream message"""
    if raw is None:
        return ""
    return _TRAILING_PUNCTUATION.sub("", str(raw).strip()).strip().upper()


def parse_status(raw: Optional[str]) -> RedemptionStatus:
    return MESSAGE_TABLE.get(normalize_message(raw), RedemptionStatus.UNKNOWN)


def classify_status(status: RedemptionStatus) -> Classification:
    """Map a redemption outcome onto what it says about the code itself"""
    if status in SUCCESS_STATUSES or status in RESTRICTED_STATUSES:
        return Classification.VALIDATED
    if status in EXPIRED_STATUSES:
        return Classification.EXPIRED
    if status in NOT_FOUND_STATUSES:
        return Classification.INVALID
    return Classification.UNCERTAIN


def classify_message(raw: Optional[str]) -> Classification:
    return classify_status(parse_status(raw))


def status_label(status: RedemptionStatus, raw_message: Optional[str]) -> str:
    """Value written to the redemption history for an attempt"""
    if status is RedemptionStatus.UNKNOWN:
        return normalize_message(raw_message) or RedemptionStatus.UNKNOWN.value
    return status.value
