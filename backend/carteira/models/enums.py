"""Enumerations shared by the ORM models, schemas and pure services."""

from __future__ import annotations

import enum


class TransactionType(str, enum.Enum):
    BUY = "BUY"
    SELL_WITHDRAWAL = "SELL_WITHDRAWAL"
    CASH_CREDIT = "CASH_CREDIT"
    CASH_DEBIT = "CASH_DEBIT"
    DIVIDEND = "DIVIDEND"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    REJECTED = "REJECTED"


class TransactionSource(str, enum.Enum):
    MANUAL = "MANUAL"
    AI = "AI"
    SUGGESTION = "SUGGESTION"
    SYSTEM = "SYSTEM"


class RebalanceFrequency(str, enum.Enum):
    NONE = "NONE"
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"


__all__ = [
    "TransactionType",
    "TransactionStatus",
    "TransactionSource",
    "RebalanceFrequency",
]
