"""Transaction drafts and ledger response schemas.

Every way into the ledger (manual form, AI parser output, dividend
suggestion) produces a loosely typed mapping that must pass through
:func:`parse_transaction_draft` first. The result is one of five draft
classes discriminated on ``type``; each knows how to derive its signed
cash amount.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Annotated, Any, Literal, Mapping, Union, cast

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator, model_validator

from carteira.core.errors import TransactionValidationError
from carteira.models.enums import TransactionSource, TransactionStatus, TransactionType

PositiveDecimal = Annotated[Decimal, Field(gt=0)]


class _DraftBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    date: dt.date
    notes: str | None = Field(default=None, max_length=512)

    def signed_amount(self) -> Decimal:  # pragma: no cover - overridden
        raise NotImplementedError

    def ledger_fields(self) -> dict[str, Any]:
        """Column values for a ``LedgerTransaction`` built from this draft."""

        return {
            "date": self.date,
            "type": TransactionType(self.type),  # type: ignore[attr-defined]
            "ticker": getattr(self, "ticker", None),
            "quantity": getattr(self, "quantity", None),
            "price": getattr(self, "price", None),
            "amount": self.signed_amount(),
            "notes": self.notes,
        }


class _TickerMixin(BaseModel):
    ticker: str = Field(..., min_length=1, max_length=20)

    @field_validator("ticker")
    @classmethod
    def _normalize_ticker(cls, value: str) -> str:
        return value.strip().upper()


class BuyDraft(_TickerMixin, _DraftBase):
    type: Literal["BUY"] = "BUY"
    quantity: PositiveDecimal
    price: PositiveDecimal

    def signed_amount(self) -> Decimal:
        return -(self.quantity * self.price)


class SellWithdrawalDraft(_TickerMixin, _DraftBase):
    type: Literal["SELL_WITHDRAWAL"] = "SELL_WITHDRAWAL"
    quantity: PositiveDecimal
    price: PositiveDecimal

    def signed_amount(self) -> Decimal:
        return self.quantity * self.price


class _CashDraft(_DraftBase):
    # Callers may send either sign; the type decides it.
    amount: Decimal

    @field_validator("amount")
    @classmethod
    def _magnitude(cls, value: Decimal) -> Decimal:
        if value == 0:
            raise ValueError("amount must be non-zero")
        return abs(value)


class CashCreditDraft(_CashDraft):
    type: Literal["CASH_CREDIT"] = "CASH_CREDIT"

    def signed_amount(self) -> Decimal:
        return self.amount


class CashDebitDraft(_CashDraft):
    type: Literal["CASH_DEBIT"] = "CASH_DEBIT"

    def signed_amount(self) -> Decimal:
        return -self.amount


class DividendDraft(_TickerMixin, _DraftBase):
    type: Literal["DIVIDEND"] = "DIVIDEND"
    amount: Decimal | None = None
    quantity: PositiveDecimal | None = None
    price: PositiveDecimal | None = None

    @model_validator(mode="after")
    def _resolve_amount(self) -> "DividendDraft":
        if self.quantity is not None and self.price is not None:
            self.amount = self.quantity * self.price
        elif self.amount is None:
            raise ValueError("dividend requires either amount or quantity and price")
        elif self.amount == 0:
            raise ValueError("amount must be non-zero")
        else:
            self.amount = abs(self.amount)
        return self

    def signed_amount(self) -> Decimal:
        # _resolve_amount always fills it in.
        return cast(Decimal, self.amount)


TransactionDraft = Annotated[
    Union[BuyDraft, SellWithdrawalDraft, CashCreditDraft, CashDebitDraft, DividendDraft],
    Field(discriminator="type"),
]

_draft_adapter: TypeAdapter[TransactionDraft] = TypeAdapter(TransactionDraft)


def parse_transaction_draft(data: Mapping[str, Any] | BaseModel) -> TransactionDraft:
    """Validate a loosely typed mapping into one of the five draft kinds."""

    if isinstance(data, (BuyDraft, SellWithdrawalDraft, CashCreditDraft, CashDebitDraft, DividendDraft)):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    payload = dict(data)
    raw_type = payload.get("type")
    if isinstance(raw_type, TransactionType):
        payload["type"] = raw_type.value
    elif isinstance(raw_type, str):
        payload["type"] = raw_type.strip().upper()
    try:
        return _draft_adapter.validate_python(payload)
    except ValidationError as exc:
        errors = [
            {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in exc.errors()
        ]
        raise TransactionValidationError("Invalid transaction draft", errors=errors) from exc


class TransactionSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    portfolio_id: int
    sequence: int
    date: dt.date
    type: TransactionType
    ticker: str | None = None
    quantity: float | None = None
    price: float | None = None
    amount: float
    status: TransactionStatus
    source: TransactionSource
    cash_balance_before: float | None = None
    cash_balance_after: float | None = None
    notes: str | None = None
    created_at: dt.datetime
    confirmed_at: dt.datetime | None = None
    rejected_at: dt.datetime | None = None
    rejection_reason: str | None = None


class RejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


class ConfirmBatchRequest(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)


class PortfolioCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128, examples=["Carteira de dividendos"])
    initial_cash: Decimal | None = Field(default=None, gt=0)
    initial_cash_date: dt.date | None = None


class PortfolioSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    name: str
    base_currency: str
    ledger_version: int
    created_at: dt.datetime


class PositionSchema(BaseModel):
    ticker: str
    quantity: float
    average_cost: float


class LedgerIssueSchema(BaseModel):
    code: str
    date: dt.date
    entry_id: int | str | None = None
    message: str
    amount: float
    ticker: str | None = None


class ReplaySummarySchema(BaseModel):
    portfolio_id: int
    ledger_version: int
    transactions_replayed: int
    cash_balance: float
    final_balance_alert: bool
    issues: list[LedgerIssueSchema] = Field(default_factory=list)
    remediation: list[dict[str, Any]] = Field(default_factory=list)


class BalancesSchema(BaseModel):
    portfolio_id: int
    ledger_version: int
    cash_balance: float
    positions: list[PositionSchema]
    issues: list[LedgerIssueSchema] = Field(default_factory=list)
    final_balance_alert: bool
    computed_at: dt.datetime | None = None


class BuyWithCashCreditRequest(BaseModel):
    """A BUY funded by a same-day cash credit for the same amount."""

    ticker: str
    date: dt.date
    quantity: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)
    notes: str | None = None


class DividendSuggestionSchema(BaseModel):
    ticker: str
    date: dt.date
    ex_date: dt.date
    quantity: float
    price: float
    amount: float


class DividendConfirmRequest(BaseModel):
    ticker: str
    date: dt.date
    quantity: Decimal = Field(..., gt=0)
    price: Decimal = Field(..., gt=0)
    notes: str | None = None


class GenerateSuggestionsResponse(BaseModel):
    created: list[TransactionSchema]
    skipped: int


class TransactionConfirmResponse(BaseModel):
    transaction: TransactionSchema
    summary: ReplaySummarySchema


class BatchConfirmResponse(BaseModel):
    transactions: list[TransactionSchema]
    summary: ReplaySummarySchema


class FundedPurchaseResponse(BaseModel):
    cash_credit: TransactionSchema
    purchase: TransactionSchema
    summary: ReplaySummarySchema


__all__ = [
    "BalancesSchema",
    "BatchConfirmResponse",
    "BuyDraft",
    "BuyWithCashCreditRequest",
    "CashCreditDraft",
    "CashDebitDraft",
    "ConfirmBatchRequest",
    "DividendConfirmRequest",
    "DividendDraft",
    "DividendSuggestionSchema",
    "FundedPurchaseResponse",
    "GenerateSuggestionsResponse",
    "LedgerIssueSchema",
    "PortfolioCreateRequest",
    "PortfolioSchema",
    "PositionSchema",
    "RejectRequest",
    "ReplaySummarySchema",
    "SellWithdrawalDraft",
    "TransactionConfirmResponse",
    "TransactionDraft",
    "TransactionSchema",
    "parse_transaction_draft",
]
