from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .ledger import ChangeType, InterestRateType, RecordSetKind, to_amount
from .models import CustomerStatus, SessionStatus


def _normalize_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    trimmed = " ".join(value.split())
    if not trimmed:
        raise ValueError("name must not be empty")
    return trimmed


def _normalize_optional_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    trimmed = value.strip()
    return trimmed or None


def _ensure_non_negative(value: Optional[float], field_name: str) -> Optional[float]:
    if value is None:
        return value
    if value != value:
        raise ValueError(f"{field_name} must be a number")
    if value < 0:
        raise ValueError(f"{field_name} must be non-negative")
    return value


def _ensure_unique_ids(ids: List[str], field_name: str) -> List[str]:
    cleaned = [item.strip() for item in ids]
    if any(not item for item in cleaned):
        raise ValueError(f"{field_name} must not contain empty ids")
    if len(set(cleaned)) != len(cleaned):
        raise ValueError(f"{field_name} must not contain duplicates")
    return cleaned


class DocumentModel(BaseModel):
    """Rows and monthly documents keep the stored camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerCreate(BaseModel):
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    status: CustomerStatus = CustomerStatus.ACTIVE
    join_date: Optional[date] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _normalize_name(value)

    @field_validator("email", "phone", "address", "notes")
    @classmethod
    def strip_optional_text(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_optional_text(value)


class CustomerRead(CustomerCreate):
    id: str
    sort_order: int
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[CustomerStatus] = None
    join_date: Optional[date] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_name(value)

    @field_validator("email", "phone", "address", "notes")
    @classmethod
    def strip_optional_text(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_optional_text(value)


class CustomerReorder(BaseModel):
    customer_ids: List[str] = Field(min_length=1)

    @field_validator("customer_ids")
    @classmethod
    def validate_customer_ids(cls, value: List[str]) -> List[str]:
        return _ensure_unique_ids(value, "customer_ids")


class CustomerBulkDelete(BaseModel):
    customer_ids: List[str] = Field(min_length=1)

    @field_validator("customer_ids")
    @classmethod
    def validate_customer_ids(cls, value: List[str]) -> List[str]:
        return _ensure_unique_ids(value, "customer_ids")


class BulkDeleteResult(BaseModel):
    deleted: List[str]
    missing: List[str] = Field(default_factory=list)


class DepositEntry(DocumentModel):
    customer_id: str
    cash: float = 0.0
    bank: float = 0.0

    @field_validator("customer_id")
    @classmethod
    def validate_customer_id(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("customerId is required")
        return trimmed

    @field_validator("cash", "bank", mode="before")
    @classmethod
    def blank_amount_is_zero(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 0.0
        return value

    @field_validator("cash", "bank")
    @classmethod
    def validate_amounts(cls, value: float, info: ValidationInfo) -> float:
        return _ensure_non_negative(value, info.field_name)


class LoanRow(DocumentModel):
    customer_id: str
    carry_fwd: float = 0.0
    change_type: ChangeType = ChangeType.NEW
    change_cash: float = 0.0
    change_bank: float = 0.0
    interest_cash: float = 0.0
    interest_bank: float = 0.0
    interest_total: Optional[float] = None

    @field_validator("customer_id")
    @classmethod
    def validate_customer_id(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("customerId is required")
        return trimmed

    @field_validator("carry_fwd", "change_cash", "change_bank", "interest_cash", "interest_bank", mode="before")
    @classmethod
    def blank_amount_is_zero(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 0.0
        return value

    @field_validator("change_cash", "change_bank")
    @classmethod
    def validate_change_amounts(cls, value: float, info: ValidationInfo) -> float:
        return _ensure_non_negative(value, info.field_name)


class LoanEntry(LoanRow):
    @model_validator(mode="after")
    def validate_interest_split(self) -> "LoanEntry":
        split_total = to_amount(self.interest_cash) + to_amount(self.interest_bank)
        if self.interest_total is None:
            self.interest_total = float(split_total)
        elif to_amount(self.interest_total) != split_total:
            raise ValueError("interestCash and interestBank must add up to interestTotal")
        return self


class DepositRowRead(DepositEntry):
    total: float


class LoanRowRead(LoanRow):
    change_total: float
    adjustment: float
    closing_balance: float


class MonthTotalsRead(DocumentModel):
    deposit_cash: float = 0.0
    deposit_bank: float = 0.0
    deposit_total: float = 0.0
    carry_fwd: float = 0.0
    change_cash: float = 0.0
    change_bank: float = 0.0
    closing_loan: float = 0.0
    interest_cash: float = 0.0
    interest_bank: float = 0.0
    interest_total: float = 0.0


class MonthlyDepositWrite(DocumentModel):
    month_date: Optional[date] = Field(default=None, alias="date")
    deposits: List[DepositEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def ensure_unique_customers(self) -> "MonthlyDepositWrite":
        _ensure_unique_ids([row.customer_id for row in self.deposits], "deposits")
        return self


class MonthlyLoanWrite(DocumentModel):
    month_date: Optional[date] = Field(default=None, alias="date")
    loans: List[LoanEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def ensure_unique_customers(self) -> "MonthlyLoanWrite":
        _ensure_unique_ids([row.customer_id for row in self.loans], "loans")
        return self


class MonthlyDepositRead(DocumentModel):
    id: str
    month_date: Optional[date] = Field(default=None, alias="date")
    created_at: Optional[datetime] = None
    status: RecordSetKind
    initialized: bool = False
    deposits: List[DepositRowRead]
    totals: MonthTotalsRead


class MonthlyLoanRead(DocumentModel):
    id: str
    month_date: Optional[date] = Field(default=None, alias="date")
    created_at: Optional[datetime] = None
    status: RecordSetKind
    initialized: bool = False
    loans: List[LoanRowRead]
    totals: MonthTotalsRead


class MonthSummaryRead(DocumentModel):
    id: str
    deposit_status: RecordSetKind
    loan_status: RecordSetKind


class InterestSplitRequest(DocumentModel):
    interest_total: float
    edited_field: Literal["cash", "bank"]
    edited_value: float


class InterestSplitRead(DocumentModel):
    interest_cash: float
    interest_bank: float
    interest_total: float


class SessionStart(BaseModel):
    interest_rate: float = Field(gt=0)
    interest_rate_type: InterestRateType = InterestRateType.ANNUAL
    first_month_deposit: float = 0.0
    further_month_deposit: float = 0.0
    start_date: Optional[date] = None

    @field_validator("first_month_deposit", "further_month_deposit")
    @classmethod
    def validate_deposits(cls, value: float, info: ValidationInfo) -> float:
        return _ensure_non_negative(value, info.field_name)


class SessionEnd(BaseModel):
    end_date: date


class SessionRead(BaseModel):
    status: SessionStatus
    start_date: date
    end_date: Optional[date] = None
    interest_rate: float
    interest_rate_type: InterestRateType
    first_month_deposit: float
    further_month_deposit: float
    monthly_rate: float
    model_config = ConfigDict(from_attributes=True)


class MonthlyReportRow(BaseModel):
    customer_id: str
    name: Optional[str] = None
    sort_order: Optional[int] = None
    deposit: Optional[DepositRowRead] = None
    loan: Optional[LoanRowRead] = None


class MonthlyReport(BaseModel):
    month_id: str
    rows: List[MonthlyReportRow]
    totals: MonthTotalsRead


class CustomerAllTimeRead(BaseModel):
    customer_id: str
    name: Optional[str] = None
    total_deposit: float = 0.0
    total_loan_given: float = 0.0
    total_loan_repaid: float = 0.0
    net_loan_change: float = 0.0
    latest_closing_loan: float = 0.0
    total_interest: float = 0.0
    latest_loan_month_id: Optional[str] = None


class AllTimeReport(BaseModel):
    customers: List[CustomerAllTimeRead]
    totals: CustomerAllTimeRead


class ChannelTotalsRead(BaseModel):
    cash: float = 0.0
    bank: float = 0.0
    total: float = 0.0


class FinancialSummaryRead(BaseModel):
    deposits: ChannelTotalsRead
    repayments: ChannelTotalsRead
    interest: ChannelTotalsRead
    loans_given: ChannelTotalsRead
    credited: ChannelTotalsRead
    debit: ChannelTotalsRead
    available: ChannelTotalsRead
    outstanding_loan: float = 0.0
    latest_loan_month_id: Optional[str] = None
    customer_count: int = 0


class LiveBalanceRead(BaseModel):
    month_id: str
    previous_month_id: str
    prev_net_balance: float
    current_deposits: float
    loan_given: float
    loan_repaid: float
    live_balance: float


class AllocationRequest(BaseModel):
    allocations: Dict[str, float] = Field(default_factory=dict)
    total_fund: Optional[float] = None
    distribute_equally: bool = False

    @field_validator("allocations")
    @classmethod
    def validate_allocations(cls, value: Dict[str, float]) -> Dict[str, float]:
        for customer_id, amount in value.items():
            _ensure_non_negative(amount, f"allocations[{customer_id}]")
        return value

    @model_validator(mode="after")
    def ensure_fund_for_distribution(self) -> "AllocationRequest":
        if self.distribute_equally and (self.total_fund is None or self.total_fund <= 0):
            raise ValueError("total_fund must be positive to distribute equally")
        return self


class AllocationLineRead(BaseModel):
    customer_id: str
    name: Optional[str] = None
    allocated_fund: float
    outstanding_loan: float
    total_payable: float


class AllocationPlanRead(BaseModel):
    latest_loan_month_id: Optional[str] = None
    lines: List[AllocationLineRead]
    allocated_fund: float
    outstanding_loan: float
    total_payable: float


class InterestCalculationRequest(BaseModel):
    carry_fwd_loan: float = Field(ge=0)
    interest_rate: float = Field(ge=0, le=100)
    period_in_months: int = Field(ge=1)


class InterestCalculationRead(BaseModel):
    interest_owed: float


class OperationLogRead(BaseModel):
    id: int
    entity_type: str
    entity_id: Optional[str]
    action: str
    description: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)