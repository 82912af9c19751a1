"""Ledger derivation rules shared by every view.

Closing balances, interest apportionment, month totals, carry-forward
seeding and the all-time roll-ups are computed here and nowhere else. All
functions are pure: they take already-fetched monthly documents (plain
mappings shaped like the stored JSON) and return ``Decimal`` results.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, NamedTuple, Optional, Sequence, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")
MONTHS_PER_YEAR = Decimal("12")


class ChangeType(str, Enum):
    NEW = "new"
    INCREASE = "increase"
    DECREASE = "decrease"


GIVING_CHANGE_TYPES = (ChangeType.NEW, ChangeType.INCREASE)


class InterestRateType(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class RecordSetKind(str, Enum):
    OFFICIAL = "official"
    DRAFT = "draft"
    EMPTY = "empty"


class MonthInitializationError(Exception):
    """The previous month could not be read, so a new month cannot be seeded."""

    def __init__(self, month_id: str, reason: str = "") -> None:
        self.month_id = month_id
        self.reason = reason
        message = f"Could not initialize month {month_id}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


def to_amount(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        return value if value.is_finite() else ZERO
    if isinstance(value, str) and not value.strip():
        return ZERO
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return ZERO
    return amount if amount.is_finite() else ZERO


def _optional_amount(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return to_amount(value)


def _change_type(value: Any) -> Optional[ChangeType]:
    if isinstance(value, ChangeType):
        return value
    try:
        return ChangeType(value)
    except ValueError:
        return None


@dataclass(frozen=True)
class DepositRecord:
    customer_id: str
    cash: Decimal = ZERO
    bank: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.cash + self.bank

    @classmethod
    def from_document(cls, raw: Mapping[str, Any]) -> "DepositRecord":
        return cls(
            customer_id=str(raw.get("customerId") or ""),
            cash=to_amount(raw.get("cash")),
            bank=to_amount(raw.get("bank")),
        )

    def to_document(self) -> Dict[str, Any]:
        return {"customerId": self.customer_id, "cash": float(self.cash), "bank": float(self.bank)}


@dataclass(frozen=True)
class LoanRecord:
    customer_id: str
    carry_fwd: Decimal = ZERO
    change_type: Optional[ChangeType] = ChangeType.NEW
    change_cash: Decimal = ZERO
    change_bank: Decimal = ZERO
    interest_cash: Decimal = ZERO
    interest_bank: Decimal = ZERO
    # None when a stored row predates the interestTotal field
    interest_total: Optional[Decimal] = None

    @classmethod
    def from_document(cls, raw: Mapping[str, Any]) -> "LoanRecord":
        return cls(
            customer_id=str(raw.get("customerId") or ""),
            carry_fwd=to_amount(raw.get("carryFwd")),
            change_type=_change_type(raw.get("changeType")),
            change_cash=to_amount(raw.get("changeCash")),
            change_bank=to_amount(raw.get("changeBank")),
            interest_cash=to_amount(raw.get("interestCash")),
            interest_bank=to_amount(raw.get("interestBank")),
            interest_total=_optional_amount(raw.get("interestTotal")),
        )

    @property
    def effective_interest_total(self) -> Decimal:
        if self.interest_total is not None:
            return self.interest_total
        return self.interest_cash + self.interest_bank

    def to_document(self) -> Dict[str, Any]:
        return {
            "customerId": self.customer_id,
            "carryFwd": float(self.carry_fwd),
            "changeType": self.change_type.value if self.change_type else None,
            "changeCash": float(self.change_cash),
            "changeBank": float(self.change_bank),
            "interestCash": float(self.interest_cash),
            "interestBank": float(self.interest_bank),
            "interestTotal": float(self.effective_interest_total),
        }


@dataclass(frozen=True)
class MonthlyRecordSet:
    """Effective rows of a monthly document: official, draft, or nothing."""

    kind: RecordSetKind
    rows: tuple = ()

    @classmethod
    def official(cls, rows: Iterable[Mapping[str, Any]]) -> "MonthlyRecordSet":
        return cls(RecordSetKind.OFFICIAL, tuple(rows))

    @classmethod
    def draft(cls, rows: Iterable[Mapping[str, Any]]) -> "MonthlyRecordSet":
        return cls(RecordSetKind.DRAFT, tuple(rows))

    @classmethod
    def empty(cls) -> "MonthlyRecordSet":
        return cls(RecordSetKind.EMPTY)


def resolve_record_set(document: Optional[Mapping[str, Any]], key: str) -> MonthlyRecordSet:
    """Pick ``document[key]``, falling back to ``document["draft"]``.

    Only a missing (``None``) official list falls through to the draft; an
    empty official list is still official.
    """
    if not document:
        return MonthlyRecordSet.empty()
    official = document.get(key)
    if official is not None:
        return MonthlyRecordSet.official(official)
    draft = document.get("draft")
    if draft is not None:
        return MonthlyRecordSet.draft(draft)
    return MonthlyRecordSet.empty()


def deposit_records(document: Optional[Mapping[str, Any]]) -> List[DepositRecord]:
    return [DepositRecord.from_document(row) for row in resolve_record_set(document, "deposits").rows]


def loan_records(document: Optional[Mapping[str, Any]]) -> List[LoanRecord]:
    return [LoanRecord.from_document(row) for row in resolve_record_set(document, "loans").rows]


def latest_document(documents: Iterable[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    """Document with the greatest ``YYYY-MM`` id.

    Zero-padded month-ids sort chronologically as plain strings.
    """
    latest: Optional[Mapping[str, Any]] = None
    for document in documents:
        if latest is None or str(document.get("id") or "") > str(latest.get("id") or ""):
            latest = document
    return latest


# Ledger Derivation Engine


def change_total(loan: LoanRecord) -> Decimal:
    return loan.change_cash + loan.change_bank


def loan_movement(loan: LoanRecord, amount: Optional[Decimal] = None) -> Tuple[Decimal, Decimal]:
    """``(given, repaid)`` for a row's change, or for ``amount`` under its change type.

    New and increase rows lend money out, decrease rows take it back, and a
    row without a known change type moves nothing.
    """
    moved = change_total(loan) if amount is None else amount
    if loan.change_type in GIVING_CHANGE_TYPES:
        return moved, ZERO
    if loan.change_type == ChangeType.DECREASE:
        return ZERO, moved
    return ZERO, ZERO


def loan_adjustment(loan: LoanRecord) -> Decimal:
    given, repaid = loan_movement(loan)
    return given - repaid


def closing_balance(loan: LoanRecord) -> Decimal:
    """Outstanding loan at month end: ``carryFwd + adjustment``."""
    return loan.carry_fwd + loan_adjustment(loan)


@dataclass(frozen=True)
class InterestSplit:
    cash: Decimal
    bank: Decimal

    @property
    def total(self) -> Decimal:
        return self.cash + self.bank


def apportion_interest(total: Any, edited_field: str, edited_value: Any) -> InterestSplit:
    """Recompute the untouched side so that ``cash + bank == total``.

    The remainder is not clamped; editing one side above the total drives
    the other side negative.
    """
    total_amount = to_amount(total)
    edited_amount = to_amount(edited_value)
    remainder = total_amount - edited_amount
    if edited_field == "cash":
        return InterestSplit(cash=edited_amount, bank=remainder)
    if edited_field == "bank":
        return InterestSplit(cash=remainder, bank=edited_amount)
    raise ValueError("edited_field must be 'cash' or 'bank'")


def interest_split_holds(loan: LoanRecord) -> bool:
    if loan.interest_total is None:
        return True
    return loan.interest_cash + loan.interest_bank == loan.interest_total


class MonthRow(NamedTuple):
    customer_id: str
    deposit: Optional[DepositRecord] = None
    loan: Optional[LoanRecord] = None


@dataclass(frozen=True)
class MonthTotals:
    deposit_cash: Decimal = ZERO
    deposit_bank: Decimal = ZERO
    carry_fwd: Decimal = ZERO
    change_cash: Decimal = ZERO
    change_bank: Decimal = ZERO
    closing_loan: Decimal = ZERO
    interest_cash: Decimal = ZERO
    interest_bank: Decimal = ZERO

    @property
    def deposit_total(self) -> Decimal:
        return self.deposit_cash + self.deposit_bank

    @property
    def interest_total(self) -> Decimal:
        return self.interest_cash + self.interest_bank


def _signed(loan: LoanRecord, amount: Decimal) -> Decimal:
    given, repaid = loan_movement(loan, amount)
    return given - repaid


def aggregate_month(rows: Iterable[MonthRow]) -> MonthTotals:
    """Column totals for one month; change columns are signed by change type."""
    sums = dict.fromkeys(MonthTotals.__dataclass_fields__, ZERO)
    for row in rows:
        if row.deposit is not None:
            sums["deposit_cash"] += row.deposit.cash
            sums["deposit_bank"] += row.deposit.bank
        loan = row.loan
        if loan is not None:
            sums["carry_fwd"] += loan.carry_fwd
            sums["change_cash"] += _signed(loan, loan.change_cash)
            sums["change_bank"] += _signed(loan, loan.change_bank)
            sums["closing_loan"] += closing_balance(loan)
            sums["interest_cash"] += loan.interest_cash
            sums["interest_bank"] += loan.interest_bank
    return MonthTotals(**sums)


def pair_month_rows(
    deposits: Iterable[DepositRecord],
    loans: Iterable[LoanRecord],
    customer_order: Optional[Sequence[str]] = None,
) -> List[MonthRow]:
    """Join deposit and loan rows of one month by customer.

    Customers listed in ``customer_order`` come first in that order; any
    other customer present in the data follows in first-seen order.
    """
    deposit_map: Dict[str, DepositRecord] = {}
    loan_map: Dict[str, LoanRecord] = {}
    seen: List[str] = []
    for deposit in deposits:
        if deposit.customer_id not in deposit_map and deposit.customer_id not in loan_map:
            seen.append(deposit.customer_id)
        deposit_map[deposit.customer_id] = deposit
    for loan in loans:
        if loan.customer_id not in deposit_map and loan.customer_id not in loan_map:
            seen.append(loan.customer_id)
        loan_map[loan.customer_id] = loan
    ordered = list(customer_order or [])
    ordered_set = set(ordered)
    ordered.extend(customer_id for customer_id in seen if customer_id not in ordered_set)
    return [
        MonthRow(customer_id, deposit_map.get(customer_id), loan_map.get(customer_id))
        for customer_id in ordered
    ]


# Carry-Forward Roller


@dataclass(frozen=True)
class SessionTerms:
    interest_rate: Decimal
    interest_rate_type: InterestRateType = InterestRateType.ANNUAL
    first_month_deposit: Decimal = ZERO
    further_month_deposit: Decimal = ZERO
    start_month_id: Optional[str] = None
    active: bool = True


def monthly_rate(terms: SessionTerms) -> Decimal:
    """Convert the session's percentage rate into a per-month fraction."""
    rate = to_amount(terms.interest_rate) / HUNDRED
    if terms.interest_rate_type == InterestRateType.ANNUAL:
        return rate / MONTHS_PER_YEAR
    return rate


def initialize_month(
    prev_month_loans: Optional[Iterable[LoanRecord]],
    customer_ids: Iterable[str],
    rate: Any,
) -> List[LoanRecord]:
    """Seed next month's loan rows from the previous month's closing balances.

    ``prev_month_loans`` is ``None`` when no previous document exists; every
    customer then starts from zero.
    """
    closing_by_customer = {
        loan.customer_id: closing_balance(loan) for loan in (prev_month_loans or [])
    }
    rate_amount = to_amount(rate)
    seeded: List[LoanRecord] = []
    for customer_id in customer_ids:
        carry_fwd = closing_by_customer.get(customer_id, ZERO)
        interest_total = carry_fwd * rate_amount
        seeded.append(
            LoanRecord(
                customer_id=customer_id,
                carry_fwd=carry_fwd,
                change_type=ChangeType.NEW,
                change_cash=ZERO,
                change_bank=ZERO,
                interest_cash=interest_total,
                interest_bank=ZERO,
                interest_total=interest_total,
            )
        )
    return seeded


def initialize_deposits(customer_ids: Iterable[str], terms: SessionTerms, month_id: str) -> List[DepositRecord]:
    if terms.start_month_id is not None and month_id == terms.start_month_id:
        default_cash = to_amount(terms.first_month_deposit)
    else:
        default_cash = to_amount(terms.further_month_deposit)
    return [DepositRecord(customer_id=customer_id, cash=default_cash, bank=ZERO) for customer_id in customer_ids]


def carry_forward_mismatches(
    prev_month_loans: Iterable[LoanRecord],
    month_loans: Iterable[LoanRecord],
) -> List[Dict[str, Any]]:
    """Rows whose ``carryFwd`` differs from last month's closing balance."""
    expected = {loan.customer_id: closing_balance(loan) for loan in prev_month_loans}
    mismatches = []
    for loan in month_loans:
        previous = expected.get(loan.customer_id, ZERO)
        if loan.carry_fwd != previous:
            mismatches.append(
                {"customer_id": loan.customer_id, "expected": previous, "actual": loan.carry_fwd}
            )
    return mismatches


# Period Aggregator


@dataclass(frozen=True)
class CustomerAllTime:
    customer_id: str
    total_deposit: Decimal = ZERO
    total_loan_given: Decimal = ZERO
    total_loan_repaid: Decimal = ZERO
    latest_closing_loan: Decimal = ZERO
    total_interest: Decimal = ZERO
    latest_loan_month_id: Optional[str] = None

    @property
    def net_loan_change(self) -> Decimal:
        return self.total_loan_given - self.total_loan_repaid


def all_time_for_customer(
    customer_id: str,
    deposit_docs: Iterable[Mapping[str, Any]],
    loan_docs: Iterable[Mapping[str, Any]],
) -> CustomerAllTime:
    total_deposit = ZERO
    for document in deposit_docs:
        for deposit in deposit_records(document):
            if deposit.customer_id == customer_id:
                total_deposit += deposit.total

    given = repaid = interest = latest_closing = ZERO
    latest_month: Optional[str] = None
    for document in loan_docs:
        month_id = str(document.get("id") or "")
        for loan in loan_records(document):
            if loan.customer_id != customer_id:
                continue
            loan_given, loan_repaid = loan_movement(loan)
            given += loan_given
            repaid += loan_repaid
            interest += loan.effective_interest_total
            if latest_month is None or month_id > latest_month:
                latest_month = month_id
                latest_closing = closing_balance(loan)

    return CustomerAllTime(
        customer_id=customer_id,
        total_deposit=total_deposit,
        total_loan_given=given,
        total_loan_repaid=repaid,
        latest_closing_loan=latest_closing,
        total_interest=interest,
        latest_loan_month_id=latest_month,
    )


@dataclass(frozen=True)
class ChannelTotals:
    cash: Decimal = ZERO
    bank: Decimal = ZERO

    @property
    def total(self) -> Decimal:
        return self.cash + self.bank

    def __add__(self, other: "ChannelTotals") -> "ChannelTotals":
        return ChannelTotals(cash=self.cash + other.cash, bank=self.bank + other.bank)

    def __sub__(self, other: "ChannelTotals") -> "ChannelTotals":
        return ChannelTotals(cash=self.cash - other.cash, bank=self.bank - other.bank)


@dataclass(frozen=True)
class FinancialSummary:
    deposits: ChannelTotals = field(default_factory=ChannelTotals)
    repayments: ChannelTotals = field(default_factory=ChannelTotals)
    interest: ChannelTotals = field(default_factory=ChannelTotals)
    loans_given: ChannelTotals = field(default_factory=ChannelTotals)
    outstanding_loan: Decimal = ZERO
    latest_loan_month_id: Optional[str] = None

    @property
    def credited(self) -> ChannelTotals:
        return self.deposits + self.repayments + self.interest

    @property
    def debit(self) -> ChannelTotals:
        return self.loans_given

    @property
    def available(self) -> ChannelTotals:
        return self.credited - self.debit


def all_time_summary(
    deposit_docs: Iterable[Mapping[str, Any]],
    loan_docs: Iterable[Mapping[str, Any]],
) -> FinancialSummary:
    """Cash/bank split of everything ever credited and debited."""
    deposits = ChannelTotals()
    for document in deposit_docs:
        for deposit in deposit_records(document):
            deposits += ChannelTotals(deposit.cash, deposit.bank)

    loan_docs = list(loan_docs)
    repayments = interest = loans_given = ChannelTotals()
    for document in loan_docs:
        for loan in loan_records(document):
            interest += ChannelTotals(loan.interest_cash, loan.interest_bank)
            given_cash, repaid_cash = loan_movement(loan, loan.change_cash)
            given_bank, repaid_bank = loan_movement(loan, loan.change_bank)
            loans_given += ChannelTotals(given_cash, given_bank)
            repayments += ChannelTotals(repaid_cash, repaid_bank)

    latest = latest_document(loan_docs)
    outstanding = sum((closing_balance(loan) for loan in loan_records(latest)), ZERO)
    return FinancialSummary(
        deposits=deposits,
        repayments=repayments,
        interest=interest,
        loans_given=loans_given,
        outstanding_loan=outstanding,
        latest_loan_month_id=str(latest.get("id")) if latest else None,
    )


# Summary Reconciler


class MonthDocuments(NamedTuple):
    deposits: Optional[Mapping[str, Any]] = None
    loans: Optional[Mapping[str, Any]] = None


@dataclass(frozen=True)
class LiveBalance:
    prev_net_balance: Decimal
    current_deposits: Decimal
    loan_given: Decimal
    loan_repaid: Decimal

    @property
    def live_balance(self) -> Decimal:
        return self.prev_net_balance + self.current_deposits - self.loan_given + self.loan_repaid


def net_balance(month: MonthDocuments) -> Decimal:
    """Deposits of a month minus the closing loans of the same month."""
    deposited = sum((deposit.total for deposit in deposit_records(month.deposits)), ZERO)
    outstanding = sum((closing_balance(loan) for loan in loan_records(month.loans)), ZERO)
    return deposited - outstanding


def live_balance(prev_month: MonthDocuments, current_month: MonthDocuments) -> LiveBalance:
    given = repaid = ZERO
    for loan in loan_records(current_month.loans):
        loan_given, loan_repaid = loan_movement(loan)
        given += loan_given
        repaid += loan_repaid
    return LiveBalance(
        prev_net_balance=net_balance(prev_month),
        current_deposits=sum((deposit.total for deposit in deposit_records(current_month.deposits)), ZERO),
        loan_given=given,
        loan_repaid=repaid,
    )


# Fund allocation and the interest calculator


@dataclass(frozen=True)
class AllocationLine:
    customer_id: str
    allocated_fund: Decimal
    outstanding_loan: Decimal

    @property
    def total_payable(self) -> Decimal:
        return self.outstanding_loan + self.allocated_fund


@dataclass(frozen=True)
class AllocationPlan:
    lines: tuple

    @property
    def allocated_fund(self) -> Decimal:
        return sum((line.allocated_fund for line in self.lines), ZERO)

    @property
    def outstanding_loan(self) -> Decimal:
        return sum((line.outstanding_loan for line in self.lines), ZERO)

    @property
    def total_payable(self) -> Decimal:
        return sum((line.total_payable for line in self.lines), ZERO)


def distribute_equally(total_fund: Any, customer_ids: Sequence[str]) -> Dict[str, Decimal]:
    fund = to_amount(total_fund)
    if not customer_ids or fund <= ZERO:
        return {}
    share = fund / Decimal(len(customer_ids))
    return {customer_id: share for customer_id in customer_ids}


def allocation_plan(
    customer_ids: Sequence[str],
    latest_loan_doc: Optional[Mapping[str, Any]],
    allocations: Mapping[str, Any],
) -> AllocationPlan:
    outstanding = {loan.customer_id: closing_balance(loan) for loan in loan_records(latest_loan_doc)}
    lines = tuple(
        AllocationLine(
            customer_id=customer_id,
            allocated_fund=to_amount(allocations.get(customer_id)),
            outstanding_loan=outstanding.get(customer_id, ZERO),
        )
        for customer_id in customer_ids
    )
    return AllocationPlan(lines=lines)


def calculate_interest(carry_fwd_loan: Any, annual_rate_percent: Any, period_in_months: int) -> Decimal:
    loan = to_amount(carry_fwd_loan)
    rate = to_amount(annual_rate_percent)
    if loan < ZERO:
        raise ValueError("carry_fwd_loan must be non-negative")
    if rate < ZERO or rate > HUNDRED:
        raise ValueError("annual_rate_percent must be between 0 and 100")
    if period_in_months < 1:
        raise ValueError("period_in_months must be at least 1")
    return loan * (rate / HUNDRED / MONTHS_PER_YEAR) * Decimal(period_in_months)
