from __future__ import annotations

import json
import logging
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from . import ledger
from .ledger import (
    ChannelTotals,
    CustomerAllTime,
    DepositRecord,
    LoanRecord,
    MonthDocuments,
    MonthInitializationError,
    MonthTotals,
    RecordSetKind,
    SessionTerms,
)
from .models import (
    Customer,
    CustomerStatus,
    LedgerSession,
    MonthlyDeposit,
    MonthlyLoan,
    OperationLog,
    SESSION_SINGLETON_ID,
    SessionStatus,
    dump_rows,
)
from .schemas import (
    AllocationLineRead,
    AllocationPlanRead,
    AllocationRequest,
    AllTimeReport,
    BulkDeleteResult,
    ChannelTotalsRead,
    CustomerAllTimeRead,
    CustomerCreate,
    DepositRowRead,
    FinancialSummaryRead,
    InterestCalculationRead,
    InterestCalculationRequest,
    InterestSplitRead,
    InterestSplitRequest,
    LiveBalanceRead,
    LoanRowRead,
    MonthlyDepositRead,
    MonthlyDepositWrite,
    MonthlyLoanRead,
    MonthlyLoanWrite,
    MonthlyReport,
    MonthlyReportRow,
    MonthSummaryRead,
    MonthTotalsRead,
    OperationLogRead,
    SessionEnd,
    SessionRead,
    SessionStart,
)
from .timezone_utils import (
    ensure_local_datetime,
    month_id_for,
    month_start,
    normalize_month_id,
    now_local,
    previous_month_id,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HONORIFIC_RE = re.compile(r"\b(bhai|ben|kumar|kumari)\b")
NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

CUSTOMER_FIELD_LABELS = {
    "name": "name",
    "email": "email",
    "phone": "phone",
    "address": "address",
    "notes": "notes",
    "status": "status",
    "join_date": "join date",
}


def _round_amount(value: Any) -> float:
    return float(ledger.to_amount(value).quantize(CENT, rounding=ROUND_HALF_UP))


def _stringify_log_value(value: Any) -> str:
    if value is None:
        return "-"
    if hasattr(value, "value"):
        value = value.value
    if hasattr(value, "isoformat"):
        return value.isoformat()
    text = str(value).strip()
    return text or "-"


def _log_operation(
    session: Session,
    *,
    entity_type: str,
    entity_id: Optional[str],
    action: str,
    description: str,
    metadata: Optional[dict] = None,
) -> OperationLog:
    log = OperationLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        description=description,
        metadata_json=json.dumps(metadata, ensure_ascii=False, default=str) if metadata else None,
    )
    session.add(log)
    session.flush()
    logger.info("%s %s %s: %s", action, entity_type, entity_id or "-", description)
    return log


def _decode_metadata(metadata_json: Optional[str]) -> Optional[dict]:
    if not metadata_json:
        return None
    try:
        value = json.loads(metadata_json)
        return value if isinstance(value, dict) else None
    except json.JSONDecodeError:
        return None


def _month_id(raw: str) -> str:
    try:
        return normalize_month_id(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid month_id, expected YYYY-MM") from exc


# Customers


def clean_customer_name(name: str) -> str:
    lowered = (name or "").lower()
    without_honorifics = HONORIFIC_RE.sub("", lowered)
    return NON_ALNUM_RE.sub("", without_honorifics).strip()


def generate_customer_id(name: str, sr_no: int) -> str:
    return f"{sr_no}-{clean_customer_name(name)}"


def _unique_customer_id(session: Session, name: str, sr_no: int) -> str:
    base = generate_customer_id(name, sr_no)
    candidate = base
    suffix = 2
    while session.get(Customer, candidate) is not None:
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def _ensure_unique_name(session: Session, name: str, *, exclude_id: Optional[str] = None) -> None:
    stmt = select(Customer).where(func.lower(Customer.name) == name.lower())
    if exclude_id is not None:
        stmt = stmt.where(Customer.id != exclude_id)
    if session.exec(stmt).first() is not None:
        raise HTTPException(status_code=400, detail=f"Customer name already exists: {name}")


def list_customers(session: Session, *, active_only: bool = False) -> List[Customer]:
    stmt = select(Customer)
    if active_only:
        stmt = stmt.where(Customer.status == CustomerStatus.ACTIVE)
    return session.exec(stmt.order_by(Customer.sort_order.asc(), Customer.name.asc())).all()


def _customer_names(session: Session) -> Dict[str, Tuple[str, int]]:
    return {customer.id: (customer.name, customer.sort_order) for customer in list_customers(session)}


def get_customer(session: Session, customer_id: str) -> Customer:
    customer = session.get(Customer, customer_id)
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


def create_customer(session: Session, payload: CustomerCreate) -> Customer:
    _ensure_unique_name(session, payload.name)
    customer_count = session.exec(select(func.count(Customer.id))).one()
    max_order = session.exec(select(func.max(Customer.sort_order))).one()
    customer = Customer(**payload.model_dump())
    customer.id = _unique_customer_id(session, payload.name, int(customer_count or 0) + 1)
    customer.sort_order = 0 if max_order is None else int(max_order) + 1
    if customer.join_date is None:
        customer.join_date = now_local().date()
    session.add(customer)
    session.flush()
    _log_operation(
        session,
        entity_type="customer",
        entity_id=customer.id,
        action="create",
        description=f"Created customer {customer.name}",
        metadata={"sort_order": customer.sort_order},
    )
    session.commit()
    session.refresh(customer)
    return customer


def update_customer(session: Session, customer_id: str, payload: dict) -> Customer:
    customer = get_customer(session, customer_id)
    if payload.get("name"):
        _ensure_unique_name(session, payload["name"], exclude_id=customer_id)
    change_notes: List[str] = []
    for key, value in payload.items():
        old_value = getattr(customer, key)
        if old_value == value:
            continue
        setattr(customer, key, value)
        label = CUSTOMER_FIELD_LABELS.get(key, key)
        change_notes.append(f"{label} {_stringify_log_value(old_value)}→{_stringify_log_value(value)}")
    if change_notes:
        customer.updated_at = now_local()
        session.add(customer)
        _log_operation(
            session,
            entity_type="customer",
            entity_id=customer.id,
            action="update",
            description="; ".join(change_notes),
        )
        session.commit()
        session.refresh(customer)
    return customer


def _densify_sort_order(session: Session, ordered: Sequence[Customer]) -> None:
    for index, customer in enumerate(ordered):
        if customer.sort_order != index:
            customer.sort_order = index
            session.add(customer)


def reorder_customers(session: Session, customer_ids: Sequence[str]) -> List[Customer]:
    customers = list_customers(session)
    by_id = {customer.id: customer for customer in customers}
    unknown = [customer_id for customer_id in customer_ids if customer_id not in by_id]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown customer ids: {', '.join(unknown)}")
    requested = set(customer_ids)
    missing_active = [
        customer.id
        for customer in customers
        if customer.status == CustomerStatus.ACTIVE and customer.id not in requested
    ]
    if missing_active:
        raise HTTPException(
            status_code=400,
            detail=f"Reorder must include every active customer; missing: {', '.join(missing_active)}",
        )
    ordered = [by_id[customer_id] for customer_id in customer_ids]
    ordered.extend(customer for customer in customers if customer.id not in requested)
    _densify_sort_order(session, ordered)
    _log_operation(
        session,
        entity_type="customer",
        entity_id=None,
        action="reorder",
        description=f"Reordered {len(ordered)} customers",
        metadata={"order": [customer.id for customer in ordered]},
    )
    session.commit()
    return list_customers(session)


def delete_customer(session: Session, customer_id: str) -> Customer:
    customer = get_customer(session, customer_id)
    snapshot = Customer.model_validate(customer.model_dump())
    session.delete(customer)
    session.flush()
    _densify_sort_order(session, list_customers(session))
    _log_operation(
        session,
        entity_type="customer",
        entity_id=customer_id,
        action="delete",
        description=f"Deleted customer {snapshot.name}",
    )
    session.commit()
    return snapshot


def bulk_delete_customers(session: Session, customer_ids: Sequence[str]) -> BulkDeleteResult:
    deleted: List[str] = []
    missing: List[str] = []
    for customer_id in customer_ids:
        customer = session.get(Customer, customer_id)
        if customer is None:
            missing.append(customer_id)
            continue
        session.delete(customer)
        deleted.append(customer_id)
    session.flush()
    _densify_sort_order(session, list_customers(session))
    if deleted:
        _log_operation(
            session,
            entity_type="customer",
            entity_id=None,
            action="bulk_delete",
            description=f"Deleted {len(deleted)} customers",
            metadata={"customer_ids": deleted},
        )
    session.commit()
    return BulkDeleteResult(deleted=deleted, missing=missing)


# Session


def get_ledger_session(session: Session) -> Optional[LedgerSession]:
    return session.get(LedgerSession, SESSION_SINGLETON_ID)


def _require_ledger_session(session: Session) -> LedgerSession:
    record = get_ledger_session(session)
    if record is None:
        raise HTTPException(status_code=404, detail="No session has been started")
    return record


def session_terms(record: Optional[LedgerSession]) -> Optional[SessionTerms]:
    if record is None:
        return None
    return SessionTerms(
        interest_rate=ledger.to_amount(record.interest_rate),
        interest_rate_type=record.interest_rate_type,
        first_month_deposit=ledger.to_amount(record.first_month_deposit),
        further_month_deposit=ledger.to_amount(record.further_month_deposit),
        start_month_id=month_id_for(record.start_date),
        active=record.status == SessionStatus.ACTIVE,
    )


def to_session_read(record: LedgerSession) -> SessionRead:
    terms = session_terms(record)
    return SessionRead(
        status=record.status,
        start_date=record.start_date,
        end_date=record.end_date,
        interest_rate=record.interest_rate,
        interest_rate_type=record.interest_rate_type,
        first_month_deposit=record.first_month_deposit,
        further_month_deposit=record.further_month_deposit,
        monthly_rate=float(ledger.monthly_rate(terms)),
    )


def start_session(session: Session, payload: SessionStart) -> LedgerSession:
    record = get_ledger_session(session)
    if record is not None and record.status == SessionStatus.ACTIVE:
        raise HTTPException(status_code=409, detail="An active session is already in progress")
    now = now_local()
    if record is None:
        record = LedgerSession(id=SESSION_SINGLETON_ID, start_date=now.date(), interest_rate=payload.interest_rate)
    record.status = SessionStatus.ACTIVE
    record.start_date = payload.start_date or now.date()
    record.end_date = None
    record.interest_rate = payload.interest_rate
    record.interest_rate_type = payload.interest_rate_type
    record.first_month_deposit = payload.first_month_deposit
    record.further_month_deposit = payload.further_month_deposit
    record.created_at = now
    record.updated_at = now
    session.add(record)
    _log_operation(
        session,
        entity_type="session",
        entity_id=SESSION_SINGLETON_ID,
        action="start",
        description=f"Started session at {payload.interest_rate}% {payload.interest_rate_type.value}",
        metadata=payload.model_dump(mode="json"),
    )
    session.commit()
    session.refresh(record)
    return record


def end_session(session: Session, payload: SessionEnd) -> LedgerSession:
    record = _require_ledger_session(session)
    if record.status != SessionStatus.ACTIVE:
        raise HTTPException(status_code=409, detail="Only an active session can be ended")
    if payload.end_date < record.start_date:
        raise HTTPException(status_code=400, detail="End date cannot be before the start date")
    record.status = SessionStatus.CLOSED
    record.end_date = payload.end_date
    record.updated_at = now_local()
    session.add(record)
    _log_operation(
        session,
        entity_type="session",
        entity_id=SESSION_SINGLETON_ID,
        action="end",
        description=f"Ended session on {payload.end_date.isoformat()}",
    )
    session.commit()
    session.refresh(record)
    return record


def revert_session(session: Session) -> LedgerSession:
    record = _require_ledger_session(session)
    if record.status != SessionStatus.CLOSED:
        raise HTTPException(status_code=409, detail="Only a closed session can be reverted")
    previous_end = record.end_date
    record.status = SessionStatus.ACTIVE
    record.end_date = None
    record.updated_at = now_local()
    session.add(record)
    _log_operation(
        session,
        entity_type="session",
        entity_id=SESSION_SINGLETON_ID,
        action="revert",
        description="Reverted session to active",
        metadata={"previous_end_date": previous_end},
    )
    session.commit()
    session.refresh(record)
    return record


def delete_session(session: Session) -> None:
    record = _require_ledger_session(session)
    session.delete(record)
    _log_operation(
        session,
        entity_type="session",
        entity_id=SESSION_SINGLETON_ID,
        action="delete",
        description="Deleted session",
    )
    session.commit()


def ensure_entry_allowed(session: Session) -> SessionTerms:
    terms = session_terms(get_ledger_session(session))
    if terms is None or not terms.active:
        raise HTTPException(status_code=409, detail="Monthly entry requires an active session")
    return terms


# Monthly documents


def _deposit_document(session: Session, month_id: str) -> Optional[Dict[str, Any]]:
    record = session.get(MonthlyDeposit, month_id)
    return record.as_document() if record else None


def _loan_document(session: Session, month_id: str) -> Optional[Dict[str, Any]]:
    record = session.get(MonthlyLoan, month_id)
    return record.as_document() if record else None


def all_deposit_documents(session: Session) -> List[Dict[str, Any]]:
    return [record.as_document() for record in session.exec(select(MonthlyDeposit)).all()]


def all_loan_documents(session: Session) -> List[Dict[str, Any]]:
    return [record.as_document() for record in session.exec(select(MonthlyLoan)).all()]


def _deposit_row_read(record: DepositRecord) -> DepositRowRead:
    return DepositRowRead(
        customer_id=record.customer_id,
        cash=_round_amount(record.cash),
        bank=_round_amount(record.bank),
        total=_round_amount(record.total),
    )


def _loan_row_read(record: LoanRecord) -> LoanRowRead:
    return LoanRowRead(
        customer_id=record.customer_id,
        carry_fwd=_round_amount(record.carry_fwd),
        change_type=record.change_type or ledger.ChangeType.NEW,
        change_cash=_round_amount(record.change_cash),
        change_bank=_round_amount(record.change_bank),
        interest_cash=_round_amount(record.interest_cash),
        interest_bank=_round_amount(record.interest_bank),
        interest_total=_round_amount(record.effective_interest_total),
        change_total=_round_amount(ledger.change_total(record)),
        adjustment=_round_amount(ledger.loan_adjustment(record)),
        closing_balance=_round_amount(ledger.closing_balance(record)),
    )


def _totals_read(totals: MonthTotals) -> MonthTotalsRead:
    return MonthTotalsRead(
        deposit_cash=_round_amount(totals.deposit_cash),
        deposit_bank=_round_amount(totals.deposit_bank),
        deposit_total=_round_amount(totals.deposit_total),
        carry_fwd=_round_amount(totals.carry_fwd),
        change_cash=_round_amount(totals.change_cash),
        change_bank=_round_amount(totals.change_bank),
        closing_loan=_round_amount(totals.closing_loan),
        interest_cash=_round_amount(totals.interest_cash),
        interest_bank=_round_amount(totals.interest_bank),
        interest_total=_round_amount(totals.interest_total),
    )


def _ensure_known_customers(session: Session, customer_ids: Iterable[str]) -> None:
    known = set(_customer_names(session))
    unknown = [customer_id for customer_id in customer_ids if customer_id not in known]
    if unknown:
        raise HTTPException(status_code=400, detail=f"Unknown customer ids: {', '.join(unknown)}")


def _ensure_draft_allowed(record: Optional[Any], key: str) -> None:
    if record is None:
        return
    if ledger.resolve_record_set(record.as_document(), key).kind == RecordSetKind.OFFICIAL:
        raise HTTPException(
            status_code=409,
            detail=f"The {key} for {record.id} are already submitted; drafts apply only before submission",
        )


def list_months(session: Session) -> List[MonthSummaryRead]:
    deposit_docs = {doc["id"]: doc for doc in all_deposit_documents(session)}
    loan_docs = {doc["id"]: doc for doc in all_loan_documents(session)}
    month_ids = sorted(set(deposit_docs) | set(loan_docs), reverse=True)
    return [
        MonthSummaryRead(
            id=month_id,
            deposit_status=ledger.resolve_record_set(deposit_docs.get(month_id), "deposits").kind,
            loan_status=ledger.resolve_record_set(loan_docs.get(month_id), "loans").kind,
        )
        for month_id in month_ids
    ]


def read_deposit_month(session: Session, month_id: str) -> MonthlyDepositRead:
    month_id = _month_id(month_id)
    document = _deposit_document(session, month_id)
    record_set = ledger.resolve_record_set(document, "deposits")
    initialized = False
    if record_set.kind == RecordSetKind.EMPTY:
        terms = session_terms(get_ledger_session(session))
        customer_ids = [customer.id for customer in list_customers(session, active_only=True)]
        if terms is None:
            records = [DepositRecord(customer_id=customer_id) for customer_id in customer_ids]
        else:
            records = ledger.initialize_deposits(customer_ids, terms, month_id)
        initialized = True
    else:
        records = ledger.deposit_records(document)
    totals = ledger.aggregate_month(ledger.MonthRow(record.customer_id, deposit=record) for record in records)
    return MonthlyDepositRead(
        id=month_id,
        month_date=document["date"] if document else month_start(month_id),
        created_at=ensure_local_datetime(document["createdAt"]) if document else None,
        status=record_set.kind,
        initialized=initialized,
        deposits=[_deposit_row_read(record) for record in records],
        totals=_totals_read(totals),
    )


def save_deposit_month(
    session: Session,
    month_id: str,
    payload: MonthlyDepositWrite,
    *,
    submit: bool,
) -> MonthlyDepositRead:
    month_id = _month_id(month_id)
    ensure_entry_allowed(session)
    _ensure_known_customers(session, (row.customer_id for row in payload.deposits))
    rows = [
        DepositRecord.from_document(row.model_dump(by_alias=True)).to_document() for row in payload.deposits
    ]
    now = now_local()
    record = session.get(MonthlyDeposit, month_id)
    if not submit:
        _ensure_draft_allowed(record, "deposits")
    if record is None:
        record = MonthlyDeposit(id=month_id, period_date=payload.month_date or month_start(month_id), created_at=now)
    elif payload.month_date is not None:
        record.period_date = payload.month_date
    if submit:
        record.deposits_json = dump_rows(rows)
        record.draft_json = None
    else:
        record.draft_json = dump_rows(rows)
    record.updated_at = now
    session.add(record)
    _log_operation(
        session,
        entity_type="deposits",
        entity_id=month_id,
        action="submit" if submit else "draft",
        description=f"{'Submitted' if submit else 'Saved draft of'} deposits for {month_id} ({len(rows)} rows)",
    )
    session.commit()
    return read_deposit_month(session, month_id)


def delete_deposit_month(session: Session, month_id: str) -> None:
    month_id = _month_id(month_id)
    record = session.get(MonthlyDeposit, month_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Deposit month not found")
    session.delete(record)
    _log_operation(
        session,
        entity_type="deposits",
        entity_id=month_id,
        action="delete",
        description=f"Deleted deposits for {month_id}",
    )
    session.commit()


def initialize_loan_month(
    session: Session,
    month_id: str,
    *,
    fallback_zero: bool = False,
) -> List[LoanRecord]:
    """Seed a month's loan rows from the previous month-id's closing balances.

    Raises ``MonthInitializationError`` when the previous month cannot be
    read, unless ``fallback_zero`` asks for the zero state instead.
    """
    prev_id = previous_month_id(month_id)
    try:
        prev_document = _loan_document(session, prev_id)
    except SQLAlchemyError as exc:
        logger.exception("Reading loans for %s failed while initializing %s", prev_id, month_id)
        if not fallback_zero:
            raise MonthInitializationError(month_id, f"loans for {prev_id} could not be read") from exc
        session.rollback()
        prev_document = None
    prev_loans = ledger.loan_records(prev_document) if prev_document is not None else None
    terms = session_terms(get_ledger_session(session))
    rate = ledger.monthly_rate(terms) if terms is not None else ledger.ZERO
    return ledger.initialize_month(prev_loans, _loan_seed_customer_ids(session, prev_loans), rate)


def _loan_seed_customer_ids(session: Session, prev_loans: Optional[List[LoanRecord]]) -> List[str]:
    """Active customers plus anyone still owing from the previous month, in sort order.

    Owing customers that were deleted keep their previous-month position after
    the known customers.
    """
    owing = [
        loan.customer_id for loan in (prev_loans or []) if ledger.closing_balance(loan) != ledger.ZERO
    ]
    owing_set = set(owing)
    customers = list_customers(session)
    customer_ids = [
        customer.id
        for customer in customers
        if customer.status == CustomerStatus.ACTIVE or customer.id in owing_set
    ]
    known = {customer.id for customer in customers}
    customer_ids.extend(customer_id for customer_id in owing if customer_id not in known)
    return customer_ids


def read_loan_month(session: Session, month_id: str, *, fallback_zero: bool = False) -> MonthlyLoanRead:
    month_id = _month_id(month_id)
    document = _loan_document(session, month_id)
    record_set = ledger.resolve_record_set(document, "loans")
    initialized = False
    if record_set.kind == RecordSetKind.EMPTY:
        records = initialize_loan_month(session, month_id, fallback_zero=fallback_zero)
        initialized = True
    else:
        records = ledger.loan_records(document)
    totals = ledger.aggregate_month(ledger.MonthRow(record.customer_id, loan=record) for record in records)
    return MonthlyLoanRead(
        id=month_id,
        month_date=document["date"] if document else month_start(month_id),
        created_at=ensure_local_datetime(document["createdAt"]) if document else None,
        status=record_set.kind,
        initialized=initialized,
        loans=[_loan_row_read(record) for record in records],
        totals=_totals_read(totals),
    )


def save_loan_month(
    session: Session,
    month_id: str,
    payload: MonthlyLoanWrite,
    *,
    submit: bool,
) -> MonthlyLoanRead:
    month_id = _month_id(month_id)
    ensure_entry_allowed(session)
    _ensure_known_customers(session, (row.customer_id for row in payload.loans))
    rows = [LoanRecord.from_document(row.model_dump(by_alias=True)).to_document() for row in payload.loans]
    now = now_local()
    record = session.get(MonthlyLoan, month_id)
    if not submit:
        _ensure_draft_allowed(record, "loans")
    if record is None:
        record = MonthlyLoan(id=month_id, period_date=payload.month_date or month_start(month_id), created_at=now)
    elif payload.month_date is not None:
        record.period_date = payload.month_date
    if submit:
        record.loans_json = dump_rows(rows)
        record.draft_json = None
    else:
        record.draft_json = dump_rows(rows)
    record.updated_at = now
    session.add(record)
    _log_operation(
        session,
        entity_type="loans",
        entity_id=month_id,
        action="submit" if submit else "draft",
        description=f"{'Submitted' if submit else 'Saved draft of'} loans for {month_id} ({len(rows)} rows)",
    )
    session.commit()
    return read_loan_month(session, month_id)


def delete_loan_month(session: Session, month_id: str) -> None:
    month_id = _month_id(month_id)
    record = session.get(MonthlyLoan, month_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Loan month not found")
    session.delete(record)
    _log_operation(
        session,
        entity_type="loans",
        entity_id=month_id,
        action="delete",
        description=f"Deleted loans for {month_id}",
    )
    session.commit()


def split_interest(payload: InterestSplitRequest) -> InterestSplitRead:
    split = ledger.apportion_interest(payload.interest_total, payload.edited_field, payload.edited_value)
    return InterestSplitRead(
        interest_cash=float(split.cash),
        interest_bank=float(split.bank),
        interest_total=float(split.total),
    )


# Reports


def get_monthly_report(session: Session, month_id: str) -> MonthlyReport:
    month_id = _month_id(month_id)
    deposits = ledger.deposit_records(_deposit_document(session, month_id))
    loans = ledger.loan_records(_loan_document(session, month_id))
    names = _customer_names(session)
    present = {record.customer_id for record in deposits} | {record.customer_id for record in loans}
    order = [customer_id for customer_id in names if customer_id in present]
    rows = ledger.pair_month_rows(deposits, loans, order)
    report_rows = []
    for row in rows:
        name, sort_order = names.get(row.customer_id, (None, None))
        report_rows.append(
            MonthlyReportRow(
                customer_id=row.customer_id,
                name=name,
                sort_order=sort_order,
                deposit=_deposit_row_read(row.deposit) if row.deposit else None,
                loan=_loan_row_read(row.loan) if row.loan else None,
            )
        )
    return MonthlyReport(month_id=month_id, rows=report_rows, totals=_totals_read(ledger.aggregate_month(rows)))


def _customer_all_time_read(result: CustomerAllTime, name: Optional[str]) -> CustomerAllTimeRead:
    return CustomerAllTimeRead(
        customer_id=result.customer_id,
        name=name,
        total_deposit=_round_amount(result.total_deposit),
        total_loan_given=_round_amount(result.total_loan_given),
        total_loan_repaid=_round_amount(result.total_loan_repaid),
        net_loan_change=_round_amount(result.net_loan_change),
        latest_closing_loan=_round_amount(result.latest_closing_loan),
        total_interest=_round_amount(result.total_interest),
        latest_loan_month_id=result.latest_loan_month_id,
    )


def get_customer_all_time(session: Session, customer_id: str) -> CustomerAllTimeRead:
    customer = get_customer(session, customer_id)
    result = ledger.all_time_for_customer(
        customer.id, all_deposit_documents(session), all_loan_documents(session)
    )
    return _customer_all_time_read(result, customer.name)


def get_all_time_report(session: Session) -> AllTimeReport:
    deposit_docs = all_deposit_documents(session)
    loan_docs = all_loan_documents(session)
    results = [
        (ledger.all_time_for_customer(customer.id, deposit_docs, loan_docs), customer.name)
        for customer in list_customers(session)
    ]
    grand = CustomerAllTime(
        customer_id="*",
        total_deposit=sum((item.total_deposit for item, _ in results), ledger.ZERO),
        total_loan_given=sum((item.total_loan_given for item, _ in results), ledger.ZERO),
        total_loan_repaid=sum((item.total_loan_repaid for item, _ in results), ledger.ZERO),
        latest_closing_loan=sum((item.latest_closing_loan for item, _ in results), ledger.ZERO),
        total_interest=sum((item.total_interest for item, _ in results), ledger.ZERO),
        latest_loan_month_id=max(
            (item.latest_loan_month_id for item, _ in results if item.latest_loan_month_id), default=None
        ),
    )
    return AllTimeReport(
        customers=[_customer_all_time_read(item, name) for item, name in results],
        totals=_customer_all_time_read(grand, "Total"),
    )


def _channel_read(totals: ChannelTotals) -> ChannelTotalsRead:
    return ChannelTotalsRead(
        cash=_round_amount(totals.cash),
        bank=_round_amount(totals.bank),
        total=_round_amount(totals.total),
    )


def get_financial_summary(session: Session) -> FinancialSummaryRead:
    summary = ledger.all_time_summary(all_deposit_documents(session), all_loan_documents(session))
    customer_count = session.exec(select(func.count(Customer.id))).one()
    return FinancialSummaryRead(
        deposits=_channel_read(summary.deposits),
        repayments=_channel_read(summary.repayments),
        interest=_channel_read(summary.interest),
        loans_given=_channel_read(summary.loans_given),
        credited=_channel_read(summary.credited),
        debit=_channel_read(summary.debit),
        available=_channel_read(summary.available),
        outstanding_loan=_round_amount(summary.outstanding_loan),
        latest_loan_month_id=summary.latest_loan_month_id,
        customer_count=int(customer_count or 0),
    )


def get_live_balance(session: Session, month_id: str) -> LiveBalanceRead:
    month_id = _month_id(month_id)
    prev_id = previous_month_id(month_id)
    result = ledger.live_balance(
        MonthDocuments(_deposit_document(session, prev_id), _loan_document(session, prev_id)),
        MonthDocuments(_deposit_document(session, month_id), _loan_document(session, month_id)),
    )
    return LiveBalanceRead(
        month_id=month_id,
        previous_month_id=prev_id,
        prev_net_balance=_round_amount(result.prev_net_balance),
        current_deposits=_round_amount(result.current_deposits),
        loan_given=_round_amount(result.loan_given),
        loan_repaid=_round_amount(result.loan_repaid),
        live_balance=_round_amount(result.live_balance),
    )


def get_allocation_plan(session: Session, payload: AllocationRequest) -> AllocationPlanRead:
    customers = list_customers(session, active_only=True)
    customer_ids = [customer.id for customer in customers]
    if payload.distribute_equally:
        allocations: Dict[str, Any] = ledger.distribute_equally(payload.total_fund, customer_ids)
    else:
        unknown = [customer_id for customer_id in payload.allocations if customer_id not in set(customer_ids)]
        if unknown:
            raise HTTPException(status_code=400, detail=f"Unknown customer ids: {', '.join(unknown)}")
        allocations = payload.allocations
    latest = ledger.latest_document(all_loan_documents(session))
    plan = ledger.allocation_plan(customer_ids, latest, allocations)
    names = {customer.id: customer.name for customer in customers}
    return AllocationPlanRead(
        latest_loan_month_id=str(latest["id"]) if latest else None,
        lines=[
            AllocationLineRead(
                customer_id=line.customer_id,
                name=names.get(line.customer_id),
                allocated_fund=_round_amount(line.allocated_fund),
                outstanding_loan=_round_amount(line.outstanding_loan),
                total_payable=_round_amount(line.total_payable),
            )
            for line in plan.lines
        ],
        allocated_fund=_round_amount(plan.allocated_fund),
        outstanding_loan=_round_amount(plan.outstanding_loan),
        total_payable=_round_amount(plan.total_payable),
    )


def calculate_interest(payload: InterestCalculationRequest) -> InterestCalculationRead:
    try:
        owed = ledger.calculate_interest(payload.carry_fwd_loan, payload.interest_rate, payload.period_in_months)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return InterestCalculationRead(interest_owed=_round_amount(owed))


# Operation logs


def list_operation_logs(
    session: Session,
    limit: int = 200,
    *,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
) -> List[OperationLog]:
    safe_limit = max(1, min(limit, 500))
    stmt = select(OperationLog)
    if entity_type:
        stmt = stmt.where(OperationLog.entity_type == entity_type)
    if entity_id is not None:
        stmt = stmt.where(OperationLog.entity_id == entity_id)
    if start_at is not None:
        stmt = stmt.where(OperationLog.created_at >= start_at)
    if end_at is not None:
        stmt = stmt.where(OperationLog.created_at <= end_at)
    stmt = stmt.order_by(OperationLog.id.desc()).limit(safe_limit)
    return session.exec(stmt).all()


def to_operation_log_read(log: OperationLog) -> OperationLogRead:
    return OperationLogRead(
        id=log.id,
        entity_type=log.entity_type,
        entity_id=log.entity_id,
        action=log.action,
        description=log.description,
        metadata=_decode_metadata(log.metadata_json),
        created_at=ensure_local_datetime(log.created_at) or log.created_at,
    )
