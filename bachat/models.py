import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlmodel import Field, SQLModel

from .ledger import InterestRateType
from .timezone_utils import now_local


class CustomerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


SESSION_SINGLETON_ID = "status"


def _load_rows(payload: Optional[str]) -> Optional[List[Dict[str, Any]]]:
    if payload is None:
        return None
    try:
        rows = json.loads(payload)
    except (TypeError, json.JSONDecodeError):
        return None
    return rows if isinstance(rows, list) else None


def dump_rows(rows: Optional[List[Dict[str, Any]]]) -> Optional[str]:
    if rows is None:
        return None
    return json.dumps(rows, ensure_ascii=False)


class Customer(SQLModel, table=True):
    id: str = Field(primary_key=True, max_length=120)
    name: str = Field(index=True)
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    status: CustomerStatus = Field(default=CustomerStatus.ACTIVE)
    join_date: Optional[date] = None
    sort_order: int = Field(default=0, index=True)
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)


class MonthlyDeposit(SQLModel, table=True):
    id: str = Field(primary_key=True, max_length=7)
    period_date: date
    deposits_json: Optional[str] = None
    draft_json: Optional[str] = None
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)

    def as_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.period_date,
            "createdAt": self.created_at,
            "deposits": _load_rows(self.deposits_json),
            "draft": _load_rows(self.draft_json),
        }


class MonthlyLoan(SQLModel, table=True):
    id: str = Field(primary_key=True, max_length=7)
    period_date: date
    loans_json: Optional[str] = None
    draft_json: Optional[str] = None
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)

    def as_document(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.period_date,
            "createdAt": self.created_at,
            "loans": _load_rows(self.loans_json),
            "draft": _load_rows(self.draft_json),
        }


class LedgerSession(SQLModel, table=True):
    id: str = Field(default=SESSION_SINGLETON_ID, primary_key=True)
    status: SessionStatus = Field(default=SessionStatus.ACTIVE)
    start_date: date
    end_date: Optional[date] = None
    interest_rate: float
    interest_rate_type: InterestRateType = Field(default=InterestRateType.ANNUAL)
    first_month_deposit: float = 0.0
    further_month_deposit: float = 0.0
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)


class OperationLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    entity_type: str = Field(index=True)
    entity_id: Optional[str] = Field(default=None, index=True)
    action: str
    description: str = Field(default="")
    metadata_json: Optional[str] = None
    created_at: datetime = Field(default_factory=now_local)
