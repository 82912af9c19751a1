from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager, contextmanager
from typing import Any, Generator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

from . import crud
from .database import engine, init_db
from .ledger import MonthInitializationError
from .schemas import (
    AllocationPlanRead,
    AllocationRequest,
    AllTimeReport,
    BulkDeleteResult,
    CustomerAllTimeRead,
    CustomerBulkDelete,
    CustomerCreate,
    CustomerRead,
    CustomerReorder,
    CustomerUpdate,
    FinancialSummaryRead,
    InterestCalculationRead,
    InterestCalculationRequest,
    InterestSplitRead,
    InterestSplitRequest,
    LiveBalanceRead,
    MonthlyDepositRead,
    MonthlyDepositWrite,
    MonthlyLoanRead,
    MonthlyLoanWrite,
    MonthlyReport,
    MonthSummaryRead,
    OperationLogRead,
    SessionEnd,
    SessionRead,
    SessionStart,
)
from .timezone_utils import parse_local_range_value

logging.basicConfig(
    level=os.getenv("BACHAT_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [origin.strip() for origin in os.getenv("BACHAT_CORS_ORIGINS", "*").split(",") if origin.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("Bachat ledger API started")
    yield


app = FastAPI(title="Bachat Ledger", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ConnectionManager:
    def __init__(self) -> None:
        self.connections: list[WebSocket] = []

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self.connections.append(websocket)

    def disconnect(self, websocket: WebSocket) -> None:
        if websocket in self.connections:
            self.connections.remove(websocket)

    async def send(self, websocket: WebSocket, message: Any) -> None:
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError):
            self.disconnect(websocket)

    async def broadcast(self, message: Any) -> None:
        for websocket in list(self.connections):
            await self.send(websocket, message)


manager = ConnectionManager()


def get_session() -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session


def build_summary_payload(summary: FinancialSummaryRead) -> dict[str, Any]:
    return {"type": "summary", "data": jsonable_encoder(summary)}


async def broadcast_summary(session: Session) -> None:
    summary = crud.get_financial_summary(session)
    await manager.broadcast(build_summary_payload(summary))


@app.get("/api/health")
def health():
    return {"status": "ok"}


# Customers


@app.get("/api/customers", response_model=List[CustomerRead])
def list_customers_api(active_only: bool = False, session: Session = Depends(get_session)):
    return crud.list_customers(session, active_only=active_only)


@app.post("/api/customers", response_model=CustomerRead, status_code=201)
async def create_customer_api(payload: CustomerCreate, session: Session = Depends(get_session)):
    customer = crud.create_customer(session, payload)
    await broadcast_summary(session)
    return customer


@app.put("/api/customers/order", response_model=List[CustomerRead])
async def reorder_customers_api(payload: CustomerReorder, session: Session = Depends(get_session)):
    customers = crud.reorder_customers(session, payload.customer_ids)
    await broadcast_summary(session)
    return customers


@app.post("/api/customers/bulk-delete", response_model=BulkDeleteResult)
async def bulk_delete_customers_api(payload: CustomerBulkDelete, session: Session = Depends(get_session)):
    result = crud.bulk_delete_customers(session, payload.customer_ids)
    await broadcast_summary(session)
    return result


@app.get("/api/customers/{customer_id}", response_model=CustomerRead)
def get_customer_api(customer_id: str, session: Session = Depends(get_session)):
    return crud.get_customer(session, customer_id)


@app.put("/api/customers/{customer_id}", response_model=CustomerRead)
async def update_customer_api(customer_id: str, payload: CustomerUpdate, session: Session = Depends(get_session)):
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No fields to update")
    customer = crud.update_customer(session, customer_id, updates)
    await broadcast_summary(session)
    return customer


@app.delete("/api/customers/{customer_id}", response_model=CustomerRead)
async def delete_customer_api(customer_id: str, session: Session = Depends(get_session)):
    deleted = crud.delete_customer(session, customer_id)
    await broadcast_summary(session)
    return deleted


@app.get("/api/customers/{customer_id}/all-time", response_model=CustomerAllTimeRead)
def customer_all_time_api(customer_id: str, session: Session = Depends(get_session)):
    return crud.get_customer_all_time(session, customer_id)


# Session


@app.get("/api/session", response_model=Optional[SessionRead])
def get_session_api(session: Session = Depends(get_session)):
    record = crud.get_ledger_session(session)
    return crud.to_session_read(record) if record else None


@app.post("/api/session/start", response_model=SessionRead, status_code=201)
async def start_session_api(payload: SessionStart, session: Session = Depends(get_session)):
    record = crud.start_session(session, payload)
    await broadcast_summary(session)
    return crud.to_session_read(record)


@app.post("/api/session/end", response_model=SessionRead)
async def end_session_api(payload: SessionEnd, session: Session = Depends(get_session)):
    record = crud.end_session(session, payload)
    await broadcast_summary(session)
    return crud.to_session_read(record)


@app.post("/api/session/revert", response_model=SessionRead)
async def revert_session_api(session: Session = Depends(get_session)):
    record = crud.revert_session(session)
    await broadcast_summary(session)
    return crud.to_session_read(record)


@app.delete("/api/session", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session_api(session: Session = Depends(get_session)):
    crud.delete_session(session)
    await broadcast_summary(session)


# Monthly deposits and loans


@app.get("/api/months", response_model=List[MonthSummaryRead])
def list_months_api(session: Session = Depends(get_session)):
    return crud.list_months(session)


@app.get("/api/deposits/{month_id}", response_model=MonthlyDepositRead)
def read_deposits_api(month_id: str, session: Session = Depends(get_session)):
    return crud.read_deposit_month(session, month_id)


@app.put("/api/deposits/{month_id}", response_model=MonthlyDepositRead)
async def submit_deposits_api(month_id: str, payload: MonthlyDepositWrite, session: Session = Depends(get_session)):
    result = crud.save_deposit_month(session, month_id, payload, submit=True)
    await broadcast_summary(session)
    return result


@app.put("/api/deposits/{month_id}/draft", response_model=MonthlyDepositRead)
async def save_deposits_draft_api(month_id: str, payload: MonthlyDepositWrite, session: Session = Depends(get_session)):
    result = crud.save_deposit_month(session, month_id, payload, submit=False)
    await broadcast_summary(session)
    return result


@app.delete("/api/deposits/{month_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_deposits_api(month_id: str, session: Session = Depends(get_session)):
    crud.delete_deposit_month(session, month_id)
    await broadcast_summary(session)


@app.post("/api/loans/interest-split", response_model=InterestSplitRead)
def interest_split_api(payload: InterestSplitRequest):
    return crud.split_interest(payload)


@app.get("/api/loans/{month_id}", response_model=MonthlyLoanRead)
def read_loans_api(month_id: str, fallback: Optional[str] = None, session: Session = Depends(get_session)):
    if fallback not in (None, "zero"):
        raise HTTPException(status_code=400, detail="fallback must be 'zero' when given")
    try:
        return crud.read_loan_month(session, month_id, fallback_zero=fallback == "zero")
    except MonthInitializationError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@app.put("/api/loans/{month_id}", response_model=MonthlyLoanRead)
async def submit_loans_api(month_id: str, payload: MonthlyLoanWrite, session: Session = Depends(get_session)):
    result = crud.save_loan_month(session, month_id, payload, submit=True)
    await broadcast_summary(session)
    return result


@app.put("/api/loans/{month_id}/draft", response_model=MonthlyLoanRead)
async def save_loans_draft_api(month_id: str, payload: MonthlyLoanWrite, session: Session = Depends(get_session)):
    result = crud.save_loan_month(session, month_id, payload, submit=False)
    await broadcast_summary(session)
    return result


@app.delete("/api/loans/{month_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_loans_api(month_id: str, session: Session = Depends(get_session)):
    crud.delete_loan_month(session, month_id)
    await broadcast_summary(session)


# Reports and tools


@app.get("/api/reports/monthly/{month_id}", response_model=MonthlyReport)
def monthly_report_api(month_id: str, session: Session = Depends(get_session)):
    return crud.get_monthly_report(session, month_id)


@app.get("/api/reports/all-time", response_model=AllTimeReport)
def all_time_report_api(session: Session = Depends(get_session)):
    return crud.get_all_time_report(session)


@app.get("/api/summary", response_model=FinancialSummaryRead)
def summary_api(session: Session = Depends(get_session)):
    return crud.get_financial_summary(session)


@app.get("/api/summary/live/{month_id}", response_model=LiveBalanceRead)
def live_balance_api(month_id: str, session: Session = Depends(get_session)):
    return crud.get_live_balance(session, month_id)


@app.post("/api/allocation/plan", response_model=AllocationPlanRead)
def allocation_plan_api(payload: AllocationRequest, session: Session = Depends(get_session)):
    return crud.get_allocation_plan(session, payload)


@app.post("/api/interest/calculate", response_model=InterestCalculationRead)
def interest_calculator_api(payload: InterestCalculationRequest):
    return crud.calculate_interest(payload)


@app.get("/api/operation-logs", response_model=List[OperationLogRead])
def operation_logs_api(
    limit: int = 200,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    session: Session = Depends(get_session),
):
    start_at = None
    end_at = None
    if start_date:
        try:
            start_at = parse_local_range_value(start_date, is_range_end=False)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid start_date") from exc
    if end_date:
        try:
            end_at = parse_local_range_value(end_date, is_range_end=True)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid end_date") from exc
    if start_at and end_at and end_at < start_at:
        raise HTTPException(status_code=400, detail="end_date must be after start_date")
    logs = crud.list_operation_logs(
        session,
        limit=limit,
        entity_type=entity_type,
        entity_id=entity_id,
        start_at=start_at,
        end_at=end_at,
    )
    return [crud.to_operation_log_read(log) for log in logs]


def summary_snapshot() -> dict[str, Any]:
    provider = app.dependency_overrides.get(get_session, get_session)
    with contextmanager(provider)() as session:
        return build_summary_payload(crud.get_financial_summary(session))


@app.websocket("/ws/summary")
async def summary_ws(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        await manager.send(websocket, summary_snapshot())
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
