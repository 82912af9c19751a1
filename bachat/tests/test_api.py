from datetime import date
import sys
from pathlib import Path

# Ensure project root is on sys.path so `import bachat` works when running the test directly
ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from bachat import crud
from bachat.app import app, get_session
from bachat.models import MonthlyLoan, dump_rows
from bachat.scripts.audit_consistency import run_audit

ASHA = "1-ashapatel"
RAVI = "2-ravi"


def get_test_client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)

    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    client = TestClient(app)
    client._engine = engine  # type: ignore[attr-defined]
    return client


def seed_customers(client):
    first = client.post("/api/customers", json={"name": "Asha ben Patel", "phone": " 98765 "})
    second = client.post("/api/customers", json={"name": "Ravi bhai"})
    assert first.status_code == 201
    assert second.status_code == 201
    return first.json(), second.json()


def start_session(client, **overrides):
    payload = {
        "interest_rate": 12,
        "interest_rate_type": "annual",
        "first_month_deposit": 1000,
        "further_month_deposit": 500,
        "start_date": "2024-01-05",
    }
    payload.update(overrides)
    return client.post("/api/session/start", json=payload)


def submit_january(client):
    deposits = client.put(
        "/api/deposits/2024-01",
        json={"deposits": [{"customerId": ASHA, "cash": 300, "bank": 200}]},
    )
    assert deposits.status_code == 200
    loans = client.put(
        "/api/loans/2024-01",
        json={
            "loans": [
                {
                    "customerId": ASHA,
                    "carryFwd": 1000,
                    "changeType": "increase",
                    "changeCash": 500,
                    "changeBank": 0,
                }
            ]
        },
    )
    assert loans.status_code == 200
    return loans.json()


def test_customer_ids_strip_honorifics_and_sort_order_grows():
    client = get_test_client()
    asha, ravi = seed_customers(client)
    assert asha["id"] == ASHA
    assert asha["phone"] == "98765"
    assert asha["sort_order"] == 0
    assert ravi["id"] == RAVI
    assert ravi["sort_order"] == 1

    duplicate = client.post("/api/customers", json={"name": "asha BEN patel"})
    assert duplicate.status_code == 400


def test_reorder_requires_every_active_customer():
    client = get_test_client()
    seed_customers(client)

    missing = client.put("/api/customers/order", json={"customer_ids": [RAVI]})
    assert missing.status_code == 400

    reordered = client.put("/api/customers/order", json={"customer_ids": [RAVI, ASHA]})
    assert reordered.status_code == 200
    assert [(row["id"], row["sort_order"]) for row in reordered.json()] == [(RAVI, 0), (ASHA, 1)]


def test_delete_and_bulk_delete_customers_densify_order():
    client = get_test_client()
    seed_customers(client)
    client.post("/api/customers", json={"name": "Meena kumari"})

    deleted = client.delete(f"/api/customers/{ASHA}")
    assert deleted.status_code == 200
    assert deleted.json()["name"] == "Asha ben Patel"
    remaining = client.get("/api/customers").json()
    assert [row["sort_order"] for row in remaining] == [0, 1]

    result = client.post("/api/customers/bulk-delete", json={"customer_ids": [RAVI, "9-ghost"]})
    assert result.status_code == 200
    assert result.json() == {"deleted": [RAVI], "missing": ["9-ghost"]}
    assert client.get(f"/api/customers/{RAVI}").status_code == 404


def test_update_customer_records_operation_log():
    client = get_test_client()
    seed_customers(client)

    response = client.put(f"/api/customers/{RAVI}", json={"status": "inactive", "notes": "moved"})
    assert response.status_code == 200
    assert response.json()["status"] == "inactive"
    assert client.put(f"/api/customers/{RAVI}", json={}).status_code == 400

    logs = client.get("/api/operation-logs", params={"entity_type": "customer", "entity_id": RAVI}).json()
    assert logs[0]["action"] == "update"
    assert "status active→inactive" in logs[0]["description"]


def test_session_lifecycle_and_conflicts():
    client = get_test_client()
    assert client.get("/api/session").json() is None
    assert client.post("/api/session/revert").status_code == 404

    started = start_session(client)
    assert started.status_code == 201
    assert started.json()["status"] == "active"
    assert started.json()["monthly_rate"] == pytest.approx(0.01)
    assert start_session(client).status_code == 409
    assert client.post("/api/session/revert").status_code == 409

    too_early = client.post("/api/session/end", json={"end_date": "2023-12-31"})
    assert too_early.status_code == 400

    ended = client.post("/api/session/end", json={"end_date": "2024-06-30"})
    assert ended.status_code == 200
    assert ended.json()["status"] == "closed"
    assert client.post("/api/session/end", json={"end_date": "2024-07-01"}).status_code == 409

    reverted = client.post("/api/session/revert")
    assert reverted.status_code == 200
    assert reverted.json()["status"] == "active"
    assert reverted.json()["end_date"] is None

    assert client.delete("/api/session").status_code == 204
    assert client.get("/api/session").json() is None


def test_monthly_rate_for_monthly_session():
    client = get_test_client()
    response = start_session(client, interest_rate=1.5, interest_rate_type="monthly")
    assert response.json()["monthly_rate"] == pytest.approx(0.015)
    assert start_session(get_test_client(), interest_rate=0).status_code == 422


def test_monthly_entry_requires_active_session():
    client = get_test_client()
    seed_customers(client)
    body = {"deposits": [{"customerId": ASHA, "cash": 100}]}
    assert client.put("/api/deposits/2024-01", json=body).status_code == 409

    start_session(client)
    client.post("/api/session/end", json={"end_date": "2024-03-31"})
    assert client.put("/api/deposits/2024-01/draft", json=body).status_code == 409
    assert client.put("/api/loans/2024-01", json={"loans": []}).status_code == 409


def test_new_deposit_month_uses_session_defaults():
    client = get_test_client()
    seed_customers(client)
    start_session(client)

    first = client.get("/api/deposits/2024-01").json()
    assert first["status"] == "empty"
    assert first["initialized"] is True
    assert [row["cash"] for row in first["deposits"]] == [1000, 1000]
    assert first["totals"]["depositTotal"] == pytest.approx(2000)

    later = client.get("/api/deposits/2024-02").json()
    assert [row["cash"] for row in later["deposits"]] == [500, 500]
    assert all(row["bank"] == 0 for row in later["deposits"])


def test_deposit_draft_then_submit():
    client = get_test_client()
    seed_customers(client)
    start_session(client)

    draft = client.put(
        "/api/deposits/2024-02/draft",
        json={"date": "2024-02-10", "deposits": [{"customerId": ASHA, "cash": "", "bank": 250}]},
    )
    assert draft.status_code == 200
    assert draft.json()["status"] == "draft"
    assert draft.json()["date"] == "2024-02-10"
    assert draft.json()["deposits"][0]["cash"] == 0

    submitted = client.put("/api/deposits/2024-02", json={"deposits": []})
    assert submitted.status_code == 200
    assert submitted.json()["status"] == "official"
    assert submitted.json()["deposits"] == []

    months = client.get("/api/months").json()
    assert months == [{"id": "2024-02", "depositStatus": "official", "loanStatus": "empty"}]

    assert client.delete("/api/deposits/2024-02").status_code == 204
    assert client.delete("/api/deposits/2024-02").status_code == 404


def test_deposit_validation():
    client = get_test_client()
    seed_customers(client)
    start_session(client)

    negative = client.put("/api/deposits/2024-01", json={"deposits": [{"customerId": ASHA, "cash": -5}]})
    assert negative.status_code == 422
    duplicated = client.put(
        "/api/deposits/2024-01",
        json={"deposits": [{"customerId": ASHA, "cash": 1}, {"customerId": ASHA, "cash": 2}]},
    )
    assert duplicated.status_code == 422
    unknown = client.put("/api/deposits/2024-01", json={"deposits": [{"customerId": "7-nobody", "cash": 1}]})
    assert unknown.status_code == 400
    assert client.get("/api/deposits/2024-13").status_code == 400


def test_loan_month_rolls_forward_closing_balance():
    client = get_test_client()
    seed_customers(client)
    start_session(client)

    january = submit_january(client)
    row = january["loans"][0]
    assert row["changeTotal"] == pytest.approx(500)
    assert row["adjustment"] == pytest.approx(500)
    assert row["closingBalance"] == pytest.approx(1500)
    assert january["totals"]["closingLoan"] == pytest.approx(1500)

    february = client.get("/api/loans/2024-02")
    assert february.status_code == 200
    data = february.json()
    assert data["status"] == "empty"
    assert data["initialized"] is True
    rows = {item["customerId"]: item for item in data["loans"]}
    assert rows[ASHA]["carryFwd"] == pytest.approx(1500)
    assert rows[ASHA]["interestTotal"] == pytest.approx(15)
    assert rows[ASHA]["interestCash"] == pytest.approx(15)
    assert rows[ASHA]["interestBank"] == 0
    assert rows[ASHA]["changeType"] == "new"
    assert rows[RAVI]["carryFwd"] == 0
    assert rows[RAVI]["interestTotal"] == 0


def test_loan_draft_is_shown_until_submitted():
    client = get_test_client()
    seed_customers(client)
    start_session(client)

    body = {
        "loans": [
            {
                "customerId": RAVI,
                "carryFwd": 200,
                "changeType": "decrease",
                "changeCash": 50,
                "changeBank": 25,
                "interestCash": 1,
                "interestBank": 1,
            }
        ]
    }
    draft = client.put("/api/loans/2024-03/draft", json=body)
    assert draft.status_code == 200
    assert draft.json()["status"] == "draft"
    assert draft.json()["initialized"] is False
    assert draft.json()["loans"][0]["closingBalance"] == pytest.approx(125)
    assert draft.json()["loans"][0]["interestTotal"] == pytest.approx(2)
    assert draft.json()["totals"]["changeCash"] == pytest.approx(-50)

    official = client.put("/api/loans/2024-03", json=body)
    assert official.json()["status"] == "official"
    assert client.get("/api/months").json()[0]["loanStatus"] == "official"

    assert client.delete("/api/loans/2024-03").status_code == 204
    assert client.get("/api/loans/2024-03").json()["initialized"] is True


def test_loan_initialization_failure_is_distinguishable(monkeypatch):
    client = get_test_client()
    seed_customers(client)
    start_session(client)
    submit_january(client)

    real_loan_document = crud._loan_document

    def flaky_loan_document(session, month_id):
        if month_id == "2024-01":
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return real_loan_document(session, month_id)

    monkeypatch.setattr(crud, "_loan_document", flaky_loan_document)

    failed = client.get("/api/loans/2024-02")
    assert failed.status_code == 503
    assert "2024-02" in failed.json()["detail"]

    fallback = client.get("/api/loans/2024-02", params={"fallback": "zero"})
    assert fallback.status_code == 200
    assert all(row["carryFwd"] == 0 for row in fallback.json()["loans"])

    assert client.get("/api/loans/2024-02", params={"fallback": "retry"}).status_code == 400


def test_interest_split_endpoint_keeps_total():
    client = get_test_client()
    response = client.post(
        "/api/loans/interest-split",
        json={"interestTotal": 15, "editedField": "cash", "editedValue": 6.4},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["interestBank"] == pytest.approx(8.6)
    assert data["interestCash"] + data["interestBank"] == pytest.approx(15)

    negative = client.post(
        "/api/loans/interest-split",
        json={"interestTotal": 10, "editedField": "bank", "editedValue": 12},
    )
    assert negative.json()["interestCash"] == pytest.approx(-2)


def test_reports_share_month_totals():
    client = get_test_client()
    seed_customers(client)
    start_session(client)
    submit_january(client)

    report = client.get("/api/reports/monthly/2024-01")
    assert report.status_code == 200
    data = report.json()
    assert data["month_id"] == "2024-01"
    assert len(data["rows"]) == 1
    assert data["rows"][0]["name"] == "Asha ben Patel"
    assert data["rows"][0]["deposit"]["total"] == pytest.approx(500)
    assert data["totals"]["closingLoan"] == pytest.approx(1500)
    assert data["totals"]["depositTotal"] == pytest.approx(500)

    all_time = client.get("/api/reports/all-time").json()
    by_id = {row["customer_id"]: row for row in all_time["customers"]}
    assert by_id[ASHA]["total_deposit"] == pytest.approx(500)
    assert by_id[ASHA]["net_loan_change"] == pytest.approx(500)
    assert by_id[ASHA]["latest_closing_loan"] == pytest.approx(1500)
    assert by_id[RAVI]["latest_loan_month_id"] is None
    assert all_time["totals"]["name"] == "Total"
    assert all_time["totals"]["total_loan_given"] == pytest.approx(500)

    single = client.get(f"/api/customers/{ASHA}/all-time").json()
    assert single["latest_loan_month_id"] == "2024-01"
    assert single["total_loan_given"] == pytest.approx(500)


def test_financial_summary_and_live_balance():
    client = get_test_client()
    seed_customers(client)
    start_session(client)
    submit_january(client)

    summary = client.get("/api/summary").json()
    assert summary["deposits"] == {"cash": 300, "bank": 200, "total": 500}
    assert summary["loans_given"]["cash"] == pytest.approx(500)
    assert summary["credited"]["total"] == pytest.approx(500)
    assert summary["available"]["total"] == pytest.approx(0)
    assert summary["outstanding_loan"] == pytest.approx(1500)
    assert summary["latest_loan_month_id"] == "2024-01"
    assert summary["customer_count"] == 2

    live = client.get("/api/summary/live/2024-02").json()
    assert live["previous_month_id"] == "2024-01"
    assert live["prev_net_balance"] == pytest.approx(-1000)
    assert live["live_balance"] == pytest.approx(-1000)


def test_allocation_plan_and_interest_calculator():
    client = get_test_client()
    seed_customers(client)
    start_session(client)
    submit_january(client)

    plan = client.post("/api/allocation/plan", json={"total_fund": 1000, "distribute_equally": True})
    assert plan.status_code == 200
    data = plan.json()
    assert data["latest_loan_month_id"] == "2024-01"
    lines = {line["customer_id"]: line for line in data["lines"]}
    assert lines[ASHA]["total_payable"] == pytest.approx(2000)
    assert lines[RAVI]["total_payable"] == pytest.approx(500)
    assert data["total_payable"] == pytest.approx(2500)

    manual = client.post("/api/allocation/plan", json={"allocations": {RAVI: 250}})
    assert manual.json()["allocated_fund"] == pytest.approx(250)
    assert client.post("/api/allocation/plan", json={"allocations": {"8-x": 1}}).status_code == 400
    assert client.post("/api/allocation/plan", json={"distribute_equally": True}).status_code == 422

    interest = client.post(
        "/api/interest/calculate",
        json={"carry_fwd_loan": 12000, "interest_rate": 12, "period_in_months": 3},
    )
    assert interest.json() == {"interest_owed": 360}
    invalid = client.post(
        "/api/interest/calculate",
        json={"carry_fwd_loan": 12000, "interest_rate": 120, "period_in_months": 3},
    )
    assert invalid.status_code == 422


def test_summary_websocket_sends_snapshot():
    client = get_test_client()
    seed_customers(client)
    with client.websocket_connect("/ws/summary") as websocket:
        message = websocket.receive_json()
    assert message["type"] == "summary"
    assert message["data"]["customer_count"] == 2


def test_inactive_or_deleted_customer_still_owing_is_carried_forward():
    client = get_test_client()
    seed_customers(client)
    start_session(client)
    submit_january(client)

    assert client.put(f"/api/customers/{ASHA}", json={"status": "inactive"}).status_code == 200
    february = client.get("/api/loans/2024-02").json()
    assert [row["customerId"] for row in february["loans"]] == [ASHA, RAVI]
    assert february["loans"][0]["carryFwd"] == pytest.approx(1500)
    assert february["totals"]["closingLoan"] == pytest.approx(1500)

    assert client.delete(f"/api/customers/{ASHA}").status_code == 200
    february = client.get("/api/loans/2024-02").json()
    assert [row["customerId"] for row in february["loans"]] == [RAVI, ASHA]
    assert february["totals"]["closingLoan"] == pytest.approx(1500)


def test_loan_rows_must_split_interest_exactly():
    client = get_test_client()
    seed_customers(client)
    start_session(client)

    row = {"customerId": ASHA, "carryFwd": 1500, "interestCash": 10, "interestBank": 2, "interestTotal": 15}
    assert client.put("/api/loans/2024-02", json={"loans": [row]}).status_code == 422
    assert client.put("/api/loans/2024-02/draft", json={"loans": [row]}).status_code == 422

    row.update(interestCash=6.4, interestBank=8.6)
    accepted = client.put("/api/loans/2024-02", json={"loans": [row]})
    assert accepted.status_code == 200
    assert accepted.json()["loans"][0]["interestTotal"] == pytest.approx(15)


def test_drafts_are_rejected_once_month_is_submitted():
    client = get_test_client()
    seed_customers(client)
    start_session(client)
    submit_january(client)

    assert client.put("/api/deposits/2024-01/draft", json={"deposits": []}).status_code == 409
    assert client.put("/api/loans/2024-01/draft", json={"loans": []}).status_code == 409
    assert client.get("/api/deposits/2024-01").json()["status"] == "official"


def test_summary_websocket_releases_its_session(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)

    def override_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    client = TestClient(app)
    with client.websocket_connect("/ws/summary") as websocket:
        message = websocket.receive_json()
        assert engine.pool.checkedout() == 0
    assert message["data"]["customer_count"] == 0


def test_audit_flags_carry_forward_and_split_problems():
    client = get_test_client()
    seed_customers(client)
    start_session(client)
    submit_january(client)
    broken_row = {
        "customerId": ASHA,
        "carryFwd": 1400,
        "changeType": "new",
        "changeCash": 0,
        "changeBank": 0,
        "interestCash": 10,
        "interestBank": 2,
        "interestTotal": 15,
    }
    with Session(client._engine) as session:  # type: ignore[attr-defined]
        session.add(MonthlyLoan(id="2024-02", period_date=date(2024, 2, 1), loans_json=dump_rows([broken_row])))
        session.commit()
        report = run_audit(session)
    categories = sorted(issue.category for issue in report.issues)
    assert categories == ["carry_forward", "interest_split"]
    assert report.stats == {"customers": 2, "deposit_months": 1, "loan_months": 2}


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))
