from __future__ import annotations

import argparse
import json
from collections import Counter
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlmodel import Session

from .. import crud, ledger
from ..database import engine
from ..timezone_utils import previous_month_id


@dataclass
class AuditIssue:
    severity: str
    category: str
    entity: str
    entity_id: Optional[str]
    message: str
    details: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "severity": self.severity,
            "category": self.category,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


@dataclass
class AuditReport:
    stats: Dict[str, int]
    issues: List[AuditIssue]

    @property
    def issue_count(self) -> int:
        return len(self.issues)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stats": self.stats,
            "issue_count": self.issue_count,
            "issues": [issue.as_dict() for issue in self.issues],
        }


def _unknown_customer_issues(
    entity: str,
    month_id: str,
    customer_ids: Iterable[str],
    known_ids: set,
) -> List[AuditIssue]:
    return [
        AuditIssue(
            severity="warning",
            category="customer_reference",
            entity=entity,
            entity_id=month_id,
            message="row refers to a customer that no longer exists",
            details={"customer_id": customer_id},
        )
        for customer_id in customer_ids
        if customer_id not in known_ids
    ]


def run_audit(session: Session, *, tolerance: float = 0.01) -> AuditReport:
    limit = Decimal(str(max(tolerance, 0.0)))
    customers = crud.list_customers(session)
    deposit_docs = sorted(crud.all_deposit_documents(session), key=lambda doc: doc["id"])
    loan_docs = sorted(crud.all_loan_documents(session), key=lambda doc: doc["id"])

    stats = {
        "customers": len(customers),
        "deposit_months": len(deposit_docs),
        "loan_months": len(loan_docs),
    }

    issues: List[AuditIssue] = []
    names = Counter(customer.name.strip().lower() for customer in customers)
    sort_orders = Counter(customer.sort_order for customer in customers)
    for customer in customers:
        if names[customer.name.strip().lower()] > 1:
            issues.append(
                AuditIssue(
                    severity="error",
                    category="customer_name",
                    entity="customer",
                    entity_id=customer.id,
                    message="customer name is duplicated",
                    details={"name": customer.name},
                )
            )
        if sort_orders[customer.sort_order] > 1:
            issues.append(
                AuditIssue(
                    severity="warning",
                    category="sort_order",
                    entity="customer",
                    entity_id=customer.id,
                    message="sort_order is shared with another customer",
                    details={"sort_order": customer.sort_order},
                )
            )

    known_ids = {customer.id for customer in customers}

    for document in deposit_docs:
        rows = ledger.deposit_records(document)
        issues.extend(_unknown_customer_issues("deposits", document["id"], (row.customer_id for row in rows), known_ids))

    loans_by_month = {document["id"]: ledger.loan_records(document) for document in loan_docs}
    for month_id, loans in loans_by_month.items():
        issues.extend(_unknown_customer_issues("loans", month_id, (loan.customer_id for loan in loans), known_ids))

        for loan in loans:
            if not ledger.interest_split_holds(loan):
                drift = loan.interest_cash + loan.interest_bank - loan.effective_interest_total
                if abs(drift) > limit:
                    issues.append(
                        AuditIssue(
                            severity="error",
                            category="interest_split",
                            entity="loans",
                            entity_id=month_id,
                            message="interestCash + interestBank does not match interestTotal",
                            details={
                                "customer_id": loan.customer_id,
                                "interest_cash": float(loan.interest_cash),
                                "interest_bank": float(loan.interest_bank),
                                "interest_total": float(loan.effective_interest_total),
                            },
                        )
                    )
            if ledger.closing_balance(loan) < -limit:
                issues.append(
                    AuditIssue(
                        severity="warning",
                        category="closing_balance",
                        entity="loans",
                        entity_id=month_id,
                        message="closing balance is negative",
                        details={"customer_id": loan.customer_id, "closing": float(ledger.closing_balance(loan))},
                    )
                )

        prev_loans = loans_by_month.get(previous_month_id(month_id))
        if prev_loans is None:
            continue
        for mismatch in ledger.carry_forward_mismatches(prev_loans, loans):
            if abs(mismatch["actual"] - mismatch["expected"]) <= limit:
                continue
            issues.append(
                AuditIssue(
                    severity="warning",
                    category="carry_forward",
                    entity="loans",
                    entity_id=month_id,
                    message="carryFwd deviates from the previous month's closing balance",
                    details={
                        "customer_id": mismatch["customer_id"],
                        "expected": float(mismatch["expected"]),
                        "actual": float(mismatch["actual"]),
                    },
                )
            )

    return AuditReport(stats=stats, issues=issues)


def format_issue(issue: AuditIssue) -> str:
    prefix = f"[{issue.severity.upper()}] {issue.entity}#{issue.entity_id or '-'} {issue.category}"
    if issue.details:
        return f"{prefix}: {issue.message} | {json.dumps(issue.details, ensure_ascii=False)}"
    return f"{prefix}: {issue.message}"


def print_report(report: AuditReport) -> None:
    print(
        "Audited customers={customers}, deposit_months={deposit_months}, loan_months={loan_months}".format(
            **report.stats
        )
    )
    if not report.issues:
        print("No consistency issues detected.")
        return
    print(f"Found {report.issue_count} issues:")
    for idx, issue in enumerate(report.issues, start=1):
        print(f"{idx:02d}. {format_issue(issue)}")


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Audit monthly ledger consistency for the Bachat backend")
    parser.add_argument(
        "--tolerance",
        type=float,
        default=0.01,
        help="Allowed rounding difference when comparing amounts (default: 0.01)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the audit report as JSON",
    )
    return parser.parse_args(list(argv) if argv is not None else None)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    with Session(engine) as session:
        report = run_audit(session, tolerance=args.tolerance)
    if args.json:
        print(json.dumps(report.as_dict(), ensure_ascii=False, indent=2))
    else:
        print_report(report)
    return 1 if report.issue_count else 0


if __name__ == "__main__":
    raise SystemExit(main())
