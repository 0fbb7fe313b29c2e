"""JSON-ready views of the loan aggregate shared by the outer adapters.

Money is rendered as a decimal string ("1000.00") so clients never see a
float; timestamps and dates use ISO 8601.
"""

from typing import Any

from loanflow.core.models import (
    Approval,
    Disbursement,
    Investment,
    Investor,
    Loan,
)


def approval_to_dict(approval: Approval) -> dict[str, Any]:
    return {
        "id": approval.id,
        "loan_id": approval.loan_id,
        "picture_url": approval.picture_url,
        "employee_id": approval.employee_id,
        "approval_date": approval.approval_date.isoformat(),
        "created_at": approval.created_at.isoformat(),
    }


def investment_to_dict(investment: Investment) -> dict[str, Any]:
    return {
        "id": investment.id,
        "loan_id": investment.loan_id,
        "investor_id": investment.investor_id,
        "amount": str(investment.amount),
        "created_at": investment.created_at.isoformat(),
    }


def disbursement_to_dict(disbursement: Disbursement) -> dict[str, Any]:
    return {
        "id": disbursement.id,
        "loan_id": disbursement.loan_id,
        "agreement_url": disbursement.agreement_url,
        "employee_id": disbursement.employee_id,
        "disbursement_date": disbursement.disbursement_date.isoformat(),
        "created_at": disbursement.created_at.isoformat(),
    }


def investor_to_dict(investor: Investor) -> dict[str, Any]:
    return {
        "id": investor.id,
        "name": investor.name,
        "email": investor.email,
        "created_at": investor.created_at.isoformat(),
    }


def loan_to_dict(loan: Loan) -> dict[str, Any]:
    """Render the full aggregate, children included."""
    return {
        "id": loan.id,
        "borrower_id": loan.borrower_id,
        "principal": str(loan.principal),
        "rate": str(loan.rate),
        "roi": str(loan.roi),
        "agreement_letter_url": loan.agreement_letter_url,
        "state": loan.state.value,
        "total_invested": str(loan.total_invested),
        "created_at": loan.created_at.isoformat(),
        "updated_at": loan.updated_at.isoformat(),
        "approval": approval_to_dict(loan.approval) if loan.approval else None,
        "investments": [investment_to_dict(inv) for inv in loan.investments],
        "disbursement": (
            disbursement_to_dict(loan.disbursement) if loan.disbursement else None
        ),
    }
