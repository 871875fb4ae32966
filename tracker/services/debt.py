"""Debt calculator.

Loan ("advance") check-ins borrow minutes; normal check-ins pay them back.
Debt is derived from the ledger on every call and never cached, so an
undone entry is reflected immediately.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from tracker.services.ledger import LedgerStore


def debt_from_totals(loan_minutes: int, normal_minutes: int) -> int:
    """Outstanding loan minutes, floored at zero."""
    return max(0, loan_minutes - normal_minutes)


def repayment(duration: int, debt_before: int, is_loan: bool) -> int:
    """Minutes of ``debt_before`` a new entry pays back."""
    if is_loan:
        return 0
    return min(duration, debt_before)


class DebtCalculator:
    """Computes a user's debt from the full entry history."""

    def __init__(self, db: AsyncSession):
        self.ledger = LedgerStore(db)

    async def compute_debt(self, user_id: str) -> int:
        normal, loan = await self.ledger.totals(user_id)
        return debt_from_totals(loan, normal)
