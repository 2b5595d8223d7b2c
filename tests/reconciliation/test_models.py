"""Storage format of ledger enum columns."""

import pytest
from sqlalchemy import text

from reconciler.models import (
    InterestAccrual,
    InterestEntryType,
    InvestorTransactionType,
    LoanStatus,
    LoanTransactionType,
)
from tests.factories import (
    BorrowerFactory,
    InterestEntryFactory,
    InvestorFactory,
    InvestorTransactionFactory,
    LoanFactory,
    LoanTransactionFactory,
)


async def _raw(db, sql):
    return (await db.execute(text(sql))).one()


@pytest.mark.asyncio
async def test_loan_enums_are_stored_by_value(db):
    borrower = await BorrowerFactory.create_async(db)
    loan = await LoanFactory.create_async(db, borrower_id=borrower.id, status=LoanStatus.LIVE)
    await LoanTransactionFactory.create_async(
        db, loan_id=loan.id, type=LoanTransactionType.DISBURSEMENT
    )

    assert await _raw(db, "SELECT status FROM loans") == ("Live",)
    assert await _raw(db, "SELECT type FROM loan_transactions") == ("Disbursement",)


@pytest.mark.asyncio
async def test_investor_enums_are_stored_by_value(db):
    investor = await InvestorFactory.create_async(db, interest_accrual=InterestAccrual.MANUAL)
    await InvestorTransactionFactory.create_async(
        db, investor_id=investor.id, type=InvestorTransactionType.CAPITAL_OUT
    )
    await InterestEntryFactory.create_async(
        db, investor_id=investor.id, type=InterestEntryType.CREDIT
    )

    assert await _raw(db, "SELECT status, interest_accrual FROM investors") == ("Active", "manual")
    assert await _raw(db, "SELECT type FROM investor_transactions") == ("capital_out",)
    assert await _raw(db, "SELECT type FROM investor_interest_entries") == ("credit",)
