"""Per-account derived statistics - re-derived from stored transactions on every sync"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Optional, Tuple

from bank_sync_gateway.domain.models import AccountStatistics


def compute_account_statistics(
    transactions: Iterable[Tuple[date, Decimal]],
    current_balance: Optional[Decimal],
    as_of: date,
    window_days: int = 30,
) -> AccountStatistics:
    """
    Derive monthly income/spending over the trailing window.

    Provider convention: positive amounts are outflows (spending), negative
    amounts are inflows (income). Income is reported as an absolute value.
    Average balance is the current balance snapshot.

    The figures are a full re-aggregation rather than running counters, so
    repeating a sync (or replaying a webhook) always lands on the same values.

    Args:
        transactions: (date, amount) pairs for the account
        current_balance: latest balance reported by the provider
        as_of: last day of the window
        window_days: size of the trailing window
    """
    window_start = as_of - timedelta(days=window_days)

    income = Decimal("0")
    spending = Decimal("0")
    for txn_date, amount in transactions:
        if txn_date < window_start or txn_date > as_of:
            continue
        if amount < 0:
            income += amount
        elif amount > 0:
            spending += amount

    return AccountStatistics(
        monthly_income=abs(income),
        monthly_spending=spending,
        average_balance=current_balance,
    )
