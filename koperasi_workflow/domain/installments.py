"""Installment plan generation for loan repayment"""

from datetime import date
from typing import List

from koperasi_workflow.domain.models import Installment, LoanSchedule
from koperasi_workflow.utils.date_utils import add_months


def split_repayment(total: int, num_installments: int, monthly_installment: int) -> List[int]:
    """
    Split a repayment total into monthly amounts that sum exactly to the total.

    Every installment but the last is the quoted monthly installment and the
    last one absorbs the rounding remainder. When the quoted installment was
    rounded up so far that the remainder would go negative (tiny totals over
    long tenors), fall back to an even floor split with the remainder on the
    last installment.

    Example:
        13,440,000 over 12 at 1,120,000 → 12 × 1,120,000
        1,000,001 over 3 at 333,334     → [333,334, 333,334, 333,333]
    """
    if num_installments < 1 or total <= 0:
        return []

    leading = monthly_installment * (num_installments - 1)
    if leading <= total:
        return [monthly_installment] * (num_installments - 1) + [total - leading]

    base_amount = total // num_installments
    remainder = total % num_installments
    return [base_amount] * (num_installments - 1) + [base_amount + remainder]


def generate_installment_plan(schedule: LoanSchedule, first_due_date: date) -> List[Installment]:
    """
    Generate the monthly installment plan of a priced loan.

    Due dates fall on the same day of consecutive months starting at
    ``first_due_date`` (clamped to month end where needed).
    """
    amounts = split_repayment(schedule.total_repayment, schedule.tenor_months, schedule.monthly_installment)

    return [
        Installment(number=i + 1, due_date=add_months(first_due_date, i), amount=amount)
        for i, amount in enumerate(amounts)
    ]
