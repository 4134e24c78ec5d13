"""Cash-loan ceilings by employee classification (golongan) and years of service"""

from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional, Tuple

from koperasi_workflow.domain.exceptions import ValidationError


@dataclass(frozen=True)
class LoanLimit:
    """One row of the loan limit matrix; max_years None means open-ended"""

    classification: str
    min_years: int
    max_years: Optional[int]
    max_amount: int

    def covers(self, years: int) -> bool:
        # Half-open so a boundary year belongs to exactly one row
        return self.min_years <= years and (self.max_years is None or years < self.max_years)


def _rows(classification: str, amounts: Tuple[int, ...]) -> Tuple[LoanLimit, ...]:
    bounds = ((0, 1), (1, 2), (2, 3), (3, 6), (6, 9), (9, None))
    return tuple(
        LoanLimit(classification, low, high, amount)
        for (low, high), amount in zip(bounds, amounts)
    )


DEFAULT_LOAN_LIMITS: Tuple[LoanLimit, ...] = (
    _rows("I", (0, 4_800_000, 8_400_000, 12_000_000, 18_000_000, 24_000_000))
    + _rows("II", (0, 4_800_000, 8_400_000, 12_000_000, 18_000_000, 24_000_000))
    + _rows("III", (0, 7_200_000, 10_800_000, 14_400_000, 24_000_000, 31_200_000))
    + _rows("IV", (0, 12_000_000, 18_000_000, 24_000_000, 36_000_000, 42_000_000))
)


def years_of_service(hired_on: date, today: date) -> int:
    """Completed years between hire date and today (0 before the first anniversary)"""
    years = today.year - hired_on.year
    if (today.month, today.day) < (hired_on.month, hired_on.day):
        years -= 1
    return max(years, 0)


def lookup_plafond(limits: Iterable[LoanLimit], classification: str, years: int) -> int:
    """
    Ceiling for a classification at the given years of service.

    Raises ValidationError when the matrix has no row for the combination.
    """
    for limit in limits:
        if limit.classification == classification and limit.covers(years):
            return limit.max_amount
    raise ValidationError(f"no loan limit for golongan {classification} with {years} years of service")
