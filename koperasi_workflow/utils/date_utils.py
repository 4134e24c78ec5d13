"""Date manipulation utilities for the payroll calendar"""

import calendar
from datetime import date


def add_months(from_date: date, months: int) -> date:
    """Shift a date by whole months, clamping the day to the end of the target month"""
    month_index = from_date.month - 1 + months
    year = from_date.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(from_date.day, last_day))


def on_day(of_month: date, day: int) -> date:
    """Same month, given day (clamped to the month's length)"""
    last_day = calendar.monthrange(of_month.year, of_month.month)[1]
    return of_month.replace(day=min(day, last_day))


def next_payroll_date(from_date: date, cutoff_day: int, payroll_day: int) -> date:
    """
    Payroll date that a transaction on ``from_date`` is booked against.

    On or before the cutoff day it is this month's payroll date, after the
    cutoff it rolls to next month's.

    Example (cutoff 15, payroll 27):
        2024-03-10 → 2024-03-27
        2024-03-20 → 2024-04-27
    """
    payroll = on_day(from_date, payroll_day)
    if from_date.day > cutoff_day:
        payroll = on_day(add_months(from_date.replace(day=1), 1), payroll_day)
    return payroll
