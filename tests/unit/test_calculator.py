"""Unit tests for flat-rate loan, deposit and withdrawal calculations"""

import pytest
from datetime import date
from decimal import Decimal
from koperasi_workflow.domain.calculator import (
    compute_deposit_maturity,
    compute_loan_schedule,
    compute_repayment_quote,
    compute_withdrawal_penalty,
    quote_deposit_change,
    round_currency,
)
from koperasi_workflow.domain.exceptions import ValidationError
from koperasi_workflow.domain.installments import generate_installment_plan
from koperasi_workflow.domain.models import DepositChangeType, Installment, LoanType


def test_cash_loan_reference_scenario():
    """12,000,000 at 12%/yr over 12 months"""
    schedule = compute_loan_schedule(12_000_000, 12, 12, LoanType.CASH_LOAN)

    assert schedule.interest_portion == 1_440_000
    assert schedule.shop_margin_portion == 0
    assert schedule.total_repayment == 13_440_000
    assert schedule.monthly_installment == 1_120_000


def test_online_goods_margin_kept_apart_from_interest():
    """Shop margin is added on top of interest, not blended into it"""
    schedule = compute_loan_schedule(4_000_000, 10, 12, LoanType.GOODS_ONLINE, shop_margin_rate_percent=5)

    assert schedule.interest_portion == 400_000
    assert schedule.shop_margin_portion == 200_000
    assert schedule.shop_margin_rate == Decimal("5")
    assert schedule.total_repayment == 4_600_000
    assert schedule.monthly_installment == 460_000


@pytest.mark.parametrize("loan_type", [LoanType.CASH_LOAN, LoanType.GOODS_REIMBURSE, LoanType.GOODS_PHONE])
def test_shop_margin_ignored_for_other_loan_types(loan_type):
    """Only online goods loans carry a shop margin"""
    schedule = compute_loan_schedule(4_000_000, 10, 12, loan_type, shop_margin_rate_percent=5)

    assert schedule.shop_margin_portion == 0
    assert schedule.shop_margin_rate == Decimal(0)


def test_installment_rounds_half_up():
    """1,000,001 over 3 months at 0% → 333,333.67 rounds to 333,334"""
    schedule = compute_loan_schedule(1_000_001, 3, 0)
    assert schedule.monthly_installment == 333_334

    # Exact half goes up
    schedule = compute_loan_schedule(5, 2, 0)
    assert schedule.monthly_installment == 3


def test_round_currency_halves_away_from_zero():
    assert round_currency(Decimal("2.5")) == 3
    assert round_currency(Decimal("2.4999")) == 2
    assert round_currency(Decimal("-2.5")) == -3


def test_loan_schedule_is_deterministic():
    """Identical inputs give identical output"""
    first = compute_loan_schedule(7_777_777, 7, "11.5", LoanType.GOODS_ONLINE, "3.25")
    second = compute_loan_schedule(7_777_777, 7, "11.5", LoanType.GOODS_ONLINE, "3.25")

    assert first == second
    assert repr(first) == repr(second)


@pytest.mark.parametrize("amount", [500_000, 1_000_001, 7_777_777, 12_345_678, 99_999_999])
@pytest.mark.parametrize("tenor", [1, 5, 7, 12, 36])
def test_installments_stay_within_rounding_of_total(amount, tenor):
    """
    The quoted installment is rounded half up, so monthly * tenor overshoots
    or undershoots the total by at most half a unit per installment. The
    plan's last installment absorbs that difference.
    """
    schedule = compute_loan_schedule(amount, tenor, "9.75")

    assert abs(schedule.monthly_installment * tenor - schedule.total_repayment) * 2 <= tenor


def test_plan_absorbs_installment_overshoot():
    """500,022 over 36 months at 0%: 13,889.5 rounds up to 13,890, 18 over the total"""
    schedule = compute_loan_schedule(500_022, 36, 0)
    assert schedule.monthly_installment == 13_890
    assert schedule.monthly_installment * 36 - schedule.total_repayment == 18

    plan = generate_installment_plan(schedule, date(2024, 3, 27))

    assert sum(installment.amount for installment in plan) == schedule.total_repayment == 500_022
    assert [installment.amount for installment in plan[:-1]] == [13_890] * 35
    assert plan[-1].amount == 13_872


def test_float_rate_is_read_as_written():
    """0.1 is 0.1, not its binary expansion"""
    schedule = compute_loan_schedule(1_200_000, 12, 0.1)
    assert schedule.interest_rate == Decimal("0.1")
    assert schedule.interest_portion == 1_200


@pytest.mark.parametrize(
    "kwargs",
    [
        {"amount": -1, "tenor_months": 12, "annual_rate_percent": 12},
        {"amount": 1_000_000, "tenor_months": 0, "annual_rate_percent": 12},
        {"amount": 1_000_000, "tenor_months": 12, "annual_rate_percent": -1},
        {"amount": 1_000_000, "tenor_months": 12, "annual_rate_percent": 101},
        {"amount": 1_000_000, "tenor_months": 12, "annual_rate_percent": "NaN"},
        {"amount": 1_000_000.5, "tenor_months": 12, "annual_rate_percent": 12},
        {"amount": True, "tenor_months": 12, "annual_rate_percent": 12},
    ],
)
def test_loan_schedule_rejects_invalid_input(kwargs):
    with pytest.raises(ValidationError):
        compute_loan_schedule(**kwargs)


def test_margin_rate_above_bound_rejected():
    with pytest.raises(ValidationError, match="shop_margin_rate_percent"):
        compute_loan_schedule(1_000_000, 12, 12, LoanType.GOODS_ONLINE, shop_margin_rate_percent=150)


def test_rate_bound_is_configurable():
    """A lower max_rate_percent tightens the accepted range"""
    with pytest.raises(ValidationError):
        compute_loan_schedule(1_000_000, 12, 25, max_rate_percent=24)

    assert compute_loan_schedule(1_000_000, 12, 24, max_rate_percent=24).interest_portion == 240_000


def test_deposit_maturity():
    """10,000,000 at 6%/yr for 12 months earns 600,000"""
    maturity = compute_deposit_maturity(10_000_000, 12, 6)

    assert maturity.interest_amount == 600_000
    assert maturity.maturity_amount == 10_600_000
    assert maturity.principal == 10_000_000


def test_deposit_maturity_partial_year_rounds():
    """1,000,000 at 4% for 5 months = 16,666.67 → 16,667"""
    maturity = compute_deposit_maturity(1_000_000, 5, 4)
    assert maturity.interest_amount == 16_667
    assert maturity.maturity_amount == 1_016_667


def test_early_withdrawal_penalty_scenario():
    """1,000,000 withdrawn early with a 5% penalty"""
    result = compute_withdrawal_penalty(1_000_000, True, 5)

    assert result.penalty_amount == 50_000
    assert result.net_amount == 950_000
    assert result.clamped is False


def test_penalty_zero_when_not_early():
    result = compute_withdrawal_penalty(1_000_000, False, 5)

    assert result.penalty_amount == 0
    assert result.net_amount == 1_000_000
    assert result.is_early_withdrawal is False


@pytest.mark.parametrize("rate", [100, "100.01", 150, 1000])
def test_penalty_above_hundred_percent_clamps_net(rate):
    """Net amount never goes negative"""
    result = compute_withdrawal_penalty(1_000_000, True, rate)

    assert result.net_amount == 0
    assert result.clamped is (Decimal(str(rate)) > 100)


def test_negative_penalty_rate_rejected():
    with pytest.raises(ValidationError):
        compute_withdrawal_penalty(1_000_000, True, -5)


def test_deposit_change_quote():
    """10,000,000 / 12 months raised to 15,000,000 / 24 months at 6%"""
    quote = quote_deposit_change(10_000_000, 12, 15_000_000, 24, 6, 15_000)

    assert quote.change_type is DepositChangeType.BOTH
    assert quote.new_maturity_amount == 16_800_000
    assert quote.interest_rate == Decimal("6")
    assert quote.admin_fee == 15_000


@pytest.mark.parametrize(
    "new_amount,new_tenor,change_type",
    [
        (12_000_000, 12, DepositChangeType.AMOUNT_CHANGE),
        (10_000_000, 6, DepositChangeType.TENOR_CHANGE),
    ],
)
def test_deposit_change_type(new_amount, new_tenor, change_type):
    assert quote_deposit_change(10_000_000, 12, new_amount, new_tenor, 6, 15_000).change_type is change_type


def test_deposit_change_needs_a_difference():
    with pytest.raises(ValidationError, match="same as the current"):
        quote_deposit_change(10_000_000, 12, 10_000_000, 12, 6, 15_000)


def test_repayment_quote_counts_paid_installments():
    plan = [
        Installment(number=1, due_date=date(2024, 3, 27), amount=400_000, paid_on=date(2024, 3, 27)),
        Installment(number=2, due_date=date(2024, 4, 27), amount=400_000),
        Installment(number=3, due_date=date(2024, 5, 27), amount=400_000),
    ]

    quote = compute_repayment_quote(1_200_000, plan)

    assert quote.total_paid == 400_000
    assert quote.remaining_amount == 800_000
    assert (quote.paid_installments, quote.total_installments) == (1, 3)


def test_repayment_quote_never_negative():
    plan = [Installment(number=1, due_date=date(2024, 3, 27), amount=500_000, paid_on=date(2024, 3, 27))]

    assert compute_repayment_quote(400_000, plan).remaining_amount == 0
