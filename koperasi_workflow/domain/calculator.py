"""Flat-rate financial calculations for loans, deposits, withdrawals and their follow-up requests"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from typing import Iterable, Union

from koperasi_workflow.domain.exceptions import ValidationError
from koperasi_workflow.domain.models import (
    DepositChangeQuote,
    DepositChangeType,
    DepositMaturity,
    Installment,
    LoanSchedule,
    LoanType,
    RepaymentQuote,
    WithdrawalPenalty,
)

Rate = Union[int, str, Decimal]

HUNDRED = Decimal(100)
MONTHS_PER_YEAR = Decimal(12)
DEFAULT_MAX_RATE = Decimal(100)

# Enough digits that amount * rate * tenor never rounds before the final quantize
_PRECISION = 50


def round_currency(value: Decimal) -> int:
    """Round to whole currency units, halves away from zero"""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _amount(value: int, name: str = "amount") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be a whole number of currency units")
    if value < 0:
        raise ValidationError(f"{name} must not be negative")
    return value


def _tenor(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("tenor_months must be a whole number of months")
    if value < 1:
        raise ValidationError("tenor_months must be at least 1")
    return value


def _rate(value: Rate, name: str, upper: Decimal | None = None) -> Decimal:
    # Floats go through str so 0.1 stays 0.1 instead of its binary expansion
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        rate = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError(f"{name} must be a number") from e
    if not rate.is_finite():
        raise ValidationError(f"{name} must be finite")
    if rate < 0:
        raise ValidationError(f"{name} must not be negative")
    if upper is not None and rate > upper:
        raise ValidationError(f"{name} must not exceed {upper}%")
    return rate


def compute_loan_schedule(
    amount: int,
    tenor_months: int,
    annual_rate_percent: Rate,
    loan_type: LoanType = LoanType.CASH_LOAN,
    shop_margin_rate_percent: Rate = 0,
    max_rate_percent: Rate = DEFAULT_MAX_RATE,
) -> LoanSchedule:
    """
    Price a loan with flat-rate interest.

    totalInterest      = amount * rate/100 * tenor/12
    shopMargin         = amount * marginRate/100   (GOODS_ONLINE only)
    totalRepayment     = amount + totalInterest + shopMargin
    monthlyInstallment = totalRepayment / tenor

    Interest and shop margin are rounded separately so each stays reportable on
    its own; the installment is rounded half-up to whole units.

    Example:
        12,000,000 at 12%/yr over 12 months
        → interest 1,440,000, total 13,440,000, installment 1,120,000
    """
    principal = _amount(amount)
    tenor = _tenor(tenor_months)
    upper = _rate(max_rate_percent, "max_rate_percent")
    rate = _rate(annual_rate_percent, "annual_rate_percent", upper)
    loan_type = LoanType(loan_type)

    margin_rate = Decimal(0)
    if loan_type is LoanType.GOODS_ONLINE:
        margin_rate = _rate(shop_margin_rate_percent, "shop_margin_rate_percent", upper)

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        interest = round_currency(Decimal(principal) * rate * Decimal(tenor) / (HUNDRED * MONTHS_PER_YEAR))
        shop_margin = round_currency(Decimal(principal) * margin_rate / HUNDRED)
        total = principal + interest + shop_margin
        monthly = round_currency(Decimal(total) / Decimal(tenor))

    return LoanSchedule(
        principal=principal,
        tenor_months=tenor,
        interest_rate=rate,
        shop_margin_rate=margin_rate,
        interest_portion=interest,
        shop_margin_portion=shop_margin,
        total_repayment=total,
        monthly_installment=monthly,
    )


def compute_deposit_maturity(
    amount: int,
    tenor_months: int,
    annual_rate_percent: Rate,
    max_rate_percent: Rate = DEFAULT_MAX_RATE,
) -> DepositMaturity:
    """Flat-rate deposit interest: amount * rate/100 * tenor/12, paid at maturity"""
    principal = _amount(amount)
    tenor = _tenor(tenor_months)
    upper = _rate(max_rate_percent, "max_rate_percent")
    rate = _rate(annual_rate_percent, "annual_rate_percent", upper)

    with localcontext() as ctx:
        ctx.prec = _PRECISION
        interest = round_currency(Decimal(principal) * rate * Decimal(tenor) / (HUNDRED * MONTHS_PER_YEAR))

    return DepositMaturity(
        principal=principal,
        tenor_months=tenor,
        interest_rate=rate,
        interest_amount=interest,
        maturity_amount=principal + interest,
    )


def compute_withdrawal_penalty(
    amount: int,
    is_early_withdrawal: bool,
    penalty_rate_percent: Rate,
) -> WithdrawalPenalty:
    """
    Early-withdrawal penalty.

    The penalty is zero unless the withdrawal is early. The net amount is
    clamped at zero (and flagged) when the rate exceeds 100%.
    """
    principal = _amount(amount)
    rate = _rate(penalty_rate_percent, "penalty_rate_percent")

    penalty = 0
    if is_early_withdrawal:
        with localcontext() as ctx:
            ctx.prec = _PRECISION
            penalty = round_currency(Decimal(principal) * rate / HUNDRED)

    net = principal - penalty
    clamped = net < 0
    if clamped:
        net = 0

    return WithdrawalPenalty(
        amount=principal,
        is_early_withdrawal=bool(is_early_withdrawal),
        penalty_rate=rate,
        penalty_amount=penalty,
        net_amount=net,
        clamped=clamped,
    )


def quote_deposit_change(
    current_amount: int,
    current_tenor_months: int,
    new_amount: int,
    new_tenor_months: int,
    annual_rate_percent: Rate,
    admin_fee: int,
    max_rate_percent: Rate = DEFAULT_MAX_RATE,
) -> DepositChangeQuote:
    """
    Compare a deposit's terms with the requested ones and price the new terms.

    Raises ValidationError when neither the amount nor the tenor changes.
    """
    amount_changed = _amount(new_amount, "new_amount") != _amount(current_amount, "current_amount")
    tenor_changed = _tenor(new_tenor_months) != _tenor(current_tenor_months)

    if amount_changed and tenor_changed:
        change_type = DepositChangeType.BOTH
    elif amount_changed:
        change_type = DepositChangeType.AMOUNT_CHANGE
    elif tenor_changed:
        change_type = DepositChangeType.TENOR_CHANGE
    else:
        raise ValidationError("the requested terms are the same as the current ones")

    maturity = compute_deposit_maturity(new_amount, new_tenor_months, annual_rate_percent, max_rate_percent)

    return DepositChangeQuote(
        change_type=change_type,
        current_amount=current_amount,
        current_tenor_months=current_tenor_months,
        new_amount=new_amount,
        new_tenor_months=new_tenor_months,
        interest_rate=maturity.interest_rate,
        new_maturity_amount=maturity.maturity_amount,
        admin_fee=_amount(admin_fee, "admin_fee"),
    )


def compute_repayment_quote(total_repayment: int, installments: Iterable[Installment]) -> RepaymentQuote:
    """Outstanding balance: total repayment minus the installments already paid"""
    plan = list(installments)
    paid = [inst for inst in plan if inst.is_paid]
    total_paid = sum(inst.amount for inst in paid)

    return RepaymentQuote(
        total_repayment=_amount(total_repayment, "total_repayment"),
        total_paid=total_paid,
        remaining_amount=max(total_repayment - total_paid, 0),
        paid_installments=len(paid),
        total_installments=len(plan),
    )
