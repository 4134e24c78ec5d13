"""Unit tests for payload parsing and configured limits"""

import pytest
from datetime import date
from koperasi_workflow.config import Settings
from koperasi_workflow.domain.exceptions import ValidationError
from koperasi_workflow.domain.models import ApplicationKind, LoanType
from koperasi_workflow.domain.payloads import (
    DepositChangePayload,
    DepositPayload,
    LoanPayload,
    RepaymentPayload,
    WithdrawalPayload,
    parse_payload,
    reference_of,
    validate_payload,
)


LOAN = ApplicationKind.LOAN


def loan(**overrides) -> dict:
    data = {"loan_type": "CASH_LOAN", "amount": 5_000_000, "tenor_months": 12, "purpose": "Biaya sekolah"}
    data.update(overrides)
    return data


def test_parse_cash_loan():
    payload = parse_payload(LOAN, loan())

    assert isinstance(payload, LoanPayload)
    assert payload.loan_type is LoanType.CASH_LOAN
    assert payload.amount == 5_000_000


def test_parse_passes_model_instances_through():
    payload = DepositPayload(amount=1_000_000, tenor_months=6, agreed_to_terms=True)
    assert parse_payload(ApplicationKind.DEPOSIT, payload) is payload


def test_parse_rejects_payload_of_another_kind():
    payload = DepositPayload(amount=1_000_000, tenor_months=6, agreed_to_terms=True)
    with pytest.raises(ValidationError):
        parse_payload(LOAN, payload)


def test_pydantic_errors_become_domain_errors():
    """Library error type never leaks"""
    with pytest.raises(ValidationError, match="amount"):
        parse_payload(LOAN, loan(amount=-1))


@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": 0},
        {"tenor_months": 0},
        {"purpose": "   "},
        {"loan_type": "MORTGAGE"},
        {"unexpected": "field"},
        {"loan_type": "GOODS_REIMBURSE", "item_name": "Kulkas"},
        {"loan_type": "GOODS_ONLINE", "item_name": "Laptop"},
        {"loan_type": "GOODS_ONLINE", "item_name": "Laptop", "item_url": "ftp://shop/laptop"},
        {"loan_type": "GOODS_PHONE"},
    ],
)
def test_invalid_loan_payloads(overrides):
    with pytest.raises(ValidationError):
        parse_payload(LOAN, loan(**overrides))


def test_goods_loans_with_required_fields():
    reimburse = parse_payload(LOAN, loan(loan_type="GOODS_REIMBURSE", item_name="Kulkas", purchase_date="2024-02-01"))
    online = parse_payload(LOAN, loan(loan_type="GOODS_ONLINE", item_name="Laptop", item_url="https://shop.example.com/x"))

    assert reimburse.purchase_date == date(2024, 2, 1)
    assert online.item_url == "https://shop.example.com/x"


def test_phone_loan_may_start_unpriced():
    payload = parse_payload(LOAN, loan(loan_type="GOODS_PHONE", amount=0, item_name="Phone X"))
    assert payload.amount == 0


def test_deposit_requires_agreement():
    with pytest.raises(ValidationError, match="terms"):
        parse_payload(ApplicationKind.DEPOSIT, {"amount": 1_000_000, "tenor_months": 6, "agreed_to_terms": False})


def test_withdrawal_defaults():
    payload = parse_payload(ApplicationKind.WITHDRAWAL, {"amount": 250_000})

    assert isinstance(payload, WithdrawalPayload)
    assert payload.deposit_id is None
    assert payload.is_early_withdrawal is False


def test_payloads_are_immutable():
    payload = parse_payload(LOAN, loan())
    with pytest.raises(Exception):
        payload.amount = 1


def test_non_mapping_payload_rejected():
    with pytest.raises(ValidationError):
        parse_payload(LOAN, ["not", "a", "mapping"])


def test_limits_tenor_and_minimum(settings: Settings):
    with pytest.raises(ValidationError, match="tenor_months"):
        validate_payload(LOAN, parse_payload(LOAN, loan(tenor_months=48)), settings)
    with pytest.raises(ValidationError, match="at least"):
        validate_payload(LOAN, parse_payload(LOAN, loan(amount=100_000)), settings)


def test_limits_goods_ceiling(settings: Settings):
    payload = parse_payload(LOAN, loan(loan_type="GOODS_PHONE", amount=16_000_000, item_name="Phone"))
    with pytest.raises(ValidationError, match="goods loans"):
        validate_payload(LOAN, payload, settings)


def test_limits_cash_ceiling_is_the_plafond(settings: Settings):
    """Goods ceiling does not apply to cash loans; the plafond does"""
    payload = parse_payload(LOAN, loan(amount=20_000_000))

    validate_payload(LOAN, payload, settings)
    validate_payload(LOAN, payload, settings, plafond=24_000_000)
    with pytest.raises(ValidationError, match="plafond"):
        validate_payload(LOAN, payload, settings, plafond=18_000_000)
    with pytest.raises(ValidationError, match="not yet eligible"):
        validate_payload(LOAN, payload, settings, plafond=0)


def test_limits_skip_minimum_for_unpriced_phone(settings: Settings):
    payload = parse_payload(LOAN, loan(loan_type="GOODS_PHONE", amount=0, item_name="Phone"))
    validate_payload(LOAN, payload, settings)


def test_limits_deposit_tenor(settings: Settings):
    payload = parse_payload(ApplicationKind.DEPOSIT, {"amount": 1_000_000, "tenor_months": 72, "agreed_to_terms": True})
    with pytest.raises(ValidationError):
        validate_payload(ApplicationKind.DEPOSIT, payload, settings)


def test_deposit_change_requires_both_agreements():
    data = {
        "deposit_id": "dep-1",
        "new_amount": 2_000_000,
        "new_tenor_months": 12,
        "agreed_to_terms": True,
        "agreed_to_admin_fee": False,
    }
    with pytest.raises(ValidationError, match="agreed_to_admin_fee must be accepted"):
        parse_payload(ApplicationKind.DEPOSIT_CHANGE, data)

    payload = parse_payload(ApplicationKind.DEPOSIT_CHANGE, {**data, "agreed_to_admin_fee": True})
    assert isinstance(payload, DepositChangePayload)


def test_limits_changed_deposit_tenor(settings: Settings):
    payload = DepositChangePayload(
        deposit_id="dep-1",
        new_amount=2_000_000,
        new_tenor_months=72,
        agreed_to_terms=True,
        agreed_to_admin_fee=True,
    )
    with pytest.raises(ValidationError, match="new_tenor_months"):
        validate_payload(ApplicationKind.DEPOSIT_CHANGE, payload, settings)


def test_repayment_needs_a_loan_id():
    with pytest.raises(ValidationError, match="loan_id"):
        parse_payload(ApplicationKind.LOAN_REPAYMENT, {"loan_id": "", "agreed_to_terms": True})


def test_reference_of_each_kind():
    """Withdrawals and changes point at a deposit, repayments at a loan"""
    change = DepositChangePayload(
        deposit_id="dep-1",
        new_amount=2_000_000,
        new_tenor_months=12,
        agreed_to_terms=True,
        agreed_to_admin_fee=True,
    )

    assert reference_of(ApplicationKind.DEPOSIT_CHANGE, change) == "dep-1"
    assert reference_of(ApplicationKind.WITHDRAWAL, WithdrawalPayload(amount=1, deposit_id="dep-2")) == "dep-2"
    assert reference_of(ApplicationKind.WITHDRAWAL, WithdrawalPayload(amount=1)) is None
    assert reference_of(ApplicationKind.LOAN_REPAYMENT, RepaymentPayload(loan_id="loan-1", agreed_to_terms=True)) == "loan-1"
    assert reference_of(LOAN, parse_payload(LOAN, loan())) is None
