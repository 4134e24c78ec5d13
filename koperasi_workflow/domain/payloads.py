"""Pydantic schemas for kind-specific application payloads"""

from datetime import date
from typing import Any, Dict, Optional, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from koperasi_workflow.config import Settings
from koperasi_workflow.domain.exceptions import ValidationError
from koperasi_workflow.domain.models import ApplicationKind, LoanType


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, str_strip_whitespace=True)


class LoanPayload(_Payload):
    """Loan request; goods loans carry details of the item being financed"""

    loan_type: LoanType
    amount: int = Field(..., ge=0, description="Requested principal in whole rupiah")
    tenor_months: int = Field(..., ge=1)
    purpose: str = Field(..., min_length=1)
    bank_account_number: Optional[str] = None

    # Goods loans
    item_name: Optional[str] = None
    item_url: Optional[str] = None
    purchase_date: Optional[date] = None
    notes: Optional[str] = None

    @field_validator("item_url")
    @classmethod
    def _check_url(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.lower().startswith(("http://", "https://")):
            raise ValueError("item_url must be an http(s) link")
        return value

    @model_validator(mode="after")
    def _check_type_fields(self) -> "LoanPayload":
        required = {
            LoanType.CASH_LOAN: (),
            LoanType.GOODS_REIMBURSE: ("item_name", "purchase_date"),
            LoanType.GOODS_ONLINE: ("item_name", "item_url"),
            LoanType.GOODS_PHONE: ("item_name",),
        }[self.loan_type]
        missing = [name for name in required if not getattr(self, name)]
        if missing:
            raise ValueError(f"{self.loan_type.value} requires {', '.join(missing)}")

        # Phone loans are priced by the cooperative, so the draft may carry 0
        if self.amount == 0 and self.loan_type is not LoanType.GOODS_PHONE:
            raise ValueError("amount must be greater than 0")
        return self


class DepositPayload(_Payload):
    """Term deposit request"""

    amount: int = Field(..., gt=0)
    tenor_months: int = Field(..., ge=1)
    agreed_to_terms: bool

    @field_validator("agreed_to_terms")
    @classmethod
    def _must_agree(cls, value: bool) -> bool:
        if not value:
            raise ValueError("the deposit terms must be accepted")
        return value


class WithdrawalPayload(_Payload):
    """Deposit withdrawal request; deposit_id links it to the deposit being drawn"""

    amount: int = Field(..., gt=0)
    deposit_id: Optional[str] = None
    is_early_withdrawal: bool = False
    bank_account_number: Optional[str] = None
    reason: Optional[str] = None


class DepositChangePayload(_Payload):
    """New amount and/or tenor requested for an active deposit"""

    deposit_id: str = Field(..., min_length=1)
    new_amount: int = Field(..., gt=0)
    new_tenor_months: int = Field(..., ge=1)
    agreed_to_terms: bool
    agreed_to_admin_fee: bool

    @field_validator("agreed_to_terms", "agreed_to_admin_fee")
    @classmethod
    def _must_agree(cls, value: bool, info: ValidationInfo) -> bool:
        if not value:
            raise ValueError(f"{info.field_name} must be accepted")
        return value


class RepaymentPayload(_Payload):
    """Early repayment of the whole outstanding balance of a disbursed loan"""

    loan_id: str = Field(..., min_length=1)
    agreed_to_terms: bool

    @field_validator("agreed_to_terms")
    @classmethod
    def _must_agree(cls, value: bool) -> bool:
        if not value:
            raise ValueError("the repayment terms must be accepted")
        return value


Payload = Union[LoanPayload, DepositPayload, WithdrawalPayload, DepositChangePayload, RepaymentPayload]

PAYLOAD_TYPES: Dict[ApplicationKind, Type[_Payload]] = {
    ApplicationKind.LOAN: LoanPayload,
    ApplicationKind.DEPOSIT: DepositPayload,
    ApplicationKind.WITHDRAWAL: WithdrawalPayload,
    ApplicationKind.DEPOSIT_CHANGE: DepositChangePayload,
    ApplicationKind.LOAN_REPAYMENT: RepaymentPayload,
}

# Payload field holding the id of the record a request acts on
REFERENCE_FIELDS: Dict[ApplicationKind, str] = {
    ApplicationKind.WITHDRAWAL: "deposit_id",
    ApplicationKind.DEPOSIT_CHANGE: "deposit_id",
    ApplicationKind.LOAN_REPAYMENT: "loan_id",
}


def reference_of(kind: ApplicationKind, payload: Payload) -> Optional[str]:
    """Id of the deposit or loan the payload refers to, if any"""
    name = REFERENCE_FIELDS.get(ApplicationKind(kind))
    return getattr(payload, name) if name else None


def _describe(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        message = item["msg"].removeprefix("Value error, ")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def parse_payload(kind: ApplicationKind, data: Any) -> Payload:
    """
    Build the payload model for an application kind.

    Accepts an instance of the right model or a plain mapping. Schema
    failures are re-raised as the domain ValidationError.
    """
    model = PAYLOAD_TYPES[ApplicationKind(kind)]
    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        raise ValidationError(f"{type(data).__name__} is not a {ApplicationKind(kind).value} payload")
    if not isinstance(data, dict):
        raise ValidationError("payload must be a mapping")

    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(_describe(e)) from e


def validate_payload(
    kind: ApplicationKind,
    payload: Payload,
    settings: Settings,
    plafond: Optional[int] = None,
) -> None:
    """
    Check a parsed payload against the cooperative's configured limits.

    Requirements:
    - Loan tenor up to max_loan_tenor, deposit tenor (new or changed) up to
      max_deposit_tenor
    - Loan amount at least min_loan_amount (a zero-priced phone loan is exempt)
    - Goods loans up to max_goods_loan_amount
    - Cash loans up to the applicant's plafond when one is known
    """
    kind = ApplicationKind(kind)

    if kind is ApplicationKind.LOAN:
        if payload.tenor_months > settings.max_loan_tenor:
            raise ValidationError(f"tenor_months must not exceed {settings.max_loan_tenor}")

        unpriced_phone = payload.loan_type is LoanType.GOODS_PHONE and payload.amount == 0
        if not unpriced_phone and payload.amount < settings.min_loan_amount:
            raise ValidationError(f"amount must be at least {settings.min_loan_amount}")

        if payload.loan_type is not LoanType.CASH_LOAN and payload.amount > settings.max_goods_loan_amount:
            raise ValidationError(f"goods loans are limited to {settings.max_goods_loan_amount}")

        if payload.loan_type is LoanType.CASH_LOAN and plafond is not None:
            if plafond == 0:
                raise ValidationError("the applicant's plafond is 0; not yet eligible for a cash loan")
            if payload.amount > plafond:
                raise ValidationError(f"amount exceeds the applicant's plafond of {plafond}")

    elif kind is ApplicationKind.DEPOSIT:
        if payload.tenor_months > settings.max_deposit_tenor:
            raise ValidationError(f"tenor_months must not exceed {settings.max_deposit_tenor}")

    elif kind is ApplicationKind.DEPOSIT_CHANGE:
        if payload.new_tenor_months > settings.max_deposit_tenor:
            raise ValidationError(f"new_tenor_months must not exceed {settings.max_deposit_tenor}")
