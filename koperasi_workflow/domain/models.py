"""Domain models - enums and dataclasses for cooperative applications and their workflow records"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Union


class ApplicationKind(str, Enum):
    """The application pipelines sharing one life cycle"""

    LOAN = "LOAN"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    DEPOSIT_CHANGE = "DEPOSIT_CHANGE"
    LOAN_REPAYMENT = "LOAN_REPAYMENT"


class LoanType(str, Enum):
    CASH_LOAN = "CASH_LOAN"
    GOODS_REIMBURSE = "GOODS_REIMBURSE"
    GOODS_ONLINE = "GOODS_ONLINE"
    GOODS_PHONE = "GOODS_PHONE"


class ApplicationStatus(str, Enum):
    """Workflow position of an application"""

    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW_DSP = "UNDER_REVIEW_DSP"
    UNDER_REVIEW_KETUA = "UNDER_REVIEW_KETUA"
    UNDER_REVIEW_PENGAWAS = "UNDER_REVIEW_PENGAWAS"
    APPROVED_PENDING_DISBURSEMENT = "APPROVED_PENDING_DISBURSEMENT"
    DISBURSEMENT_IN_PROGRESS = "DISBURSEMENT_IN_PROGRESS"
    PENDING_AUTHORIZATION = "PENDING_AUTHORIZATION"
    DISBURSED = "DISBURSED"  # Loans
    COMPLETED = "COMPLETED"  # Withdrawals
    ACTIVE = "ACTIVE"  # Deposits
    APPROVED = "APPROVED"  # Deposit changes and loan repayments
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({
    ApplicationStatus.DISBURSED,
    ApplicationStatus.COMPLETED,
    ApplicationStatus.ACTIVE,
    ApplicationStatus.APPROVED,
    ApplicationStatus.REJECTED,
    ApplicationStatus.CANCELLED,
})

CANCELLABLE_STATUSES = frozenset({
    ApplicationStatus.DRAFT,
    ApplicationStatus.SUBMITTED,
    ApplicationStatus.UNDER_REVIEW_DSP,
    ApplicationStatus.UNDER_REVIEW_KETUA,
    ApplicationStatus.UNDER_REVIEW_PENGAWAS,
})

# Submitted and not yet finished
IN_FLIGHT_STATUSES = frozenset(set(ApplicationStatus) - TERMINAL_STATUSES - {ApplicationStatus.DRAFT})


class ApprovalStep(str, Enum):
    DIVISI_SIMPAN_PINJAM = "DIVISI_SIMPAN_PINJAM"
    KETUA = "KETUA"
    PENGAWAS = "PENGAWAS"
    SHOPKEEPER = "SHOPKEEPER"  # Disbursement
    KETUA_AUTH = "KETUA_AUTH"  # Authorization of the disbursement


class Role(str, Enum):
    DIVISI_SIMPAN_PINJAM = "divisi_simpan_pinjam"
    KETUA = "ketua"
    PENGAWAS = "pengawas"
    SHOPKEEPER = "shopkeeper"


class Decision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVISED = "REVISED"


class DepositChangeType(str, Enum):
    AMOUNT_CHANGE = "AMOUNT_CHANGE"
    TENOR_CHANGE = "TENOR_CHANGE"
    BOTH = "BOTH"


@dataclass(frozen=True)
class LoanSchedule:
    """Flat-rate pricing of a loan; shop margin is kept apart from interest"""

    principal: int
    tenor_months: int
    interest_rate: Decimal
    shop_margin_rate: Decimal
    interest_portion: int
    shop_margin_portion: int
    total_repayment: int
    monthly_installment: int


@dataclass(frozen=True)
class DepositMaturity:
    """Deposit value at maturity"""

    principal: int
    tenor_months: int
    interest_rate: Decimal
    interest_amount: int
    maturity_amount: int


@dataclass(frozen=True)
class WithdrawalPenalty:
    """Penalty deducted from a withdrawal; clamped is set when the net amount hit zero"""

    amount: int
    is_early_withdrawal: bool
    penalty_rate: Decimal
    penalty_amount: int
    net_amount: int
    clamped: bool = False


@dataclass(frozen=True)
class DepositChangeQuote:
    """Current and requested terms of a deposit, with the admin fee charged for the change"""

    change_type: DepositChangeType
    current_amount: int
    current_tenor_months: int
    new_amount: int
    new_tenor_months: int
    interest_rate: Decimal
    new_maturity_amount: int
    admin_fee: int


@dataclass(frozen=True)
class RepaymentQuote:
    """Outstanding balance of a disbursed loan at the time of an early repayment"""

    total_repayment: int
    total_paid: int
    remaining_amount: int
    paid_installments: int
    total_installments: int


ComputedFields = Union[LoanSchedule, DepositMaturity, WithdrawalPenalty, DepositChangeQuote, RepaymentQuote]


@dataclass
class Installment:
    """Single monthly payment in a loan repayment plan"""

    number: int
    due_date: date
    amount: int
    paid_on: Optional[date] = None

    @property
    def is_paid(self) -> bool:
        return self.paid_on is not None


@dataclass
class ApprovalEntry:
    """One visited step; decision stays None while the step is pending"""

    step: ApprovalStep
    decision: Optional[Decision] = None
    actor_id: Optional[str] = None
    timestamp: Optional[datetime] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class DisbursementRecord:
    processed_by: str
    disbursement_date: date
    disbursement_time: str
    recorded_at: datetime
    notes: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationRecord:
    authorized_by: str
    authorization_date: date
    recorded_at: datetime
    authorization_time: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Settlement:
    """A completed request applied to the record it references"""

    source_id: str
    source_kind: ApplicationKind
    amount: int
    settled_on: date


@dataclass
class Application:
    """Any cooperative application: loan, deposit, withdrawal, deposit change or repayment.

    ``payload`` holds the kind-specific pydantic model from
    ``koperasi_workflow.domain.payloads``; ``computed_fields`` is written by
    the pricing transition, and again when an approved deposit change amends
    the deposit. ``settlements`` lists the completed requests (withdrawals,
    deposit changes, repayments) applied to this record.
    """

    id: str
    kind: ApplicationKind
    number: str
    applicant_id: str
    payload: Any
    status: ApplicationStatus = ApplicationStatus.DRAFT
    current_step: Optional[ApprovalStep] = None
    computed_fields: Optional[ComputedFields] = None
    approval_history: List[ApprovalEntry] = field(default_factory=list)
    disbursement: Optional[DisbursementRecord] = None
    authorization: Optional[AuthorizationRecord] = None
    revision_count: int = 0
    revision_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    installments: List[Installment] = field(default_factory=list)
    settlements: List[Settlement] = field(default_factory=list)
    activated_at: Optional[date] = None
    maturity_date: Optional[date] = None
    created_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    decided_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass
class BulkFailure:
    """A single id that could not be processed in a bulk operation"""

    id: str
    error: Exception

    @property
    def category(self) -> str:
        return getattr(self.error, "category", "domain_error")


@dataclass
class BulkResult:
    """Best-effort batch outcome: each id either succeeded or failed on its own"""

    succeeded: List[str] = field(default_factory=list)
    failed: List[BulkFailure] = field(default_factory=list)

    @property
    def failed_ids(self) -> List[str]:
        return [failure.id for failure in self.failed]
