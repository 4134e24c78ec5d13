"""Approval step resolver - per-kind step chains, role gates and status mapping.

Pure table lookups plus the supervisor-review threshold; no I/O.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional, Tuple

from koperasi_workflow.domain.models import ApplicationKind, ApplicationStatus, ApprovalStep, Role


REVIEW_STEPS: FrozenSet[ApprovalStep] = frozenset({
    ApprovalStep.DIVISI_SIMPAN_PINJAM,
    ApprovalStep.KETUA,
    ApprovalStep.PENGAWAS,
})

STEP_ROLES: Dict[ApprovalStep, FrozenSet[Role]] = {
    ApprovalStep.DIVISI_SIMPAN_PINJAM: frozenset({Role.DIVISI_SIMPAN_PINJAM}),
    ApprovalStep.KETUA: frozenset({Role.KETUA}),
    ApprovalStep.PENGAWAS: frozenset({Role.PENGAWAS}),
    ApprovalStep.SHOPKEEPER: frozenset({Role.SHOPKEEPER}),
    ApprovalStep.KETUA_AUTH: frozenset({Role.KETUA}),
}

STEP_DISPLAY_NAMES: Dict[ApprovalStep, str] = {
    ApprovalStep.DIVISI_SIMPAN_PINJAM: "Divisi Simpan Pinjam",
    ApprovalStep.KETUA: "Ketua",
    ApprovalStep.PENGAWAS: "Pengawas",
    ApprovalStep.SHOPKEEPER: "Shopkeeper",
    ApprovalStep.KETUA_AUTH: "Ketua (otorisasi)",
}

_REVIEW_STATUSES: Dict[ApprovalStep, ApplicationStatus] = {
    ApprovalStep.DIVISI_SIMPAN_PINJAM: ApplicationStatus.UNDER_REVIEW_DSP,
    ApprovalStep.KETUA: ApplicationStatus.UNDER_REVIEW_KETUA,
    ApprovalStep.PENGAWAS: ApplicationStatus.UNDER_REVIEW_PENGAWAS,
}


@dataclass(frozen=True)
class KindWorkflow:
    """Step chain of one application kind"""

    chain: Tuple[ApprovalStep, ...]
    pricing_step: ApprovalStep
    completion_status: ApplicationStatus
    statuses: Dict[ApprovalStep, ApplicationStatus]


WORKFLOWS: Dict[ApplicationKind, KindWorkflow] = {
    ApplicationKind.LOAN: KindWorkflow(
        chain=(
            ApprovalStep.DIVISI_SIMPAN_PINJAM,
            ApprovalStep.KETUA,
            ApprovalStep.PENGAWAS,
            ApprovalStep.SHOPKEEPER,
            ApprovalStep.KETUA_AUTH,
        ),
        pricing_step=ApprovalStep.DIVISI_SIMPAN_PINJAM,
        completion_status=ApplicationStatus.DISBURSED,
        statuses={
            **_REVIEW_STATUSES,
            ApprovalStep.SHOPKEEPER: ApplicationStatus.APPROVED_PENDING_DISBURSEMENT,
            ApprovalStep.KETUA_AUTH: ApplicationStatus.PENDING_AUTHORIZATION,
        },
    ),
    ApplicationKind.DEPOSIT: KindWorkflow(
        chain=(ApprovalStep.DIVISI_SIMPAN_PINJAM, ApprovalStep.KETUA),
        pricing_step=ApprovalStep.KETUA,
        completion_status=ApplicationStatus.ACTIVE,
        statuses=dict(_REVIEW_STATUSES),
    ),
    ApplicationKind.WITHDRAWAL: KindWorkflow(
        chain=(
            ApprovalStep.DIVISI_SIMPAN_PINJAM,
            ApprovalStep.KETUA,
            ApprovalStep.SHOPKEEPER,
            ApprovalStep.KETUA_AUTH,
        ),
        pricing_step=ApprovalStep.DIVISI_SIMPAN_PINJAM,
        completion_status=ApplicationStatus.COMPLETED,
        statuses={
            **_REVIEW_STATUSES,
            ApprovalStep.SHOPKEEPER: ApplicationStatus.APPROVED_PENDING_DISBURSEMENT,
            ApprovalStep.KETUA_AUTH: ApplicationStatus.DISBURSEMENT_IN_PROGRESS,
        },
    ),
    ApplicationKind.DEPOSIT_CHANGE: KindWorkflow(
        chain=(ApprovalStep.DIVISI_SIMPAN_PINJAM, ApprovalStep.KETUA),
        pricing_step=ApprovalStep.DIVISI_SIMPAN_PINJAM,
        completion_status=ApplicationStatus.APPROVED,
        statuses=dict(_REVIEW_STATUSES),
    ),
    ApplicationKind.LOAN_REPAYMENT: KindWorkflow(
        chain=(ApprovalStep.DIVISI_SIMPAN_PINJAM, ApprovalStep.KETUA),
        pricing_step=ApprovalStep.DIVISI_SIMPAN_PINJAM,
        completion_status=ApplicationStatus.APPROVED,
        statuses=dict(_REVIEW_STATUSES),
    ),
}


@dataclass(frozen=True)
class StepContext:
    """Kind-specific data needed for conditional steps"""

    amount: int = 0
    supervisor_threshold: Optional[int] = None


def workflow_for(kind: ApplicationKind) -> KindWorkflow:
    return WORKFLOWS[ApplicationKind(kind)]


def _ensure_in_chain(kind: ApplicationKind, step: ApprovalStep) -> ApprovalStep:
    step = ApprovalStep(step)
    if step not in workflow_for(kind).chain:
        raise ValueError(f"{step.value} is not a step of the {ApplicationKind(kind).value} workflow")
    return step


def is_required(step: ApprovalStep, context: StepContext) -> bool:
    """Pengawas review only applies to amounts strictly above the configured threshold"""
    if step is ApprovalStep.PENGAWAS:
        return context.supervisor_threshold is not None and context.amount > context.supervisor_threshold
    return True


def next_step(
    kind: ApplicationKind,
    current: Optional[ApprovalStep],
    context: StepContext = StepContext(),
) -> Optional[ApprovalStep]:
    """
    Step that follows ``current`` in the kind's chain, skipping conditional
    steps that do not apply. ``current=None`` yields the first step; ``None``
    as a result means the chain is finished.
    """
    chain = workflow_for(kind).chain
    start = 0 if current is None else chain.index(_ensure_in_chain(kind, current)) + 1

    for step in chain[start:]:
        if is_required(step, context):
            return step
    return None


def first_step(kind: ApplicationKind, context: StepContext = StepContext()) -> ApprovalStep:
    step = next_step(kind, None, context)
    if step is None:
        raise ValueError(f"the {ApplicationKind(kind).value} workflow has no required first step")
    return step


def authorized_roles(kind: ApplicationKind, step: ApprovalStep) -> FrozenSet[Role]:
    return STEP_ROLES[_ensure_in_chain(kind, step)]


def status_for_step(kind: ApplicationKind, step: ApprovalStep) -> ApplicationStatus:
    return workflow_for(kind).statuses[_ensure_in_chain(kind, step)]


def completion_status(kind: ApplicationKind) -> ApplicationStatus:
    return workflow_for(kind).completion_status


def pricing_step(kind: ApplicationKind) -> ApprovalStep:
    return workflow_for(kind).pricing_step


def is_review_step(step: Optional[ApprovalStep]) -> bool:
    return step in REVIEW_STEPS


def steps_for_roles(roles: Iterable[Role]) -> FrozenSet[ApprovalStep]:
    """All steps (of any kind) that at least one of the roles may act on"""
    held = frozenset(roles)
    return frozenset(step for step, allowed in STEP_ROLES.items() if allowed & held)
