"""Approval workflow engine for loan, deposit and withdrawal applications"""

import functools
import logging
import re
import time
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Tuple

from koperasi_workflow.config import Settings, settings as default_settings
from koperasi_workflow.domain import steps
from koperasi_workflow.domain.calculator import (
    compute_deposit_maturity,
    compute_loan_schedule,
    compute_repayment_quote,
    compute_withdrawal_penalty,
    quote_deposit_change,
)
from koperasi_workflow.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    DomainException,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from koperasi_workflow.domain.installments import generate_installment_plan
from koperasi_workflow.domain.models import (
    CANCELLABLE_STATUSES,
    IN_FLIGHT_STATUSES,
    Application,
    ApplicationKind,
    ApplicationStatus,
    ApprovalEntry,
    ApprovalStep,
    AuthorizationRecord,
    BulkFailure,
    BulkResult,
    ComputedFields,
    Decision,
    DisbursementRecord,
    LoanType,
    Role,
    Settlement,
)
from koperasi_workflow.domain.payloads import Payload, parse_payload, reference_of, validate_payload
from koperasi_workflow.domain.ports import (
    ApplicationFilter,
    ApplicationStore,
    Expectation,
    Mutation,
    PlafondProvider,
    RoleProvider,
)
from koperasi_workflow.infrastructure.observability.logging import log_transition
from koperasi_workflow.infrastructure.observability.metrics import (
    operation_duration_histogram,
    record_bulk_item,
    record_error,
    record_transition,
)
from koperasi_workflow.services.numbering import next_application_number
from koperasi_workflow.utils.date_utils import add_months, next_payroll_date

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

# Requests acting on a deposit; a deposit has at most one of them in flight
DEPOSIT_REQUEST_KINDS = (ApplicationKind.WITHDRAWAL, ApplicationKind.DEPOSIT_CHANGE)

SETTLE_ATTEMPTS = 3

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def observed(operation: str) -> Callable:
    """Time an engine operation and count the domain errors it raises"""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            except DomainException as e:
                record_error(operation, e.category)
                raise
            finally:
                operation_duration_histogram.labels(operation=operation).observe(time.perf_counter() - start_time)

        return wrapper

    return decorator


def _parse_decision(decision: Any) -> Decision:
    try:
        parsed = Decision(decision)
    except ValueError as e:
        raise ValidationError(f"unknown decision {decision!r}") from e
    if parsed is Decision.REVISED:
        raise ValidationError("revisions go through revise_loan")
    return parsed


def _parse_kind(kind: Any) -> ApplicationKind:
    try:
        return ApplicationKind(kind)
    except ValueError as e:
        raise ValidationError(f"unknown application kind {kind!r}") from e


def _parse_step(step: Any) -> ApprovalStep:
    try:
        return ApprovalStep(step)
    except ValueError as e:
        raise ValidationError(f"unknown approval step {step!r}") from e


def _require_date(value: Any, name: str) -> date:
    # datetime is a date subclass but carries a time we would silently drop
    if isinstance(value, datetime) or not isinstance(value, date):
        raise ValidationError(f"{name} must be a date")
    return value


def _require_time(value: Any, name: str) -> str:
    if not isinstance(value, str) or not _TIME_PATTERN.match(value):
        raise ValidationError(f"{name} must be HH:MM or HH:MM:SS")
    return value


def _pending_entry(app: Application) -> ApprovalEntry:
    """The open history entry of the current step"""
    if app.approval_history:
        entry = app.approval_history[-1]
        if entry.step == app.current_step and entry.decision is None:
            return entry
    raise InvalidStateError(f"{app.number} has no pending decision for {app.current_step}")


def _close_pending(app: Application, decision: Decision, actor_id: str, when: datetime, notes: Optional[str]) -> None:
    entry = _pending_entry(app)
    entry.decision = decision
    entry.actor_id = actor_id
    entry.timestamp = when
    entry.notes = notes


def _withdrawn(deposit: Application) -> int:
    """Total drawn from a deposit by completed withdrawals"""
    return sum(
        settlement.amount
        for settlement in deposit.settlements
        if settlement.source_kind is ApplicationKind.WITHDRAWAL
    )


class WorkflowEngine:
    """
    Drives applications through their kind's approval chain.

    Every operation re-reads the application from the store and writes back
    through a compare-and-set on the (status, current_step, version) it
    observed, so concurrent decisions on one application cannot both land.
    Nothing is cached between calls.
    """

    def __init__(
        self,
        store: ApplicationStore,
        roles: RoleProvider,
        settings: Optional[Settings] = None,
        plafonds: Optional[PlafondProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.roles = roles
        self.settings = settings or default_settings
        self.plafonds = plafonds
        self.clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Queries

    def get(self, app_id: str) -> Application:
        return self.store.get(app_id)

    def pending_for(
        self,
        actor_id: str,
        kind: Optional[ApplicationKind] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Application], int]:
        """
        Applications waiting on a step the actor's roles may act on.

        Returns the requested page (newest first) and the total count.
        """
        if page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")

        held = self._roles_of(actor_id)
        if not held:
            return [], 0

        query = ApplicationFilter(
            kind=_parse_kind(kind) if kind is not None else None,
            steps=steps.steps_for_roles(held),
        )
        return self.store.list(query, page=page, page_size=page_size)

    # ------------------------------------------------------------------
    # Drafts

    @observed("create_draft")
    def create_draft(self, kind: ApplicationKind, applicant_id: str, payload: Any) -> Application:
        """Create a DRAFT application owned by ``applicant_id``"""
        kind = _parse_kind(kind)
        if not applicant_id:
            raise ValidationError("applicant_id is required")

        parsed = parse_payload(kind, payload)
        self._validate_limits(kind, parsed, applicant_id)

        now = self.clock()
        app = Application(
            id=str(uuid.uuid4()),
            kind=kind,
            number=next_application_number(self.store, kind, parsed, now.date()),
            applicant_id=applicant_id,
            payload=parsed,
            created_at=now,
        )
        self.store.create(app)

        record_transition(kind.value, "create_draft", "created")
        log_transition(app.id, kind.value, "create_draft", applicant_id, None, ApplicationStatus.DRAFT.value,
                       number=app.number)
        return self.store.get(app.id)

    @observed("update_draft")
    def update_draft(self, app_id: str, actor_id: str, payload: Any) -> Application:
        """Replace the payload of a DRAFT; only the applicant may edit"""
        app = self.store.get(app_id)
        self._require_status(app, ApplicationStatus.DRAFT, "edited")
        self._require_applicant(app, actor_id)

        parsed = parse_payload(app.kind, payload)
        self._validate_limits(app.kind, parsed, app.applicant_id)

        def mutate(target: Application) -> None:
            target.payload = parsed

        return self._commit(app, "update_draft", "updated", actor_id, mutate)

    @observed("submit")
    def submit(self, app_id: str, actor_id: str) -> Application:
        """DRAFT goes straight to the first review step of its chain"""
        app = self.store.get(app_id)
        self._require_status(app, ApplicationStatus.DRAFT, "submitted")
        self._require_applicant(app, actor_id)

        # Limits may have changed since the draft was written
        self._validate_limits(app.kind, app.payload, app.applicant_id)
        self._referenced(app)

        first = steps.first_step(app.kind, self._step_context(app))
        now = self.clock()

        def mutate(target: Application) -> None:
            target.status = steps.status_for_step(target.kind, first)
            target.current_step = first
            target.submitted_at = now
            target.approval_history.append(ApprovalEntry(step=first))

        return self._commit(app, "submit", "submitted", actor_id, mutate)

    @observed("cancel")
    def cancel(self, app_id: str, actor_id: str) -> Application:
        """Applicant withdraws an application that has not been approved yet"""
        app = self.store.get(app_id)
        if app.status not in CANCELLABLE_STATUSES:
            raise InvalidStateError(f"{app.number} cannot be cancelled while {app.status.value}")
        self._require_applicant(app, actor_id)

        now = self.clock()

        def mutate(target: Application) -> None:
            target.status = ApplicationStatus.CANCELLED
            target.current_step = None
            target.decided_at = now

        return self._commit(app, "cancel", "cancelled", actor_id, mutate)

    # ------------------------------------------------------------------
    # Review

    @observed("process_approval")
    def process_approval(
        self,
        app_id: str,
        actor_id: str,
        decision: Decision,
        notes: Optional[str] = None,
        step: Optional[ApprovalStep] = None,
    ) -> Application:
        """
        Approve or reject the review step the application is waiting on.

        ``step`` is the step the caller believes it is deciding; passing it
        turns a repeated decision on an already decided step into an
        InvalidStateError instead of a decision on the following step.

        Flow:
        1. Check existence, non-terminal status and that a review is pending
        2. Check the actor's roles against the step
        3. Price the application if this is its pricing step
        4. Advance to the next required step, or complete the chain
        """
        decision = _parse_decision(decision)
        app = self.store.get(app_id)
        self._require_not_terminal(app)

        current = app.current_step
        if not steps.is_review_step(current):
            raise InvalidStateError(f"{app.number} is not awaiting a review decision ({app.status.value})")
        if step is not None and _parse_step(step) != current:
            raise InvalidStateError(f"{app.number} is not awaiting {step}; current step is {current.value}")

        self._require_role(app, actor_id, current)
        _pending_entry(app)

        now = self.clock()

        if decision is Decision.REJECTED:
            def mutate(target: Application) -> None:
                _close_pending(target, Decision.REJECTED, actor_id, now, notes)
                target.status = ApplicationStatus.REJECTED
                target.current_step = None
                target.rejection_reason = notes
                target.decided_at = now

            return self._commit(app, "process_approval", "rejected", actor_id, mutate, step=current.value)

        priced: Optional[ComputedFields] = None
        dates: Dict[str, date] = {}
        if current == steps.pricing_step(app.kind):
            priced, dates = self._price(app, now.date())

        nxt = steps.next_step(app.kind, current, self._step_context(app))
        if nxt is None:
            # The final approval settles the request against its deposit or loan
            self._referenced(app, now.date())

        def mutate(target: Application) -> None:
            _close_pending(target, Decision.APPROVED, actor_id, now, notes)
            if priced is not None:
                target.computed_fields = priced
                for name, value in dates.items():
                    setattr(target, name, value)

            if nxt is None:
                target.status = steps.completion_status(target.kind)
                target.current_step = None
                target.decided_at = now
                return

            target.status = steps.status_for_step(target.kind, nxt)
            target.current_step = nxt
            target.approval_history.append(ApprovalEntry(step=nxt))
            if not steps.is_review_step(nxt):
                target.decided_at = now

        updated = self._commit(app, "process_approval", "approved", actor_id, mutate, step=current.value)
        if nxt is None:
            self._settle(updated, actor_id, now.date())
        return updated

    @observed("revise_loan")
    def revise_loan(self, app_id: str, actor_id: str, payload: Any, notes: str) -> Application:
        """
        Reviewer amends a loan instead of rejecting it.

        The application stays on the reviewer's step with a fresh pending
        entry; the replaced entry is closed as REVISED. A loan that was
        already priced is re-priced from the new payload.
        """
        app = self.store.get(app_id)
        if app.kind is not ApplicationKind.LOAN:
            raise InvalidStateError(f"{app.number} is not a loan; only loans can be revised")
        self._require_not_terminal(app)

        current = app.current_step
        if not steps.is_review_step(current):
            raise InvalidStateError(f"{app.number} is not under review ({app.status.value})")
        self._require_role(app, actor_id, current)
        _pending_entry(app)

        if not notes or not notes.strip():
            raise ValidationError("revision notes are required")

        parsed = parse_payload(ApplicationKind.LOAN, payload)
        if parsed.loan_type is not app.payload.loan_type:
            raise ValidationError("loan_type cannot be changed by a revision")
        if parsed.amount <= 0:
            raise ValidationError("a revised loan must carry an amount greater than 0")
        self._validate_limits(ApplicationKind.LOAN, parsed, app.applicant_id)

        repriced = self._loan_schedule(parsed) if app.computed_fields is not None else None
        now = self.clock()

        def mutate(target: Application) -> None:
            _close_pending(target, Decision.REVISED, actor_id, now, notes)
            target.approval_history.append(ApprovalEntry(step=current))
            target.payload = parsed
            target.revision_count += 1
            target.revision_notes = notes
            if repriced is not None:
                target.computed_fields = repriced

        return self._commit(app, "revise_loan", "revised", actor_id, mutate, step=current.value)

    # ------------------------------------------------------------------
    # Disbursement and authorization

    @observed("process_disbursement")
    def process_disbursement(
        self,
        app_id: str,
        actor_id: str,
        tx_date: date,
        tx_time: str,
        notes: Optional[str] = None,
    ) -> Application:
        """Shopkeeper records the funds transfer of an approved application"""
        app = self.store.get(app_id)
        self._require_not_terminal(app)
        if app.current_step != ApprovalStep.SHOPKEEPER:
            raise InvalidStateError(f"{app.number} is not awaiting disbursement ({app.status.value})")
        self._require_role(app, actor_id, ApprovalStep.SHOPKEEPER)
        _pending_entry(app)

        tx_date = _require_date(tx_date, "tx_date")
        tx_time = _require_time(tx_time, "tx_time")
        self._referenced(app)

        now = self.clock()
        record = DisbursementRecord(
            processed_by=actor_id,
            disbursement_date=tx_date,
            disbursement_time=tx_time,
            recorded_at=now,
            notes=notes,
        )
        nxt = steps.next_step(app.kind, ApprovalStep.SHOPKEEPER, self._step_context(app))

        def mutate(target: Application) -> None:
            _close_pending(target, Decision.APPROVED, actor_id, now, notes)
            target.disbursement = record
            if nxt is None:
                target.status = steps.completion_status(target.kind)
                target.current_step = None
                return
            target.status = steps.status_for_step(target.kind, nxt)
            target.current_step = nxt
            target.approval_history.append(ApprovalEntry(step=nxt))

        return self._commit(app, "process_disbursement", "disbursed", actor_id, mutate)

    @observed("process_authorization")
    def process_authorization(
        self,
        app_id: str,
        actor_id: str,
        auth_date: date,
        notes: Optional[str] = None,
        auth_time: Optional[str] = None,
    ) -> Application:
        """
        Ketua confirms a recorded disbursement, completing the application.

        Loans get their monthly installment plan here, first due on the
        payroll date the authorization falls into. A withdrawal draws its
        amount down from the deposit it references.
        """
        app = self.store.get(app_id)
        self._require_not_terminal(app)
        if app.current_step != ApprovalStep.KETUA_AUTH:
            raise InvalidStateError(f"{app.number} is not awaiting authorization ({app.status.value})")
        self._require_role(app, actor_id, ApprovalStep.KETUA_AUTH)
        _pending_entry(app)

        auth_date = _require_date(auth_date, "auth_date")
        if auth_time is not None:
            auth_time = _require_time(auth_time, "auth_time")
        self._referenced(app)

        now = self.clock()
        record = AuthorizationRecord(
            authorized_by=actor_id,
            authorization_date=auth_date,
            recorded_at=now,
            authorization_time=auth_time,
            notes=notes,
        )

        installments = []
        if app.kind is ApplicationKind.LOAN:
            first_due = next_payroll_date(
                auth_date,
                self.settings.cooperative_cutoff_day,
                self.settings.cooperative_payroll_day,
            )
            installments = generate_installment_plan(app.computed_fields, first_due)

        def mutate(target: Application) -> None:
            _close_pending(target, Decision.APPROVED, actor_id, now, notes)
            target.authorization = record
            target.status = steps.completion_status(target.kind)
            target.current_step = None
            target.installments = installments

        updated = self._commit(app, "process_authorization", "authorized", actor_id, mutate)
        self._settle(updated, actor_id, auth_date)
        return updated

    # ------------------------------------------------------------------
    # Bulk variants

    def bulk_process_approval(
        self,
        ids: Iterable[str],
        actor_id: str,
        decision: Decision,
        notes: Optional[str] = None,
    ) -> BulkResult:
        decision = _parse_decision(decision)
        return self._bulk(
            "bulk_process_approval",
            ids,
            lambda app_id: self.process_approval(app_id, actor_id, decision, notes),
        )

    def bulk_process_disbursement(
        self,
        ids: Iterable[str],
        actor_id: str,
        tx_date: date,
        tx_time: str,
        notes: Optional[str] = None,
    ) -> BulkResult:
        return self._bulk(
            "bulk_process_disbursement",
            ids,
            lambda app_id: self.process_disbursement(app_id, actor_id, tx_date, tx_time, notes),
        )

    def bulk_process_authorization(
        self,
        ids: Iterable[str],
        actor_id: str,
        auth_date: date,
        notes: Optional[str] = None,
        auth_time: Optional[str] = None,
    ) -> BulkResult:
        return self._bulk(
            "bulk_process_authorization",
            ids,
            lambda app_id: self.process_authorization(app_id, actor_id, auth_date, notes, auth_time),
        )

    def _bulk(self, operation: str, ids: Iterable[str], action: Callable[[str], Application]) -> BulkResult:
        """
        Best-effort batch: each id is its own transaction and a failure is
        reported next to the successes instead of aborting the rest.
        """
        result = BulkResult()
        seen = set()

        for app_id in ids:
            try:
                # A repeated id would otherwise decide the following step too
                if app_id in seen:
                    raise InvalidStateError(f"{app_id} appears more than once in the batch")
                seen.add(app_id)
                action(app_id)
            except DomainException as e:
                result.failed.append(BulkFailure(id=app_id, error=e))
                record_bulk_item(operation, succeeded=False)
                logger.warning(
                    "Bulk item failed",
                    extra={
                        "operation": operation,
                        "application_id": app_id,
                        "error_category": e.category,
                        "error_message": str(e),
                    },
                )
            else:
                result.succeeded.append(app_id)
                record_bulk_item(operation, succeeded=True)

        logger.info(
            "Bulk operation finished",
            extra={"operation": operation, "succeeded": len(result.succeeded), "failed": len(result.failed)},
        )
        return result

    # ------------------------------------------------------------------
    # Helpers

    def _commit(
        self,
        app: Application,
        action: str,
        outcome: str,
        actor_id: str,
        mutate: Mutation,
        **fields: Any,
    ) -> Application:
        """Write through the store's compare-and-set, then log and count the transition"""
        updated = self.store.update(app.id, Expectation.of(app), mutate)

        record_transition(app.kind.value, action, outcome)
        log_transition(
            app.id,
            app.kind.value,
            action,
            actor_id,
            app.status.value,
            updated.status.value,
            **fields,
        )
        return updated

    def _roles_of(self, actor_id: str) -> FrozenSet[Role]:
        return frozenset(self.roles.roles_of(actor_id))

    def _require_role(self, app: Application, actor_id: str, step: ApprovalStep) -> None:
        allowed = steps.authorized_roles(app.kind, step)
        if not allowed & self._roles_of(actor_id):
            raise AuthorizationError(f"{actor_id} may not act on {steps.STEP_DISPLAY_NAMES[step]} step")

    @staticmethod
    def _require_not_terminal(app: Application) -> None:
        if app.is_terminal:
            raise InvalidStateError(f"{app.number} is already {app.status.value}")

    @staticmethod
    def _require_status(app: Application, status: ApplicationStatus, verb: str) -> None:
        if app.status != status:
            raise InvalidStateError(f"{app.number} cannot be {verb} while {app.status.value}")

    @staticmethod
    def _require_applicant(app: Application, actor_id: str) -> None:
        if app.applicant_id != actor_id:
            raise AuthorizationError(f"{actor_id} is not the applicant of {app.number}")

    def _validate_limits(self, kind: ApplicationKind, payload: Payload, applicant_id: str) -> None:
        plafond = None
        if kind is ApplicationKind.LOAN and payload.loan_type is LoanType.CASH_LOAN and self.plafonds is not None:
            plafond = self.plafonds.plafond_for(applicant_id)
        validate_payload(kind, payload, self.settings, plafond)

    def _step_context(self, app: Application) -> steps.StepContext:
        if app.kind is not ApplicationKind.LOAN:
            return steps.StepContext()
        return steps.StepContext(
            amount=app.payload.amount,
            supervisor_threshold=self.settings.supervisor_review_threshold,
        )

    def _loan_schedule(self, payload: Payload):
        return compute_loan_schedule(
            payload.amount,
            payload.tenor_months,
            self.settings.loan_interest_rate,
            payload.loan_type,
            self.settings.shop_margin_rate,
            self.settings.max_rate_percent,
        )

    def _price(self, app: Application, on: date) -> Tuple[ComputedFields, Dict[str, date]]:
        """Computed fields (and deposit dates) stamped by the pricing step"""
        if app.kind is ApplicationKind.LOAN:
            if app.payload.amount <= 0:
                raise ValidationError(f"{app.number} has no price yet; revise the loan amount before approving")
            return self._loan_schedule(app.payload), {}

        if app.kind is ApplicationKind.DEPOSIT:
            maturity = compute_deposit_maturity(
                app.payload.amount,
                app.payload.tenor_months,
                self.settings.deposit_interest_rate,
                self.settings.max_rate_percent,
            )
            activated = next_payroll_date(
                on,
                self.settings.cooperative_cutoff_day,
                self.settings.cooperative_payroll_day,
            )
            return maturity, {
                "activated_at": activated,
                "maturity_date": add_months(activated, app.payload.tenor_months),
            }

        if app.kind is ApplicationKind.DEPOSIT_CHANGE:
            deposit = self._referenced_deposit(app, on)
            quote = quote_deposit_change(
                deposit.payload.amount,
                deposit.payload.tenor_months,
                app.payload.new_amount,
                app.payload.new_tenor_months,
                self.settings.deposit_interest_rate,
                self.settings.deposit_change_admin_fee,
                self.settings.max_rate_percent,
            )
            return quote, {}

        if app.kind is ApplicationKind.LOAN_REPAYMENT:
            loan = self._referenced_loan(app)
            return compute_repayment_quote(loan.computed_fields.total_repayment, loan.installments), {}

        deposit = self._referenced_deposit(app)
        is_early = app.payload.is_early_withdrawal
        if deposit is not None:
            is_early = deposit.maturity_date is not None and on < deposit.maturity_date

        penalty = compute_withdrawal_penalty(
            app.payload.amount,
            is_early,
            self.settings.deposit_early_withdrawal_penalty_rate,
        )
        return penalty, {}

    # ------------------------------------------------------------------
    # Referenced deposits and loans

    def _referenced(self, app: Application, on: Optional[date] = None) -> Optional[Application]:
        """Check the record a request acts on; None for kinds that reference nothing"""
        if app.kind in DEPOSIT_REQUEST_KINDS:
            return self._referenced_deposit(app, on)
        if app.kind is ApplicationKind.LOAN_REPAYMENT:
            return self._referenced_loan(app)
        return None

    def _load_reference(self, app: Application, noun: str) -> Application:
        target_id = reference_of(app.kind, app.payload)
        try:
            return self.store.get(target_id)
        except NotFoundError as e:
            raise ValidationError(f"{noun} {target_id} does not exist") from e

    def _in_flight(
        self,
        kinds: Iterable[ApplicationKind],
        applicant_id: str,
        target_id: str,
        exclude_id: str,
    ) -> List[Application]:
        """Submitted, unfinished requests of the given kinds acting on ``target_id``"""
        found = []
        for kind in kinds:
            query = ApplicationFilter(kind=kind, applicant_id=applicant_id, statuses=IN_FLIGHT_STATUSES)
            page = 1
            while True:
                items, total = self.store.list(query, page=page, page_size=MAX_PAGE_SIZE)
                found.extend(
                    other for other in items
                    if other.id != exclude_id and reference_of(other.kind, other.payload) == target_id
                )
                if page * MAX_PAGE_SIZE >= total:
                    break
                page += 1
        return found

    def _referenced_deposit(self, app: Application, on: Optional[date] = None) -> Optional[Application]:
        """
        Deposit a withdrawal or deposit change acts on, or None when a
        withdrawal references none.

        Requirements:
        - The deposit exists, is ACTIVE and belongs to the same applicant
        - No other withdrawal or change on it has been submitted and not finished
        - A withdrawal stays within the remaining balance
        - A change keeps the amount at or above what was already withdrawn and,
          given ``on``, keeps the maturity date after it
        """
        if reference_of(app.kind, app.payload) is None:
            return None

        deposit = self._load_reference(app, "deposit")
        if deposit.kind is not ApplicationKind.DEPOSIT:
            raise ValidationError(f"{deposit.number} is not a deposit")
        if deposit.status is not ApplicationStatus.ACTIVE:
            raise ValidationError(f"deposit {deposit.number} is not active ({deposit.status.value})")
        if deposit.applicant_id != app.applicant_id:
            raise ValidationError(f"deposit {deposit.number} belongs to another member")

        others = self._in_flight(DEPOSIT_REQUEST_KINDS, app.applicant_id, deposit.id, exclude_id=app.id)
        if others:
            raise ValidationError(f"deposit {deposit.number} already has request {others[0].number} in progress")

        withdrawn = _withdrawn(deposit)
        if app.kind is ApplicationKind.WITHDRAWAL:
            remaining = deposit.payload.amount - withdrawn
            if app.payload.amount > remaining:
                raise ValidationError(f"withdrawal exceeds the remaining deposit balance of {remaining}")
        else:
            requested = (app.payload.new_amount, app.payload.new_tenor_months)
            if requested == (deposit.payload.amount, deposit.payload.tenor_months):
                raise ValidationError("the requested terms are the same as the current ones")
            if app.payload.new_amount < withdrawn:
                raise ValidationError(f"new_amount is below the {withdrawn} already withdrawn")
            if on is not None and add_months(deposit.activated_at, app.payload.new_tenor_months) <= on:
                raise ValidationError(f"new_tenor_months would end deposit {deposit.number} before {on}")
        return deposit

    def _referenced_loan(self, app: Application) -> Application:
        """
        Disbursed loan a repayment pays off.

        Requirements:
        - The loan exists, is DISBURSED and belongs to the same applicant
        - Something is still outstanding on it
        - No other repayment of it has been submitted and not finished
        """
        loan = self._load_reference(app, "loan")
        if loan.kind is not ApplicationKind.LOAN:
            raise ValidationError(f"{loan.number} is not a loan")
        if loan.status is not ApplicationStatus.DISBURSED:
            raise ValidationError(f"loan {loan.number} has not been disbursed ({loan.status.value})")
        if loan.applicant_id != app.applicant_id:
            raise ValidationError(f"loan {loan.number} belongs to another member")

        quote = compute_repayment_quote(loan.computed_fields.total_repayment, loan.installments)
        if quote.remaining_amount <= 0:
            raise ValidationError(f"loan {loan.number} is already paid off")

        others = self._in_flight((ApplicationKind.LOAN_REPAYMENT,), app.applicant_id, loan.id, exclude_id=app.id)
        if others:
            raise ValidationError(f"loan {loan.number} already has repayment {others[0].number} in progress")
        return loan

    # ------------------------------------------------------------------
    # Settlement

    def _settle(self, app: Application, actor_id: str, on: date) -> Optional[Application]:
        """
        Apply a completed request to the deposit or loan it references.

        Runs after the request's own transition is committed, so only the
        winner of that compare-and-set gets here. The referenced record is
        re-read on a lost race, and a request already listed in its
        settlements is not applied twice.
        """
        target_id = reference_of(app.kind, app.payload)
        if target_id is None:
            return None
        apply = {
            ApplicationKind.WITHDRAWAL: self._draw_down,
            ApplicationKind.DEPOSIT_CHANGE: self._amend_deposit,
            ApplicationKind.LOAN_REPAYMENT: self._pay_off,
        }[app.kind]

        for attempt in range(1, SETTLE_ATTEMPTS + 1):
            target = self.store.get(target_id)
            if any(settlement.source_id == app.id for settlement in target.settlements):
                return target
            try:
                updated = self.store.update(target_id, Expectation.of(target), apply(app, on))
            except ConflictError:
                logger.warning(
                    "Settlement lost a race, retrying",
                    extra={"application_id": app.id, "target_id": target_id, "attempt": attempt},
                )
                continue

            action = f"settle_{app.kind.value.lower()}"
            record_transition(target.kind.value, action, "settled")
            log_transition(
                target.id,
                target.kind.value,
                action,
                actor_id,
                target.status.value,
                updated.status.value,
                source_id=app.id,
                source_number=app.number,
            )
            return updated

        raise ConflictError(f"{app.number} could not be settled against {target_id}; retry")

    def _draw_down(self, withdrawal: Application, on: date) -> Mutation:
        amount = withdrawal.payload.amount

        def mutate(deposit: Application) -> None:
            remaining = deposit.payload.amount - _withdrawn(deposit)
            if amount > remaining:
                raise InvalidStateError(f"deposit {deposit.number} holds only {remaining}")
            deposit.settlements.append(Settlement(withdrawal.id, withdrawal.kind, amount, on))

        return mutate

    def _amend_deposit(self, change: Application, on: date) -> Mutation:
        new_amount = change.payload.new_amount
        new_tenor = change.payload.new_tenor_months
        maturity = compute_deposit_maturity(
            new_amount,
            new_tenor,
            self.settings.deposit_interest_rate,
            self.settings.max_rate_percent,
        )

        def mutate(deposit: Application) -> None:
            deposit.payload = deposit.payload.model_copy(update={"amount": new_amount, "tenor_months": new_tenor})
            deposit.computed_fields = maturity
            deposit.maturity_date = add_months(deposit.activated_at, new_tenor)
            deposit.settlements.append(Settlement(change.id, change.kind, change.computed_fields.admin_fee, on))

        return mutate

    def _pay_off(self, repayment: Application, on: date) -> Mutation:
        def mutate(loan: Application) -> None:
            quote = compute_repayment_quote(loan.computed_fields.total_repayment, loan.installments)
            if quote.remaining_amount <= 0:
                raise InvalidStateError(f"loan {loan.number} is already paid off")
            for installment in loan.installments:
                if not installment.is_paid:
                    installment.paid_on = on
            loan.settlements.append(Settlement(repayment.id, repayment.kind, quote.remaining_amount, on))

        return mutate

