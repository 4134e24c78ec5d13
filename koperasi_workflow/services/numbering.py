"""Human-readable application numbers"""

from datetime import date

from koperasi_workflow.domain.models import ApplicationKind, LoanType
from koperasi_workflow.domain.payloads import Payload
from koperasi_workflow.domain.ports import ApplicationFilter, ApplicationStore

LOAN_PREFIXES = {
    LoanType.CASH_LOAN: "LOAN",
    LoanType.GOODS_REIMBURSE: "REIM",
    LoanType.GOODS_ONLINE: "ONLN",
    LoanType.GOODS_PHONE: "PHNE",
}

KIND_PREFIXES = {
    ApplicationKind.DEPOSIT: "DEPO",
    ApplicationKind.WITHDRAWAL: "WD",
    ApplicationKind.DEPOSIT_CHANGE: "CHG",
    ApplicationKind.LOAN_REPAYMENT: "REPM",
}


def number_prefix(kind: ApplicationKind, payload: Payload, on: date) -> str:
    """e.g. LOAN-20240315- or DEPO-20240315-"""
    kind = ApplicationKind(kind)
    code = LOAN_PREFIXES[payload.loan_type] if kind is ApplicationKind.LOAN else KIND_PREFIXES[kind]
    return f"{code}-{on:%Y%m%d}-"


def next_application_number(store: ApplicationStore, kind: ApplicationKind, payload: Payload, on: date) -> str:
    """
    Next free number for the prefix and day, e.g. ONLN-20240315-0003.

    The sequence restarts every day and is counted from the store, so two
    concurrent drafts can draw the same number; the store's uniqueness check
    turns the second create into a ConflictError.
    """
    prefix = number_prefix(kind, payload, on)
    _, total = store.list(ApplicationFilter(number_prefix=prefix), page=1, page_size=1)
    return f"{prefix}{total + 1:04d}"
