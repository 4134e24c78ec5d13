"""Data access layer for cooperative applications"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Tuple

from pydantic import TypeAdapter
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from koperasi_workflow.domain.exceptions import ConflictError, NotFoundError
from koperasi_workflow.domain.models import (
    Application,
    ApplicationKind,
    DepositChangeQuote,
    DepositMaturity,
    LoanSchedule,
    RepaymentQuote,
    WithdrawalPenalty,
)
from koperasi_workflow.domain.payloads import parse_payload
from koperasi_workflow.domain.ports import ApplicationFilter, Expectation, Mutation
from koperasi_workflow.infrastructure.database.models import ApplicationRecord

_application_adapter = TypeAdapter(Application)

_COMPUTED_ADAPTERS = {
    ApplicationKind.LOAN: TypeAdapter(LoanSchedule),
    ApplicationKind.DEPOSIT: TypeAdapter(DepositMaturity),
    ApplicationKind.WITHDRAWAL: TypeAdapter(WithdrawalPenalty),
    ApplicationKind.DEPOSIT_CHANGE: TypeAdapter(DepositChangeQuote),
    ApplicationKind.LOAN_REPAYMENT: TypeAdapter(RepaymentQuote),
}


def dump_document(app: Application) -> Dict[str, Any]:
    """JSON-safe dict of an application (Decimals and dates become strings)"""
    return _application_adapter.dump_python(app, mode="json")


def load_document(document: Dict[str, Any]) -> Application:
    """Rebuild an application, typing payload and computed fields by kind"""
    data = dict(document)
    kind = ApplicationKind(data["kind"])
    payload = data.pop("payload")
    computed = data.pop("computed_fields", None)

    app = _application_adapter.validate_python({**data, "payload": None, "computed_fields": None})
    app.payload = parse_payload(kind, payload)
    if computed is not None:
        app.computed_fields = _COMPUTED_ADAPTERS[kind].validate_python(computed)
    return app


def _columns(app: Application) -> Dict[str, Any]:
    return {
        "status": app.status.value,
        "current_step": app.current_step.value if app.current_step else None,
        "version": app.version,
        "document": dump_document(app),
    }


class SqlAlchemyApplicationStore:
    """Application store over one table, compare-and-set through the version column"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, app_id: str) -> Application:
        # populate_existing: rows changed by a bulk UPDATE must not come from the identity map
        record = self.db.get(ApplicationRecord, app_id, populate_existing=True)
        if record is None:
            raise NotFoundError(f"application {app_id} not found")
        return load_document(record.document)

    def create(self, app: Application) -> str:
        """Persist a new application; duplicate id or number is a conflict"""
        record = ApplicationRecord(
            id=app.id,
            kind=app.kind.value,
            number=app.number,
            applicant_id=app.applicant_id,
            created_at=app.created_at,
            updated_at=app.created_at,
            **_columns(app),
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(f"application {app.number} already exists") from e
        return app.id

    def update(self, app_id: str, expected: Expectation, mutate: Mutation) -> Application:
        """
        Apply ``mutate`` to the stored application and write it back.

        The UPDATE is conditioned on the version and status seen at read
        time; zero affected rows means another writer got there first.
        """
        app = self.get(app_id)
        if not expected.matches(app):
            raise ConflictError(f"{app.number} was modified concurrently; reload and retry")

        mutate(app)
        app.version = expected.version + 1

        affected = (
            self.db.query(ApplicationRecord)
            .filter(
                ApplicationRecord.id == app_id,
                ApplicationRecord.version == expected.version,
                ApplicationRecord.status == expected.status.value,
            )
            .update(
                {**_columns(app), "updated_at": datetime.now(timezone.utc)},
                synchronize_session=False,
            )
        )
        if affected != 1:
            self.db.rollback()
            raise ConflictError(f"{app.number} was modified concurrently; reload and retry")

        self.db.commit()
        return app

    def list(
        self,
        query: ApplicationFilter = ApplicationFilter(),
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Application], int]:
        """Fetch matching applications, newest first"""
        q = self.db.query(ApplicationRecord)

        if query.kind is not None:
            q = q.filter(ApplicationRecord.kind == ApplicationKind(query.kind).value)
        if query.applicant_id is not None:
            q = q.filter(ApplicationRecord.applicant_id == query.applicant_id)
        if query.statuses is not None:
            q = q.filter(ApplicationRecord.status.in_([status.value for status in query.statuses]))
        if query.steps is not None:
            q = q.filter(ApplicationRecord.current_step.in_([step.value for step in query.steps]))
        if query.number_prefix is not None:
            q = q.filter(ApplicationRecord.number.startswith(query.number_prefix, autoescape=True))

        total = q.count()
        records = (
            q.order_by(ApplicationRecord.created_at.desc(), ApplicationRecord.number.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .populate_existing()
            .all()
        )
        return [load_document(record.document) for record in records], total
