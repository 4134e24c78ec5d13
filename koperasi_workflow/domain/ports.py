"""Interfaces the workflow engine consumes: application store, role and plafond lookups"""

from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Protocol, Tuple

from koperasi_workflow.domain.models import Application, ApplicationKind, ApplicationStatus, ApprovalStep, Role


@dataclass(frozen=True)
class Expectation:
    """State observed at read time; a write only lands if the record still matches"""

    status: ApplicationStatus
    current_step: Optional[ApprovalStep]
    version: int

    @classmethod
    def of(cls, app: Application) -> "Expectation":
        return cls(status=app.status, current_step=app.current_step, version=app.version)

    def matches(self, app: Application) -> bool:
        return (
            app.status == self.status
            and app.current_step == self.current_step
            and app.version == self.version
        )


@dataclass(frozen=True)
class ApplicationFilter:
    """Store query; None fields do not constrain the result"""

    kind: Optional[ApplicationKind] = None
    applicant_id: Optional[str] = None
    statuses: Optional[FrozenSet[ApplicationStatus]] = None
    steps: Optional[FrozenSet[ApprovalStep]] = None
    number_prefix: Optional[str] = None

    def matches(self, app: Application) -> bool:
        if self.kind is not None and app.kind != self.kind:
            return False
        if self.applicant_id is not None and app.applicant_id != self.applicant_id:
            return False
        if self.statuses is not None and app.status not in self.statuses:
            return False
        if self.steps is not None and app.current_step not in self.steps:
            return False
        if self.number_prefix is not None and not app.number.startswith(self.number_prefix):
            return False
        return True


Mutation = Callable[[Application], None]


class ApplicationStore(Protocol):
    """Durable application storage with compare-and-set updates"""

    def get(self, app_id: str) -> Application:
        """Return a detached copy; raises NotFoundError"""
        ...

    def create(self, app: Application) -> str:
        ...

    def update(self, app_id: str, expected: Expectation, mutate: Mutation) -> Application:
        """Apply ``mutate`` to a copy and persist it with version + 1; raises ConflictError"""
        ...

    def list(
        self,
        query: ApplicationFilter = ApplicationFilter(),
        page: int = 1,
        page_size: int = 20,
    ) -> Tuple[List[Application], int]:
        """Newest first, with the total number of matches"""
        ...


class RoleProvider(Protocol):
    def roles_of(self, actor_id: str) -> FrozenSet[Role]:
        ...


class PlafondProvider(Protocol):
    def plafond_for(self, applicant_id: str) -> Optional[int]:
        """Cash-loan ceiling for the applicant's classification and years of service"""
        ...
