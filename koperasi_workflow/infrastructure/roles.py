"""Role and plafond lookups backed by plain mappings"""

from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, FrozenSet, Iterable, Mapping, Optional

from koperasi_workflow.domain.models import Role
from koperasi_workflow.domain.plafonds import DEFAULT_LOAN_LIMITS, LoanLimit, lookup_plafond, years_of_service


class StaticRoleProvider:
    """Actor id -> roles; unknown actors hold no role"""

    def __init__(self, assignments: Optional[Mapping[str, Iterable[Role]]] = None):
        self._assignments: Dict[str, FrozenSet[Role]] = {
            actor_id: frozenset(Role(role) for role in roles)
            for actor_id, roles in (assignments or {}).items()
        }

    def roles_of(self, actor_id: str) -> FrozenSet[Role]:
        return self._assignments.get(actor_id, frozenset())


@dataclass(frozen=True)
class MemberProfile:
    """Employment data the loan limit matrix is keyed on"""

    classification: str  # Golongan: I, II, III, IV
    hired_on: date


class MatrixPlafondProvider:
    """Plafond from the loan limit matrix; members without a profile get None (no ceiling known)"""

    def __init__(
        self,
        members: Mapping[str, MemberProfile],
        limits: Iterable[LoanLimit] = DEFAULT_LOAN_LIMITS,
        today: Optional[Callable[[], date]] = None,
    ):
        self._members = dict(members)
        self._limits = tuple(limits)
        self._today = today or date.today

    def plafond_for(self, applicant_id: str) -> Optional[int]:
        profile = self._members.get(applicant_id)
        if profile is None:
            return None
        years = years_of_service(profile.hired_on, self._today())
        return lookup_plafond(self._limits, profile.classification, years)
