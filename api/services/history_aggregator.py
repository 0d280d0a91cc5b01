"""
History aggregation for a resolved identity.

Reduces an ordered appearance set into the "previous cases" list and the
bail/custody/absconding tallies shown on profile, search and report views.
Pure functions; no store access.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from api.services.case_models import (
    BailGrant,
    CaseStatus,
    CaseSummary,
    CustodyState,
    PersonAppearance,
    Role,
)
from config.matching_config import ResolutionConfig

_ROLE_ORDER = (Role.ACCUSED, Role.SURETY)


@dataclass(frozen=True)
class HistoryStats:
    """
    Per-person statistics.

    When `complete` is False some lookups failed, and every count is only
    a lower bound ("at least N").
    """
    total_cases: int = 0
    bail_cases: int = 0
    custody_cases: int = 0
    absconding_cases: int = 0
    total_bail_amount: float = 0.0
    complete: bool = True

    def describe(self, name: str) -> str:
        """Render one stat, qualified as a lower bound when incomplete."""
        value = getattr(self, name)
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value) if self.complete else f"at least {value}"

    def to_dict(self) -> dict:
        return {
            "total_cases": self.total_cases,
            "bail_cases": self.bail_cases,
            "custody_cases": self.custody_cases,
            "absconding_cases": self.absconding_cases,
            "total_bail_amount": self.total_bail_amount,
            "complete": self.complete,
            "lower_bound": not self.complete,
        }


@dataclass(frozen=True)
class CaseHistoryEntry:
    """One distinct case a person appears in."""
    case_id: int
    roles: tuple[Role, ...]
    case_number: Optional[str] = None
    incident_date: Optional[date] = None
    case_status: Optional[CaseStatus] = None
    custody_states: tuple[CustodyState, ...] = ()
    bail_amount: float = 0.0
    details_available: bool = True

    @property
    def status_label(self) -> str:
        """Custody label if accused here, otherwise the case status."""
        if self.custody_states:
            return self.custody_states[0].label
        if self.case_status is not None:
            return self.case_status.value
        return ResolutionConfig.DETAILS_UNAVAILABLE

    def to_dict(self) -> dict:
        return {
            "case_id": self.case_id,
            "case_number": self.case_number,
            "incident_date": self.incident_date.isoformat() if self.incident_date else None,
            "roles": [r.value for r in self.roles],
            "case_status": self.case_status.value if self.case_status else None,
            "custody_states": [s.value for s in self.custody_states],
            "status_label": self.status_label,
            "bail_amount": self.bail_amount,
            "details_available": self.details_available,
            "details": None if self.details_available else ResolutionConfig.DETAILS_UNAVAILABLE,
        }


@dataclass
class HistoryAggregate:
    """Output of aggregate(): stats, per-case history and the repeat flag."""
    stats: HistoryStats
    case_history: list[CaseHistoryEntry] = field(default_factory=list)
    is_repeat_offender: bool = False
    repeat_threshold: int = 2


def bailed_grant_total(accused: Iterable[PersonAppearance], grants: Iterable[BailGrant]) -> dict[int, float]:
    """Sum grant amounts per accused id, counting only bailed appearances."""
    bailed_ids = {
        a.id for a in accused
        if a.role == Role.ACCUSED and a.custody_state == CustodyState.BAILED
    }
    totals: dict[int, float] = {}
    for grant in grants:
        if grant.accused_id in bailed_ids:
            totals[grant.accused_id] = totals.get(grant.accused_id, 0.0) + (grant.amount or 0.0)
    return totals


def aggregate(
    appearances: Iterable[PersonAppearance],
    cases: dict[int, CaseSummary],
    bail_grants: Iterable[BailGrant] = (),
    repeat_threshold: int = 2,
    complete: bool = True,
) -> HistoryAggregate:
    """
    Aggregate a resolved appearance set.

    Total cases counts distinct case ids across both roles, so a person who
    is accused and surety in the same case counts once. Custody tallies,
    bail amounts and the repeat offender flag only ever come from
    accused-role appearances. A case whose metadata is missing still gets a
    history entry, flagged as details unavailable.

    Args:
        appearances: Ordered appearances (IdentityResolver order)
        cases: Hydrated case summaries by id
        bail_grants: Grants for the identity's accused appearances
        repeat_threshold: Distinct accused cases needed for the repeat flag;
            screens differ, so the caller decides
        complete: False if any upstream lookup failed

    Returns:
        HistoryAggregate
    """
    appearances = list(appearances)
    accused = [a for a in appearances if a.role == Role.ACCUSED]

    by_case: dict[int, list[PersonAppearance]] = {}
    for appearance in appearances:
        by_case.setdefault(appearance.case_id, []).append(appearance)

    bail_cases = sum(1 for a in accused if a.custody_state == CustodyState.BAILED)
    custody_cases = sum(1 for a in accused if a.custody_state == CustodyState.ARRESTED)
    absconding_cases = sum(1 for a in accused if a.custody_state == CustodyState.ABSCONDING)

    amounts = bailed_grant_total(accused, bail_grants)

    history = []
    for case_id, members in by_case.items():
        summary = cases.get(case_id)
        roles = tuple(r for r in _ROLE_ORDER if any(m.role == r for m in members))
        states = tuple(m.custody_state for m in members if m.role == Role.ACCUSED)
        history.append(CaseHistoryEntry(
            case_id=case_id,
            roles=roles,
            case_number=summary.case_number if summary else None,
            incident_date=summary.incident_date if summary else None,
            case_status=summary.status if summary else None,
            custody_states=states,
            bail_amount=sum(amounts.get(m.id, 0.0) for m in members if m.role == Role.ACCUSED),
            details_available=summary is not None,
        ))

    stats = HistoryStats(
        total_cases=len(by_case),
        bail_cases=bail_cases,
        custody_cases=custody_cases,
        absconding_cases=absconding_cases,
        total_bail_amount=sum(amounts.values()),
        complete=complete,
    )

    return HistoryAggregate(
        stats=stats,
        case_history=history,
        is_repeat_offender=len({a.case_id for a in accused}) >= repeat_threshold,
        repeat_threshold=repeat_threshold,
    )
