"""
Relationship indexer: per-surety profiles.

Groups bail grants and surety appearances by the surety's normalized
contact number to answer "who keeps standing bail, for whom, and for how
much".

Group key: the normalized contact number. When a surety has no contact
number the group falls back to the normalized name, prefixed "name:".
Two different people with the same name and no contact number therefore
share a profile. That imprecision is accepted; the fallback is reported as
key_source="name" so views can label it.

Occurrences:
- every bail grant is one occurrence (amount = grant amount)
- a surety appearance is folded into the grant that references it
  (grant.surety_id), or into a grant of the same case with the same
  group key and principal
- any other surety appearance is one occurrence with amount 0
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from api.services.case_models import (
    AccusedAppearance,
    BailGrant,
    CaseSummary,
    SuretyAppearance,
)
from api.services.match_keys import normalize_contact, normalize_name
from config.matching_config import ResolutionConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackedPrincipal:
    """An accused person a surety stood for."""
    accused_id: int
    case_id: int
    name: Optional[str] = None
    case_number: Optional[str] = None
    grant_date: Optional[date] = None

    def to_dict(self) -> dict:
        return {
            "accused_id": self.accused_id,
            "case_id": self.case_id,
            "name": self.name,
            "case_number": self.case_number,
            "grant_date": self.grant_date.isoformat() if self.grant_date else None,
        }


@dataclass
class SuretyProfile:
    """Everything one surety key has pledged across cases."""
    key: str
    key_source: str  # "contact" or "name"
    name: Optional[str] = None
    contact: Optional[str] = None
    relation: Optional[str] = None
    count: int = 0
    total_amount: float = 0.0
    principals: list[BackedPrincipal] = field(default_factory=list)
    case_ids: list[int] = field(default_factory=list)
    grant_dates: list[date] = field(default_factory=list)
    is_repeat: bool = False

    @property
    def unique_principals(self) -> int:
        return len({p.accused_id for p in self.principals})

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "key_source": self.key_source,
            "name": self.name,
            "contact": self.contact,
            "relation": self.relation,
            "count": self.count,
            "total_amount": self.total_amount,
            "unique_principals": self.unique_principals,
            "principals": [p.to_dict() for p in self.principals],
            "case_ids": list(self.case_ids),
            "grant_dates": [d.isoformat() for d in self.grant_dates],
            "is_repeat": self.is_repeat,
        }


def surety_group_key(contact: Optional[str], name: Optional[str]) -> Optional[tuple[str, str]]:
    """
    Group key for a surety: (key, key_source), or None if neither field is usable.

    Examples:
        >>> surety_group_key("80000-00002", "Mohan")
        ('8000000002', 'contact')
        >>> surety_group_key("", " mohan  lal ")
        ('name:MOHAN LAL', 'name')
    """
    contact_key = normalize_contact(contact)
    if contact_key:
        return contact_key, "contact"
    name_key = normalize_name(name)
    if name_key:
        return f"{ResolutionConfig.NAME_FALLBACK_PREFIX}{name_key}", "name"
    return None


@dataclass
class _Occurrence:
    key: str
    key_source: str
    case_id: int
    amount: float
    name: Optional[str]
    contact: Optional[str]
    relation: Optional[str]
    accused_id: Optional[int]
    grant_date: Optional[date]


def _collect_occurrences(
    surety_appearances: Iterable[SuretyAppearance],
    bail_grants: Iterable[BailGrant],
) -> list[_Occurrence]:
    sureties = {s.id: s for s in surety_appearances}
    grants = {g.id: g for g in bail_grants}
    occurrences: list[_Occurrence] = []
    folded: set[int] = set()

    for grant in sorted(grants.values(), key=lambda g: g.id):
        linked = sureties.get(grant.surety_id) if grant.surety_id is not None else None
        contact = grant.surety_contact or (linked.contact_number if linked else None)
        name = grant.surety_name or (linked.name if linked else None)
        group = surety_group_key(contact, name)
        if group is None:
            continue
        if linked is not None:
            folded.add(linked.id)
        occurrences.append(_Occurrence(
            key=group[0],
            key_source=group[1],
            case_id=grant.case_id,
            amount=grant.amount or 0.0,
            name=name,
            contact=contact,
            relation=grant.surety_relation or (linked.relation if linked else None),
            accused_id=grant.accused_id,
            grant_date=grant.grant_date,
        ))

    granted = {(o.case_id, o.key, o.accused_id) for o in occurrences}
    granted_any_principal = {(o.case_id, o.key) for o in occurrences}

    for surety in sorted(sureties.values(), key=lambda s: s.id):
        if surety.id in folded:
            continue
        group = surety_group_key(surety.contact_number, surety.name)
        if group is None:
            continue
        if surety.accused_id is not None:
            if (surety.case_id, group[0], surety.accused_id) in granted:
                continue
        elif (surety.case_id, group[0]) in granted_any_principal:
            continue
        occurrences.append(_Occurrence(
            key=group[0],
            key_source=group[1],
            case_id=surety.case_id,
            amount=0.0,
            name=surety.name,
            contact=surety.contact_number,
            relation=surety.relation,
            accused_id=surety.accused_id,
            grant_date=None,
        ))

    return occurrences


def index_sureties(
    surety_appearances: Iterable[SuretyAppearance],
    bail_grants: Iterable[BailGrant],
    principals: Optional[dict[int, AccusedAppearance]] = None,
    cases: Optional[dict[int, CaseSummary]] = None,
    repeat_threshold: int = 2,
) -> list[SuretyProfile]:
    """
    Build one SuretyProfile per surety key.

    Args:
        surety_appearances: Surety records to index
        bail_grants: Grants whose surety fields are indexed
        principals: Accused appearances by id, used for backed-principal names
        cases: Case summaries by id, used for case numbers
        repeat_threshold: Occurrences needed for is_repeat

    Returns:
        Profiles ordered by count desc, total amount desc, key
    """
    principals = principals or {}
    cases = cases or {}
    profiles: dict[str, SuretyProfile] = {}

    for occ in _collect_occurrences(surety_appearances, bail_grants):
        profile = profiles.get(occ.key)
        if profile is None:
            profile = profiles[occ.key] = SuretyProfile(key=occ.key, key_source=occ.key_source)

        profile.count += 1
        profile.total_amount += occ.amount
        profile.name = profile.name or occ.name
        profile.contact = profile.contact or normalize_contact(occ.contact)
        profile.relation = profile.relation or occ.relation
        if occ.case_id not in profile.case_ids:
            profile.case_ids.append(occ.case_id)
        if occ.grant_date is not None:
            profile.grant_dates.append(occ.grant_date)

        if occ.accused_id is not None:
            principal = principals.get(occ.accused_id)
            summary = cases.get(occ.case_id)
            backed = BackedPrincipal(
                accused_id=occ.accused_id,
                case_id=occ.case_id,
                name=principal.name if principal else None,
                case_number=summary.case_number if summary else None,
                grant_date=occ.grant_date,
            )
            if not any(p.accused_id == backed.accused_id for p in profile.principals):
                profile.principals.append(backed)

    for profile in profiles.values():
        profile.case_ids.sort()
        profile.grant_dates.sort()
        profile.principals.sort(key=lambda p: (p.case_id, p.accused_id))
        profile.is_repeat = profile.count >= repeat_threshold

    ordered = sorted(profiles.values(), key=lambda p: (-p.count, -p.total_amount, p.key))
    name_keyed = sum(1 for p in ordered if p.key_source == "name")
    if name_keyed:
        logger.debug(f"{name_keyed} surety profiles grouped by name (no contact number)")
    return ordered
