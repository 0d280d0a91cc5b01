"""
Identity-based reports for CaseLink.

- Repeat offenders: accused people spanning several distinct cases
- Repeat sureties: people who stood bail again and again
- Custody status: accused counts per custody state

Reports read whole tables, so they group in memory instead of resolving
each person through the store.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from api.services.case_joiner import CaseMetadataJoiner
from api.services.case_models import CustodyState, Role
from api.services.case_store import get_case_store
from api.services.match_keys import extract_keys, normalize_contact, normalize_national_id
from api.services.resilience import call_store
from api.services.surety_index import SuretyProfile, index_sureties
from config.matching_config import MatchPolicy, parse_policy
from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class RepeatOffender:
    """One identity that appears as accused in several cases."""
    name: str
    contact: Optional[str] = None
    national_id: Optional[str] = None
    case_count: int = 0
    case_ids: list[int] = field(default_factory=list)
    case_numbers: list[str] = field(default_factory=list)
    appearance_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "contact": self.contact,
            "national_id": self.national_id,
            "case_count": self.case_count,
            "case_ids": list(self.case_ids),
            "case_numbers": list(self.case_numbers),
            "appearance_ids": list(self.appearance_ids),
        }


def group_by_identity(appearances, policy: MatchPolicy) -> list[list]:
    """
    Partition appearances into identities under a policy.

    Appearances sharing any key end up in the same group, transitively
    (A shares a contact with B, B shares a national ID with C). An
    appearance with no keys forms its own group.
    """
    appearances = list(appearances)
    parent = list(range(len(appearances)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    first_holder: dict = {}
    for index, appearance in enumerate(appearances):
        for key in extract_keys(appearance, policy):
            if key in first_holder:
                a, b = find(index), find(first_holder[key])
                if a != b:
                    parent[max(a, b)] = min(a, b)
            else:
                first_holder[key] = index

    groups: dict[int, list] = {}
    for index, appearance in enumerate(appearances):
        groups.setdefault(find(index), []).append(appearance)
    return [groups[root] for root in sorted(groups)]


async def repeat_offender_report(
    store=None,
    policy: Optional[MatchPolicy] = None,
    threshold: Optional[int] = None,
    limit: Optional[int] = None,
) -> list[RepeatOffender]:
    """
    List accused identities that span at least `threshold` distinct cases.

    Args:
        store: Case store (default singleton)
        policy: Identity policy (default from settings). The original report
            screen used FIRST_AVAILABLE.
        threshold: Minimum distinct cases (default from settings)
        limit: Max rows returned (default from settings)

    Returns:
        Offenders sorted by case count desc, then name
    """
    store = store or get_case_store()
    policy = parse_policy(policy or settings.default_match_policy)
    threshold = settings.repeat_offender_threshold if threshold is None else threshold
    limit = limit or settings.report_limit

    accused = await call_store(lambda: store.list_appearances(Role.ACCUSED))
    groups = [
        g for g in group_by_identity(accused, policy)
        if len({a.case_id for a in g}) >= threshold
    ]
    hydration = await CaseMetadataJoiner(store).hydrate(
        a.case_id for g in groups for a in g
    )

    offenders = []
    for group in groups:
        case_ids = sorted({a.case_id for a in group})
        offenders.append(RepeatOffender(
            name=next((a.name for a in group if a.name), "Unknown"),
            contact=next((normalize_contact(a.contact_number) for a in group if normalize_contact(a.contact_number)), None),
            national_id=next((normalize_national_id(a.national_id) for a in group if normalize_national_id(a.national_id)), None),
            case_count=len(case_ids),
            case_ids=case_ids,
            case_numbers=[hydration.cases[c].case_number for c in case_ids if c in hydration.cases],
            appearance_ids=sorted(a.id for a in group),
        ))

    offenders.sort(key=lambda o: (-o.case_count, o.name, o.appearance_ids[0]))
    logger.info(f"Repeat offender report ({policy.value}, >= {threshold}): {len(offenders)} people")
    return offenders[:limit]


async def repeat_surety_report(
    store=None,
    threshold: Optional[int] = None,
    limit: Optional[int] = None,
) -> list[SuretyProfile]:
    """Sureties whose key occurs at least `threshold` times across all grants."""
    store = store or get_case_store()
    threshold = settings.repeat_surety_threshold if threshold is None else threshold
    limit = limit or settings.report_limit

    sureties, grants = await asyncio.gather(
        call_store(lambda: store.list_appearances(Role.SURETY)),
        call_store(lambda: store.get_bail_grants()),
    )
    principal_ids = {g.accused_id for g in grants} | {
        s.accused_id for s in sureties if s.accused_id is not None
    }
    principals, hydration = await asyncio.gather(
        call_store(lambda: store.get_appearances(Role.ACCUSED, principal_ids)),
        CaseMetadataJoiner(store).hydrate(
            {g.case_id for g in grants} | {s.case_id for s in sureties}
        ),
    )

    profiles = index_sureties(
        sureties,
        grants,
        principals={a.id: a for a in principals},
        cases=hydration.cases,
        repeat_threshold=threshold,
    )
    repeats = [p for p in profiles if p.is_repeat]
    logger.info(f"Repeat surety report (>= {threshold}): {len(repeats)} sureties")
    return repeats[:limit]


async def custody_status_report(store=None) -> dict[str, int]:
    """Accused counts for every custody state, zero-filled."""
    store = store or get_case_store()
    counts = await call_store(lambda: store.count_by_custody_state())
    return {state.value: counts.get(state.value, 0) for state in CustodyState}
