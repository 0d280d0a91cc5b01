"""
Person profile service for CaseLink.

Single entry point the profile, search and case views call into. Each view
states its match policy and repeat threshold; the pipeline is the same:

    seed -> match keys -> IdentityResolver -> CaseMetadataJoiner
         -> History Aggregator / Relationship Indexer -> view model

All reads are batched: one lookup per (key, role), one case hydration per
resolution batch, one bail-grant fetch per profile or roster.
A read the view cannot do without that times out is reported as the store
being unavailable.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from api.services.case_joiner import CaseMetadataJoiner
from api.services.case_models import (
    AccusedAppearance,
    BailGrant,
    PersonAppearance,
    Role,
    SuretyAppearance,
)
from api.services.case_store import get_case_store
from api.services.history_aggregator import (
    CaseHistoryEntry,
    HistoryAggregate,
    HistoryStats,
    aggregate,
)
from api.services.identity_resolver import (
    Identity,
    IdentityResolver,
    LookupCache,
    seed_key_summary,
)
from api.services.match_keys import extract_keys, identity_key_fields, normalize_contact
from api.services.resilience import (
    LookupFailure,
    SeedNotFoundError,
    StoreUnavailableError,
    call_store,
    describe_failure,
)
from api.services.surety_index import SuretyProfile, index_sureties
from config.matching_config import KeyType, MatchPolicy, parse_policy
from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class PersonProfile:
    """Normalized result handed to every calling view."""
    identity_keys: dict
    appearances: list[PersonAppearance]
    case_history: list[CaseHistoryEntry]
    stats: HistoryStats
    surety_profiles: list[SuretyProfile]
    is_repeat_offender: bool
    policy: MatchPolicy
    seed: PersonAppearance
    exclude_case_id: Optional[int] = None
    failures: list[LookupFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        return {
            "identity_keys": dict(self.identity_keys),
            "appearances": [a.to_dict() for a in self.appearances],
            "case_history": [e.to_dict() for e in self.case_history],
            "stats": self.stats.to_dict(),
            "surety_profiles": [p.to_dict() for p in self.surety_profiles],
            "is_repeat_offender": self.is_repeat_offender,
            "policy": self.policy.value,
            "seed": self.seed.to_dict(),
            "exclude_case_id": self.exclude_case_id,
            "complete": self.complete,
            "failures": [f.to_dict() for f in self.failures],
        }


@dataclass
class RosterEntry:
    """One accused person of a case, with their other cases."""
    accused: AccusedAppearance
    history: HistoryAggregate
    failures: list[LookupFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures


@dataclass
class SearchHit:
    """A search result annotated with how many cases the person spans."""
    appearance: PersonAppearance
    case_number: Optional[str]
    total_cases: int
    is_repeat: bool
    complete: bool = True


class PersonProfileService:
    """
    Builds person profiles, case rosters and search results.

    Stateless between calls; a LookupCache lives only for the duration of
    one roster or search call.
    """

    def __init__(
        self,
        store=None,
        policy: Optional[MatchPolicy] = None,
        repeat_threshold: Optional[int] = None,
        surety_threshold: Optional[int] = None,
        lookup_timeout: Optional[float] = None,
    ):
        """
        Args:
            store: Case store (default singleton)
            policy: Default match policy (default from settings)
            repeat_threshold: Default repeat offender threshold
            surety_threshold: Default repeat surety threshold
            lookup_timeout: Seconds per store lookup (default from settings)
        """
        self._store = store or get_case_store()
        self.policy = parse_policy(policy or settings.default_match_policy)
        self.repeat_threshold = settings.repeat_offender_threshold if repeat_threshold is None else repeat_threshold
        self.surety_threshold = settings.repeat_surety_threshold if surety_threshold is None else surety_threshold
        self._timeout = settings.lookup_timeout_seconds if lookup_timeout is None else lookup_timeout
        self._joiner = CaseMetadataJoiner(self._store)

    def _resolver(self, policy: Optional[MatchPolicy], cache: Optional[LookupCache] = None) -> IdentityResolver:
        return IdentityResolver(
            self._store,
            policy=parse_policy(policy) if policy else self.policy,
            joiner=self._joiner,
            cache=cache,
            lookup_timeout=self._timeout,
        )

    async def _required(self, operation: str, factory):
        """
        Run a read the view cannot do without.

        A timeout here is reported as the store being unavailable, so the
        caller sees a transient error rather than an empty result.
        """
        try:
            return await call_store(factory, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.error(f"{operation} timed out after {self._timeout}s")
            raise StoreUnavailableError("case_store", f"{operation} timed out")

    async def _optional(self, operation: str, detail: str, factory, failures: list, default):
        """Run a secondary read; a failure degrades to `default` and is recorded."""
        try:
            return await call_store(factory, timeout=self._timeout)
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.warning(f"{operation} failed ({detail}): {describe_failure(e)}")
            failures.append(LookupFailure(operation, detail, describe_failure(e)))
            return default

    async def get_seed(self, role: Role, appearance_id: int) -> PersonAppearance:
        """
        Load the seed appearance.

        Raises:
            SeedNotFoundError: no such appearance
        """
        role = Role(role)
        seed = await self._required(
            "get_appearance", lambda: self._store.get_appearance(role, appearance_id),
        )
        if seed is None:
            raise SeedNotFoundError(role.value, appearance_id)
        return seed

    async def build_profile(
        self,
        role: Role,
        appearance_id: int,
        exclude_case_id: Optional[int] = None,
        policy: Optional[MatchPolicy] = None,
        repeat_threshold: Optional[int] = None,
    ) -> PersonProfile:
        """
        Build the full profile of the person behind one appearance.

        Args:
            role: Role of the seed appearance
            appearance_id: Row id of the seed appearance
            exclude_case_id: Case to leave out ("other cases" views)
            policy: Match policy for this view
            repeat_threshold: Distinct cases needed for the repeat flag

        Raises:
            SeedNotFoundError: the seed appearance does not exist
            StoreUnavailableError: the store could not be reached
        """
        seed = await self.get_seed(role, appearance_id)
        resolver = self._resolver(policy)
        threshold = self.repeat_threshold if repeat_threshold is None else repeat_threshold

        logger.info(f"Building profile for {seed_key_summary(seed, resolver.policy)}")
        identity = await resolver.resolve(seed, exclude_case_id=exclude_case_id)
        failures = list(identity.failures)

        accused_ids = [a.id for a in identity.accused]
        contact_keys = sorted({
            normalize_contact(s.contact_number) for s in identity.sureties
            if normalize_contact(s.contact_number)
        })

        # Independent secondary reads, issued together
        grants, backing_sureties, *own_grant_lists = await asyncio.gather(
            self._optional(
                "bail_grants", f"{len(accused_ids)} accused",
                lambda: self._store.get_bail_grants(accused_ids=accused_ids), failures, [],
            ),
            self._optional(
                "sureties_for_principals", f"{len(accused_ids)} accused",
                lambda: self._store.get_sureties_for_principals(accused_ids), failures, [],
            ),
            *(
                self._optional(
                    "grants_by_surety_contact", key,
                    lambda key=key: self._store.find_bail_grants_by_surety_contact(key), failures, [],
                )
                for key in contact_keys
            ),
        )

        history = aggregate(
            identity.appearances,
            identity.cases,
            grants,
            repeat_threshold=threshold,
            complete=not failures,
        )

        surety_profiles = await self._surety_profiles(
            identity, grants, backing_sureties, own_grant_lists, failures,
        )

        return PersonProfile(
            identity_keys=identity_key_fields(extract_keys(seed)),
            appearances=identity.appearances,
            case_history=history.case_history,
            stats=history.stats,
            surety_profiles=surety_profiles,
            is_repeat_offender=history.is_repeat_offender,
            policy=resolver.policy,
            seed=seed,
            exclude_case_id=exclude_case_id,
            failures=failures,
        )

    async def _surety_profiles(
        self,
        identity: Identity,
        grants: list[BailGrant],
        backing_sureties: list[SuretyAppearance],
        own_grant_lists: list[list[BailGrant]],
        failures: list[LookupFailure],
    ) -> list[SuretyProfile]:
        """
        Index the sureties who backed this person, plus the person's own
        surety record when they stood bail themselves.
        """
        all_grants = {g.id: g for g in grants}
        for grant_list in own_grant_lists:
            for grant in grant_list:
                all_grants.setdefault(grant.id, grant)

        sureties = {s.id: s for s in backing_sureties}
        for surety in identity.sureties:
            sureties.setdefault(surety.id, surety)

        principals = {a.id: a for a in identity.accused}
        wanted = {g.accused_id for g in all_grants.values()} | {
            s.accused_id for s in sureties.values() if s.accused_id is not None
        }
        missing_principals = sorted(wanted - set(principals))
        missing_cases = {g.case_id for g in all_grants.values()} - set(identity.cases)

        fetched, hydration = await asyncio.gather(
            self._optional(
                "principals", f"{len(missing_principals)} accused",
                lambda: self._store.get_appearances(Role.ACCUSED, missing_principals), failures, [],
            ),
            self._joiner.hydrate(missing_cases),
        )
        failures.extend(hydration.failures)
        principals.update({a.id: a for a in fetched})
        cases = dict(identity.cases)
        cases.update(hydration.cases)

        return index_sureties(
            sureties.values(),
            all_grants.values(),
            principals=principals,
            cases=cases,
            repeat_threshold=self.surety_threshold,
        )

    async def build_roster(
        self,
        case_id: int,
        policy: Optional[MatchPolicy] = None,
        repeat_threshold: Optional[int] = None,
        max_concurrency: Optional[int] = None,
    ) -> list[RosterEntry]:
        """
        Resolve the other cases of every accused person in one case.

        Resolutions run with bounded concurrency and share one LookupCache,
        so a key held by several accused is queried once. Bail grants for
        all resolved accused are fetched in a single batch.
        """
        roster = await self._required(
            "list_case_appearances", lambda: self._store.list_case_appearances(case_id, Role.ACCUSED),
        )
        if not roster:
            return []

        cache = LookupCache()
        resolver = self._resolver(policy, cache=cache)
        threshold = self.repeat_threshold if repeat_threshold is None else repeat_threshold
        identities = await resolver.resolve_many(
            roster, exclude_case_id=case_id, max_concurrency=max_concurrency,
        )
        logger.info(
            f"Roster for case {case_id}: {len(roster)} accused, "
            f"lookup cache {cache.hits} hits / {cache.misses} misses"
        )

        batch_failures: list[LookupFailure] = []
        accused_ids = sorted({a.id for identity in identities for a in identity.accused})
        grants = await self._optional(
            "bail_grants", f"{len(accused_ids)} accused",
            lambda: self._store.get_bail_grants(accused_ids=accused_ids), batch_failures, [],
        )

        entries = []
        for accused, identity in zip(roster, identities):
            failures = list(identity.failures) + batch_failures
            entries.append(RosterEntry(
                accused=accused,
                history=aggregate(
                    identity.appearances,
                    identity.cases,
                    grants,
                    repeat_threshold=threshold,
                    complete=not failures,
                ),
                failures=failures,
            ))
        return entries

    async def search(
        self,
        query: str,
        role: Optional[Role] = None,
        limit: Optional[int] = None,
        policy: Optional[MatchPolicy] = None,
        repeat_threshold: Optional[int] = None,
    ) -> list[SearchHit]:
        """
        Search accused and/or sureties by name, contact or national ID.

        Every hit carries the number of distinct cases its identity spans.
        An empty query or no matches returns an empty list.
        """
        query = (query or "").strip()
        if not query:
            return []
        limit = limit or settings.search_limit
        roles = [Role(role)] if role else [Role.ACCUSED, Role.SURETY]
        threshold = self.repeat_threshold if repeat_threshold is None else repeat_threshold

        found = await asyncio.gather(*(
            self._required(
                "search_appearances", lambda r=r: self._store.search_appearances(query, r, limit),
            )
            for r in roles
        ))
        hits = [appearance for group in found for appearance in group]
        if not hits:
            return []

        resolver = self._resolver(policy, cache=LookupCache())
        identities = await resolver.resolve_many(hits)

        results = []
        for appearance, identity in zip(hits, identities):
            total = len(identity.case_ids)
            accused_cases = len({a.case_id for a in identity.accused})
            summary = identity.cases.get(appearance.case_id)
            results.append(SearchHit(
                appearance=appearance,
                case_number=summary.case_number if summary else None,
                total_cases=total,
                is_repeat=accused_cases >= threshold,
                complete=identity.complete,
            ))
        return results

    async def surety_profile_by_contact(self, contact: str) -> Optional[SuretyProfile]:
        """
        Profile of the surety with this contact number (bailer view).

        Returns None when the contact has never stood surety.
        """
        key = normalize_contact(contact)
        if not key:
            return None

        grants, sureties = await asyncio.gather(
            self._required(
                "grants_by_surety_contact", lambda: self._store.find_bail_grants_by_surety_contact(key),
            ),
            self._required(
                "find_by_key", lambda: self._store.find_by_key(Role.SURETY, KeyType.CONTACT, key),
            ),
        )
        if not grants and not sureties:
            return None

        principal_ids = {g.accused_id for g in grants} | {
            s.accused_id for s in sureties if s.accused_id is not None
        }
        principals, hydration = await asyncio.gather(
            self._required(
                "principals", lambda: self._store.get_appearances(Role.ACCUSED, principal_ids),
            ),
            self._joiner.hydrate({g.case_id for g in grants} | {s.case_id for s in sureties}),
        )

        profiles = index_sureties(
            sureties,
            grants,
            principals={a.id: a for a in principals},
            cases=hydration.cases,
            repeat_threshold=self.surety_threshold,
        )
        for profile in profiles:
            if profile.key == key:
                return profile
        return None


# Singleton instance
_profile_service: Optional[PersonProfileService] = None


def get_person_profile_service() -> PersonProfileService:
    """Get or create the singleton PersonProfileService."""
    global _profile_service
    if _profile_service is None:
        _profile_service = PersonProfileService()
    return _profile_service
