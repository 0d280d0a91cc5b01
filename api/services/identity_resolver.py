"""
Identity Resolver for CaseLink.

Finds every appearance, in either role, that shares a match key with a seed
appearance. People are never linked by a foreign key in the case data; the
only thread between two records is an incidentally shared contact number or
national ID (or, under the name policies, an exact name).

Resolution:
1. Extract the seed's keys under the caller's MatchPolicy
2. Look up every (key, role) pair concurrently, each with its own timeout
3. Union, drop the excluded case, deduplicate by (case id, role, row id)
4. Hydrate the distinct cases in one batch (one per resolve_many call)
   and order the result

A failed or timed-out sub-lookup does not fail the resolution; the
returned Identity is marked incomplete and carries the failures.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

from api.services.case_joiner import CaseMetadataJoiner, HydrationResult
from api.services.case_models import (
    AccusedAppearance,
    CaseSummary,
    PersonAppearance,
    Role,
    SuretyAppearance,
)
from api.services.match_keys import MatchKey, extract_keys
from api.services.resilience import (
    LookupFailure,
    StoreUnavailableError,
    call_store,
    describe_failure,
)
from config.matching_config import MatchPolicy
from config.settings import settings

logger = logging.getLogger(__name__)

_ROLE_ORDER = {Role.ACCUSED: 0, Role.SURETY: 1}


class LookupCache:
    """
    Memoizes (role, key, excluded case) -> matched appearances.

    Scoped to one resolution session (a roster, a search page); never
    shared across requests. In-flight lookups are shared, so concurrent
    resolutions holding the same key issue one store query. A failed or
    timed-out lookup is evicted and retried by the next resolution. When
    every resolution waiting on a lookup is cancelled, the lookup itself
    is cancelled.
    """

    def __init__(self):
        self._entries: dict[tuple, asyncio.Future] = {}
        self._waiters: dict[asyncio.Future, int] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _key(role: Role, key: MatchKey, exclude_case_id: Optional[int]) -> tuple:
        return (role, key.key_type, key.value, exclude_case_id)

    def _evict(self, cache_key: tuple, pending: asyncio.Future) -> None:
        if self._entries.get(cache_key) is pending:
            del self._entries[cache_key]

    async def fetch(
        self,
        role: Role,
        key: MatchKey,
        exclude_case_id: Optional[int],
        loader: Callable[[], Awaitable],
    ) -> tuple[PersonAppearance, ...]:
        """Return the cached lookup, starting it with loader() on a miss."""
        cache_key = self._key(role, key, exclude_case_id)
        pending = self._entries.get(cache_key)
        if pending is None:
            self.misses += 1
            pending = asyncio.ensure_future(loader())
            self._entries[cache_key] = pending
        else:
            self.hits += 1

        self._waiters[pending] = self._waiters.get(pending, 0) + 1
        try:
            return tuple(await asyncio.shield(pending))
        except asyncio.CancelledError:
            # Last waiter gone: stop the store query instead of finishing it
            if self._waiters[pending] == 1 and not pending.done():
                pending.cancel()
                self._evict(cache_key, pending)
            raise
        except Exception:
            self._evict(cache_key, pending)
            raise
        finally:
            self._waiters[pending] -= 1
            if not self._waiters[pending]:
                del self._waiters[pending]

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class Identity:
    """
    The resolved set of appearances for one person.

    `complete` is False when any key lookup or the case hydration failed;
    counts derived from an incomplete identity are lower bounds.
    """

    keys: frozenset[MatchKey]
    policy: MatchPolicy
    appearances: list[PersonAppearance] = field(default_factory=list)
    cases: dict[int, CaseSummary] = field(default_factory=dict)
    failures: list[LookupFailure] = field(default_factory=list)
    seed: Optional[PersonAppearance] = None
    exclude_case_id: Optional[int] = None

    @property
    def complete(self) -> bool:
        return not self.failures

    @property
    def accused(self) -> list[AccusedAppearance]:
        return [a for a in self.appearances if a.role == Role.ACCUSED]

    @property
    def sureties(self) -> list[SuretyAppearance]:
        return [a for a in self.appearances if a.role == Role.SURETY]

    @property
    def case_ids(self) -> set[int]:
        return {a.case_id for a in self.appearances}


def order_appearances(
    appearances: Iterable[PersonAppearance],
    cases: dict[int, CaseSummary],
) -> list[PersonAppearance]:
    """
    Stable order: incident date descending, then case id, role, row id.

    Undated cases follow dated ones; cases without metadata come last.
    """
    def sort_key(appearance: PersonAppearance):
        summary = cases.get(appearance.case_id)
        if summary is None:
            bucket, day = 2, 0
        elif summary.incident_date is None:
            bucket, day = 1, 0
        else:
            bucket, day = 0, -summary.incident_date.toordinal()
        return (bucket, day, appearance.case_id, _ROLE_ORDER[appearance.role], appearance.id)

    return sorted(appearances, key=sort_key)


class IdentityResolver:
    """
    Resolves a seed appearance to every appearance of the same person.

    Holds no state between calls apart from an optional session LookupCache.
    """

    def __init__(
        self,
        store,
        policy: MatchPolicy = MatchPolicy.CONTACT_OR_NATIONAL_ID,
        joiner: Optional[CaseMetadataJoiner] = None,
        cache: Optional[LookupCache] = None,
        lookup_timeout: Optional[float] = None,
    ):
        """
        Args:
            store: Object exposing async find_by_key and get_case_summaries
            policy: Which keys link two appearances
            joiner: Case hydration (default: one built on the same store)
            cache: Session memo shared across resolutions
            lookup_timeout: Seconds per key lookup (default from settings)
        """
        self._store = store
        self.policy = policy
        self._joiner = joiner or CaseMetadataJoiner(store)
        self._cache = cache
        self._timeout = settings.lookup_timeout_seconds if lookup_timeout is None else lookup_timeout

    async def _lookup(self, role: Role, key: MatchKey, exclude_case_id: Optional[int]) -> tuple:
        def load():
            return call_store(
                lambda: self._store.find_by_key(role, key.key_type, key.value, exclude_case_id),
                timeout=self._timeout,
            )

        if self._cache is not None:
            return await self._cache.fetch(role, key, exclude_case_id, load)
        return tuple(await load())

    async def resolve(
        self,
        seed: PersonAppearance,
        exclude_case_id: Optional[int] = None,
    ) -> Identity:
        """
        Resolve a seed appearance under this resolver's policy.

        Args:
            seed: Appearance to start from
            exclude_case_id: Case whose appearances must not be returned
                ("other cases" views pass the seed's own case)
        """
        keys = extract_keys(seed, self.policy)
        return await self.resolve_keys(keys, exclude_case_id=exclude_case_id, seed=seed)

    async def resolve_keys(
        self,
        keys: Iterable[MatchKey],
        exclude_case_id: Optional[int] = None,
        seed: Optional[PersonAppearance] = None,
    ) -> Identity:
        """
        Resolve a set of keys to the appearances that carry any of them.

        With no keys the result is the seed alone (or nothing if the seed's
        case is excluded). Every (key, role) lookup runs concurrently.

        Raises:
            StoreUnavailableError: every lookup failed because the store
                could not be reached, or case hydration could not reach it
        """
        identity, matched = await self._match(keys, exclude_case_id, seed)
        hydration = await self._joiner.hydrate(ref.case_id for ref in matched)
        return self._finish(identity, matched, hydration)

    async def _match(
        self,
        keys: Iterable[MatchKey],
        exclude_case_id: Optional[int],
        seed: Optional[PersonAppearance],
    ) -> tuple[Identity, dict]:
        """Run the key lookups and return the unhydrated identity with its matches by ref."""
        keys = frozenset(keys)
        identity = Identity(
            keys=keys,
            policy=self.policy,
            seed=seed,
            exclude_case_id=exclude_case_id,
        )

        matched: dict = {}
        if keys:
            plan = [(role, key) for key in sorted(keys) for role in (Role.ACCUSED, Role.SURETY)]
            results = await asyncio.gather(
                *(self._lookup(role, key, exclude_case_id) for role, key in plan),
                return_exceptions=True,
            )

            unavailable = []
            for (role, key), result in zip(plan, results):
                if isinstance(result, BaseException):
                    if isinstance(result, asyncio.CancelledError):
                        raise result
                    if isinstance(result, StoreUnavailableError):
                        unavailable.append(result)
                    detail = f"{role.value} {key.key_type.value}={key.value}"
                    logger.warning(f"Identity lookup failed ({detail}): {describe_failure(result)}")
                    identity.failures.append(
                        LookupFailure("find_by_key", detail, describe_failure(result))
                    )
                    continue
                for appearance in result:
                    matched[appearance.ref] = appearance

            if unavailable and len(unavailable) == len(plan):
                raise unavailable[0]

        if seed is not None:
            matched.setdefault(seed.ref, seed)

        if exclude_case_id is not None:
            matched = {ref: a for ref, a in matched.items() if ref.case_id != exclude_case_id}
        return identity, matched

    def _finish(self, identity: Identity, matched: dict, hydration: HydrationResult) -> Identity:
        """Attach this identity's share of a hydration and order its appearances."""
        case_ids = {ref.case_id for ref in matched}
        if case_ids:
            identity.failures.extend(hydration.failures)
        identity.cases = {cid: hydration.cases[cid] for cid in case_ids if cid in hydration.cases}
        identity.appearances = order_appearances(matched.values(), identity.cases)

        if not identity.complete:
            logger.warning(
                f"Partial identity: {len(identity.appearances)} appearances, "
                f"{len(identity.failures)} failed lookups"
            )
        return identity

    async def resolve_many(
        self,
        seeds: Iterable[PersonAppearance],
        exclude_case_id: Optional[int] = None,
        max_concurrency: Optional[int] = None,
    ) -> list[Identity]:
        """
        Resolve several seeds with bounded concurrency.

        Key lookups run per seed; the cases of every seed are then hydrated
        in a single batch. Results are returned in seed order. Pair with a
        LookupCache so keys shared between seeds (a common surety, a
        repeated contact) are only queried once.
        """
        seeds = list(seeds)
        limit = max_concurrency or settings.max_concurrent_resolutions
        semaphore = asyncio.Semaphore(max(1, limit))

        async def _bounded(seed: PersonAppearance) -> tuple[Identity, dict]:
            async with semaphore:
                return await self._match(
                    extract_keys(seed, self.policy), exclude_case_id, seed,
                )

        tasks = [asyncio.ensure_future(_bounded(seed)) for seed in seeds]
        try:
            matches = await asyncio.gather(*tasks)
        except BaseException:
            # One failure (or the caller leaving) abandons the whole batch
            for task in tasks:
                task.cancel()
            raise

        hydration = await self._joiner.hydrate(
            ref.case_id for _, matched in matches for ref in matched
        )
        return [self._finish(identity, matched, hydration) for identity, matched in matches]


def seed_key_summary(seed: PersonAppearance, policy: MatchPolicy) -> str:
    """Log-friendly description of a seed's keys."""
    keys = extract_keys(seed, policy)
    if not keys:
        return f"{seed.role.value}#{seed.id} (no keys)"
    parts = ", ".join(f"{k.key_type.value}={k.value}" for k in sorted(keys))
    return f"{seed.role.value}#{seed.id} ({parts})"
