"""
Case metadata joiner.

Hydrates a set of case ids into CaseSummary records with a single batched
store call. A missing entry means "case metadata unavailable", never
"person not involved".
"""
import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

from api.services.case_models import CaseSummary
from api.services.resilience import (
    LookupFailure,
    StoreUnavailableError,
    call_store,
    describe_failure,
)
from config.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class HydrationResult:
    """Case summaries for a batch, plus whether the batch fetch succeeded."""
    cases: dict[int, CaseSummary] = field(default_factory=dict)
    failures: list[LookupFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures

    def missing(self, case_ids: Iterable[int]) -> set[int]:
        """Ids from case_ids with no summary."""
        return {cid for cid in case_ids if cid not in self.cases}


class CaseMetadataJoiner:
    """Batches case summary lookups for the identity engine."""

    def __init__(self, store, timeout: Optional[float] = None):
        """
        Args:
            store: Object exposing async get_case_summaries(case_ids)
            timeout: Seconds allowed for the batch (default from settings)
        """
        self._store = store
        self._timeout = settings.hydrate_timeout_seconds if timeout is None else timeout

    async def hydrate(self, case_ids: Iterable[int]) -> HydrationResult:
        """
        Fetch summaries for every distinct id in one store call.

        Unresolvable ids are simply absent from the result. A timeout or
        transient error leaves the map empty and records a failure; only a
        store that stays unreachable after retries raises.

        Raises:
            StoreUnavailableError: store unreachable after retries
        """
        ids = frozenset(case_ids)
        if not ids:
            return HydrationResult()

        try:
            cases = await call_store(
                lambda: self._store.get_case_summaries(ids),
                timeout=self._timeout,
            )
        except StoreUnavailableError:
            raise
        except Exception as e:
            logger.warning(f"Case hydration failed for {len(ids)} cases: {describe_failure(e)}")
            return HydrationResult(
                failures=[LookupFailure("case_summaries", f"{len(ids)} cases", describe_failure(e))]
            )

        unresolved = ids - set(cases)
        if unresolved:
            logger.info(f"Case metadata unavailable for {len(unresolved)} of {len(ids)} cases")
        return HydrationResult(cases={cid: cases[cid] for cid in ids if cid in cases})
