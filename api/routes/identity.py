"""
Identity API endpoints for CaseLink.

Person profiles, case rosters, search and identity reports, all served by
the resolution engine in api.services.person_profile.
"""
from typing import Optional
import logging

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from api.services.case_models import Role
from api.services.case_reports import (
    custody_status_report,
    repeat_offender_report,
    repeat_surety_report,
)
from api.services.case_store import get_case_store
from api.services.person_profile import get_person_profile_service
from api.services.resilience import (
    SeedNotFoundError,
    StoreUnavailableError,
    user_friendly_error,
)
from config.matching_config import MatchPolicy, parse_policy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/identity", tags=["identity"])


class StatsResponse(BaseModel):
    """Bail/custody statistics; lower_bound means some lookups failed."""
    total_cases: int = 0
    bail_cases: int = 0
    custody_cases: int = 0
    absconding_cases: int = 0
    total_bail_amount: float = 0.0
    complete: bool = True
    lower_bound: bool = False


class CaseHistoryResponse(BaseModel):
    case_id: int
    case_number: Optional[str] = None
    incident_date: Optional[str] = None
    roles: list[str]
    case_status: Optional[str] = None
    custody_states: list[str] = []
    status_label: str
    bail_amount: float = 0.0
    details_available: bool = True
    details: Optional[str] = None


class BackedPrincipalResponse(BaseModel):
    accused_id: int
    case_id: int
    name: Optional[str] = None
    case_number: Optional[str] = None
    grant_date: Optional[str] = None


class SuretyProfileResponse(BaseModel):
    key: str
    key_source: str
    name: Optional[str] = None
    contact: Optional[str] = None
    relation: Optional[str] = None
    count: int
    total_amount: float
    unique_principals: int
    principals: list[BackedPrincipalResponse] = []
    case_ids: list[int] = []
    grant_dates: list[str] = []
    is_repeat: bool = False


class FailureResponse(BaseModel):
    operation: str
    detail: str
    reason: str


class ProfileResponse(BaseModel):
    """Response model for a person profile."""
    identity_keys: dict
    appearances: list[dict]
    case_history: list[CaseHistoryResponse]
    stats: StatsResponse
    surety_profiles: list[SuretyProfileResponse]
    is_repeat_offender: bool
    policy: str
    seed: dict
    exclude_case_id: Optional[int] = None
    complete: bool
    failures: list[FailureResponse] = []


class RosterEntryResponse(BaseModel):
    accused: dict
    stats: StatsResponse
    case_history: list[CaseHistoryResponse]
    is_repeat_offender: bool
    complete: bool


class RosterResponse(BaseModel):
    case_id: int
    entries: list[RosterEntryResponse]
    count: int


class SearchHitResponse(BaseModel):
    appearance: dict
    role: str
    case_number: Optional[str] = None
    total_cases: int
    is_repeat: bool
    complete: bool = True


class SearchResponse(BaseModel):
    """Response for search endpoint."""
    results: list[SearchHitResponse]
    count: int
    query: str


class RepeatOffenderResponse(BaseModel):
    name: str
    contact: Optional[str] = None
    national_id: Optional[str] = None
    case_count: int
    case_ids: list[int]
    case_numbers: list[str]
    appearance_ids: list[int]


def _policy_or_400(policy: Optional[str]) -> Optional[MatchPolicy]:
    if policy is None:
        return None
    try:
        return parse_policy(policy)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _unavailable(e: StoreUnavailableError) -> HTTPException:
    logger.error(f"Case store unavailable: {e}")
    return HTTPException(status_code=503, detail=user_friendly_error(e))


async def _profile(role: Role, appearance_id: int, other_cases_only: bool,
                   policy: Optional[str], repeat_threshold: Optional[int]) -> ProfileResponse:
    service = get_person_profile_service()
    match_policy = _policy_or_400(policy)
    try:
        exclude = None
        if other_cases_only:
            exclude = (await service.get_seed(role, appearance_id)).case_id
        profile = await service.build_profile(
            role,
            appearance_id,
            exclude_case_id=exclude,
            policy=match_policy,
            repeat_threshold=repeat_threshold,
        )
    except SeedNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StoreUnavailableError as e:
        raise _unavailable(e)

    return ProfileResponse(**profile.to_dict())


@router.get("/accused/{accused_id}/profile", response_model=ProfileResponse)
async def get_accused_profile(
    accused_id: int,
    other_cases_only: bool = Query(default=False, description="Leave out the seed's own case"),
    policy: Optional[str] = Query(default=None, description="Match policy"),
    repeat_threshold: Optional[int] = Query(default=None, ge=1, description="Cases for repeat flag"),
):
    """Complete profile of an accused person across every case they appear in."""
    return await _profile(Role.ACCUSED, accused_id, other_cases_only, policy, repeat_threshold)


@router.get("/sureties/{surety_id}/profile", response_model=ProfileResponse)
async def get_surety_profile(
    surety_id: int,
    other_cases_only: bool = Query(default=False, description="Leave out the seed's own case"),
    policy: Optional[str] = Query(default=None, description="Match policy"),
    repeat_threshold: Optional[int] = Query(default=None, ge=1, description="Cases for repeat flag"),
):
    """Complete profile of a surety, including any cases where they were accused."""
    return await _profile(Role.SURETY, surety_id, other_cases_only, policy, repeat_threshold)


@router.get("/sureties/by-contact/{contact}", response_model=SuretyProfileResponse)
async def get_surety_by_contact(contact: str):
    """Everyone a surety with this contact number has stood bail for."""
    service = get_person_profile_service()
    try:
        profile = await service.surety_profile_by_contact(contact)
    except StoreUnavailableError as e:
        raise _unavailable(e)

    if profile is None:
        raise HTTPException(status_code=404, detail=f"No surety with contact '{contact}'")
    return SuretyProfileResponse(**profile.to_dict())


@router.get("/cases/{case_id}/roster", response_model=RosterResponse)
async def get_case_roster(
    case_id: int,
    policy: Optional[str] = Query(default=None, description="Match policy"),
    repeat_threshold: Optional[int] = Query(default=None, ge=1, description="Cases for repeat flag"),
):
    """Other cases of every accused person named in a case."""
    service = get_person_profile_service()
    match_policy = _policy_or_400(policy)
    try:
        entries = await service.build_roster(
            case_id, policy=match_policy, repeat_threshold=repeat_threshold,
        )
    except StoreUnavailableError as e:
        raise _unavailable(e)

    return RosterResponse(
        case_id=case_id,
        entries=[
            RosterEntryResponse(
                accused=entry.accused.to_dict(),
                stats=StatsResponse(**entry.history.stats.to_dict()),
                case_history=[CaseHistoryResponse(**e.to_dict()) for e in entry.history.case_history],
                is_repeat_offender=entry.history.is_repeat_offender,
                complete=entry.complete,
            )
            for entry in entries
        ],
        count=len(entries),
    )


@router.get("/search", response_model=SearchResponse)
async def search_people(
    q: str = Query(..., min_length=1, description="Name, contact number or national ID"),
    role: Optional[Role] = Query(default=None, description="accused or surety"),
    limit: int = Query(default=50, ge=1, le=500, description="Max results per role"),
    policy: Optional[str] = Query(default=None, description="Match policy"),
):
    """Search accused persons and sureties, flagging people seen in several cases."""
    if not q.strip():
        raise HTTPException(status_code=400, detail="Query cannot be empty")

    service = get_person_profile_service()
    match_policy = _policy_or_400(policy)
    try:
        hits = await service.search(q, role=role, limit=limit, policy=match_policy)
    except StoreUnavailableError as e:
        raise _unavailable(e)

    return SearchResponse(
        results=[
            SearchHitResponse(
                appearance=hit.appearance.to_dict(),
                role=hit.appearance.role.value,
                case_number=hit.case_number,
                total_cases=hit.total_cases,
                is_repeat=hit.is_repeat,
                complete=hit.complete,
            )
            for hit in hits
        ],
        count=len(hits),
        query=q,
    )


@router.get("/reports/repeat-offenders", response_model=list[RepeatOffenderResponse])
async def get_repeat_offenders(
    policy: Optional[str] = Query(default=None, description="Match policy"),
    threshold: Optional[int] = Query(default=None, ge=1, description="Minimum distinct cases"),
    limit: Optional[int] = Query(default=None, ge=1, le=5000),
):
    """Accused identities spanning several distinct cases."""
    match_policy = _policy_or_400(policy)
    try:
        offenders = await repeat_offender_report(
            get_case_store(), policy=match_policy, threshold=threshold, limit=limit,
        )
    except StoreUnavailableError as e:
        raise _unavailable(e)
    return [RepeatOffenderResponse(**o.to_dict()) for o in offenders]


@router.get("/reports/repeat-sureties", response_model=list[SuretyProfileResponse])
async def get_repeat_sureties(
    threshold: Optional[int] = Query(default=None, ge=1, description="Minimum occurrences"),
    limit: Optional[int] = Query(default=None, ge=1, le=5000),
):
    """Sureties who stood bail repeatedly."""
    try:
        profiles = await repeat_surety_report(get_case_store(), threshold=threshold, limit=limit)
    except StoreUnavailableError as e:
        raise _unavailable(e)
    return [SuretyProfileResponse(**p.to_dict()) for p in profiles]


@router.get("/reports/custody-status", response_model=dict[str, int])
async def get_custody_status():
    """Accused counts per custody state."""
    try:
        return await custody_status_report(get_case_store())
    except StoreUnavailableError as e:
        raise _unavailable(e)
