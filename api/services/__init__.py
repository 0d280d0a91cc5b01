"""
CaseLink Services Package.

This package contains the identity resolution engine and case data access.

Example:
    from api.services import get_person_profile_service

    profile = await get_person_profile_service().build_profile(Role.ACCUSED, 12)

Key service modules:
- case_models: Case, appearance and bail grant records
- case_store: SQLite case records
- match_keys: Identity key normalization and extraction
- identity_resolver: Fan-out lookup of every appearance of one person
- case_joiner: Batched case metadata hydration
- history_aggregator: Previous-case list and bail/custody stats
- surety_index: Per-surety profiles
- person_profile: Profile, roster and search entry point
- case_reports: Repeat offender, repeat surety and custody reports
"""

from api.services.case_models import (
    AccusedAppearance,
    BailGrant,
    CaseSummary,
    Role,
    SuretyAppearance,
)
from api.services.case_store import CaseStore, get_case_store
from api.services.identity_resolver import Identity, IdentityResolver
from api.services.person_profile import (
    PersonProfile,
    PersonProfileService,
    get_person_profile_service,
)

__all__ = [
    "AccusedAppearance",
    "BailGrant",
    "CaseSummary",
    "Role",
    "SuretyAppearance",
    "CaseStore",
    "get_case_store",
    "Identity",
    "IdentityResolver",
    "PersonProfile",
    "PersonProfileService",
    "get_person_profile_service",
]
