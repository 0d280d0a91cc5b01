"""
Identity Matching Configuration for CaseLink.

Two screens of the case system historically linked people differently: the
person profile matched on contact number OR national ID, while the repeat
offender report keyed on the first of contact / national ID / name it could
find. A third variant (name + guardian name) was used for manual review.
Rather than pick one silently, every caller states the policy it wants.

Thresholds and timeouts live in config/settings.py.
"""
from enum import Enum


class MatchPolicy(str, Enum):
    """Which key set links two appearances to the same person."""

    # Canonical: any shared contact number or national ID
    CONTACT_OR_NATIONAL_ID = "contact_or_national_id"

    # Exact normalized name and guardian name, both required
    NAME_AND_GUARDIAN = "name_and_guardian"

    # Contact, else national ID, else bare name (repeat offender report)
    FIRST_AVAILABLE = "first_available"


class KeyType(str, Enum):
    """Normalized key columns the store can be queried on."""

    CONTACT = "contact"
    NATIONAL_ID = "national_id"
    NAME_GUARDIAN = "name_guardian"
    NAME = "name"


def parse_policy(value) -> MatchPolicy:
    """
    Parse a policy name, accepting enum members and their string values.

    Raises:
        ValueError: if the value names no known policy
    """
    if isinstance(value, MatchPolicy):
        return value
    try:
        return MatchPolicy(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(p.value for p in MatchPolicy)
        raise ValueError(f"Unknown match policy '{value}'. Expected one of: {valid}")


class ResolutionConfig:
    """Fixed parameters of the resolution engine."""

    # Separator inside a NAME_GUARDIAN key value
    NAME_GUARDIAN_SEPARATOR: str = "|"

    # Marker rendered for history entries whose case metadata is missing
    DETAILS_UNAVAILABLE: str = "details unavailable"

    # Prefix for surety group keys that fell back to the name
    NAME_FALLBACK_PREFIX: str = "name:"
