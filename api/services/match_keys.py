"""
Match key extraction for CaseLink.

Provides normalization of contact numbers, national IDs and names, and
derives the exact-match keys an appearance can be linked on.
"""
import re
from dataclasses import dataclass
from typing import Optional

from config.matching_config import KeyType, MatchPolicy, ResolutionConfig


@dataclass(frozen=True, order=True)
class MatchKey:
    """A normalized identity key: (key type, normalized value)."""
    key_type: KeyType
    value: str


def normalize_contact(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a contact number to its digits.

    Args:
        raw: Contact number in any common format

    Returns:
        Digits only, or None if nothing is left

    Examples:
        >>> normalize_contact("+91 90000-00001")
        '919000000001'
        >>> normalize_contact("(900) 000 0001")
        '9000000001'
        >>> normalize_contact("  ")
    """
    if not raw:
        return None
    digits = re.sub(r'\D', '', str(raw))
    return digits or None


def normalize_national_id(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a national ID: trim, drop inner whitespace, uppercase.

    Examples:
        >>> normalize_national_id(" 1234 5678 9012 ")
        '123456789012'
        >>> normalize_national_id("abcde1234f")
        'ABCDE1234F'
    """
    if not raw:
        return None
    value = re.sub(r'\s+', '', str(raw)).upper()
    return value or None


def normalize_name(raw: Optional[str]) -> Optional[str]:
    """Collapse whitespace and uppercase a person's name."""
    if not raw:
        return None
    value = " ".join(str(raw).split()).upper()
    return value or None


def name_guardian_value(name: Optional[str], guardian_name: Optional[str]) -> Optional[str]:
    """Build the NAME_GUARDIAN key value; both parts are required."""
    n = normalize_name(name)
    g = normalize_name(guardian_name)
    if not n or not g:
        return None
    return f"{n}{ResolutionConfig.NAME_GUARDIAN_SEPARATOR}{g}"


def extract_keys(appearance, policy: MatchPolicy = MatchPolicy.CONTACT_OR_NATIONAL_ID) -> set[MatchKey]:
    """
    Derive the match keys of an appearance-like record under a policy.

    Accepts anything exposing contact_number / national_id / name /
    guardian_name attributes. Blank values never produce a key, so an
    empty set is a normal outcome meaning the record links to nothing else.

    Args:
        appearance: Accused or surety appearance (or a compatible object)
        policy: Which key set identifies a person

    Returns:
        Set of MatchKey (zero, one or two entries)
    """
    contact = normalize_contact(getattr(appearance, "contact_number", None))
    national_id = normalize_national_id(getattr(appearance, "national_id", None))

    if policy == MatchPolicy.CONTACT_OR_NATIONAL_ID:
        keys = set()
        if contact:
            keys.add(MatchKey(KeyType.CONTACT, contact))
        if national_id:
            keys.add(MatchKey(KeyType.NATIONAL_ID, national_id))
        return keys

    if policy == MatchPolicy.NAME_AND_GUARDIAN:
        value = name_guardian_value(
            getattr(appearance, "name", None),
            getattr(appearance, "guardian_name", None),
        )
        return {MatchKey(KeyType.NAME_GUARDIAN, value)} if value else set()

    if policy == MatchPolicy.FIRST_AVAILABLE:
        if contact:
            return {MatchKey(KeyType.CONTACT, contact)}
        if national_id:
            return {MatchKey(KeyType.NATIONAL_ID, national_id)}
        name = normalize_name(getattr(appearance, "name", None))
        return {MatchKey(KeyType.NAME, name)} if name else set()

    raise ValueError(f"Unsupported match policy: {policy}")


def identity_key_fields(keys: set[MatchKey]) -> dict:
    """Split keys into the {contact, national_id} shape profiles expose."""
    fields = {"contact": None, "national_id": None}
    for key in keys:
        if key.key_type == KeyType.CONTACT:
            fields["contact"] = key.value
        elif key.key_type == KeyType.NATIONAL_ID:
            fields["national_id"] = key.value
    return fields


