"""
Tests for identity reports.
"""
import pytest

from api.services.case_models import AccusedAppearance
from api.services.case_reports import (
    custody_status_report,
    group_by_identity,
    repeat_offender_report,
    repeat_surety_report,
)
from config.matching_config import MatchPolicy

pytestmark = pytest.mark.unit


class TestGroupByIdentity:
    """Transitive grouping over shared keys."""

    def test_transitive_links(self):
        a = AccusedAppearance(id=1, case_id=1, name="A", contact_number="111")
        b = AccusedAppearance(id=2, case_id=2, name="A", contact_number="111", national_id="X9")
        c = AccusedAppearance(id=3, case_id=3, name="A", national_id="x9")
        d = AccusedAppearance(id=4, case_id=4, name="B")
        groups = group_by_identity([a, b, c, d], MatchPolicy.CONTACT_OR_NATIONAL_ID)
        assert [[x.id for x in g] for g in groups] == [[1, 2, 3], [4]]

    def test_first_available_uses_name(self):
        a = AccusedAppearance(id=1, case_id=1, name="Ravi")
        b = AccusedAppearance(id=2, case_id=2, name=" RAVI ")
        groups = group_by_identity([a, b], MatchPolicy.FIRST_AVAILABLE)
        assert len(groups) == 1


class TestRepeatOffenders:
    """Repeat offender report."""

    @pytest.mark.asyncio
    async def test_default_policy(self, case_store, sample_cases):
        offenders = await repeat_offender_report(case_store)
        assert len(offenders) == 1
        ravi = offenders[0]
        assert ravi.case_count == 2
        assert ravi.contact == "9000000001"
        assert ravi.national_id == "123456789012"
        assert ravi.case_numbers == ["CR-1/2024", "CR-2/2024"]

    @pytest.mark.asyncio
    async def test_name_and_guardian_policy_differs(self, case_store, sample_cases):
        offenders = await repeat_offender_report(case_store, policy=MatchPolicy.NAME_AND_GUARDIAN)
        assert offenders == []

    @pytest.mark.asyncio
    async def test_threshold(self, case_store, sample_cases):
        assert await repeat_offender_report(case_store, threshold=3) == []


class TestRepeatSureties:
    """Repeat surety report."""

    @pytest.mark.asyncio
    async def test_mohan_is_repeat(self, case_store, sample_cases):
        profiles = await repeat_surety_report(case_store)
        assert [p.key for p in profiles] == ["8000000002"]
        assert profiles[0].total_amount == 30000
        assert {p.case_number for p in profiles[0].principals} == {"CR-3/2024", "CR-4/2024", "CR-5/2024"}


@pytest.mark.asyncio
async def test_custody_status_zero_filled(case_store, sample_cases):
    counts = await custody_status_report(case_store)
    assert counts == {
        "unknown": 0,
        "known": 0,
        "arrested": 1,
        "bailed": 4,
        "absconding": 0,
    }
