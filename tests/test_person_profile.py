"""
Tests for PersonProfileService against a real CaseStore.

Covers the person profile, case roster, search and bailer views end to end.
"""
import asyncio
from datetime import date

import pytest

from api.services.case_models import CustodyState, Role
from api.services.person_profile import PersonProfileService
from api.services.resilience import SeedNotFoundError, StoreUnavailableError
from config.matching_config import KeyType, MatchPolicy

pytestmark = pytest.mark.unit


class SlowContactStore:
    """Wraps a CaseStore; contact lookups hang, everything else passes through."""

    def __init__(self, store):
        self._store = store

    def __getattr__(self, name):
        return getattr(self._store, name)

    async def find_by_key(self, role, key_type, value, exclude_case_id=None):
        if key_type == KeyType.CONTACT:
            await asyncio.sleep(5)
        return await self._store.find_by_key(role, key_type, value, exclude_case_id)


class HangingStore:
    """Wraps a CaseStore; the named reads hang, everything else passes through."""

    def __init__(self, store, *hanging):
        self._store = store
        self._hanging = set(hanging)

    def __getattr__(self, name):
        attr = getattr(self._store, name)
        if name not in self._hanging:
            return attr

        async def hang(*args, **kwargs):
            await asyncio.sleep(5)
            return await attr(*args, **kwargs)
        return hang


@pytest.fixture
def service(case_store):
    return PersonProfileService(store=case_store)


class TestBuildProfile:
    """Person profile view."""

    @pytest.mark.asyncio
    async def test_scenario_a(self, service, sample_cases):
        """Bailed in C1 and in custody in C2."""
        ravi_1, ravi_2 = sample_cases["ravi"]
        c2 = sample_cases["cases"][1]

        profile = await service.build_profile(Role.ACCUSED, ravi_1.id)

        assert profile.stats.total_cases == 2
        assert profile.stats.bail_cases == 1
        assert profile.stats.custody_cases == 1
        assert profile.stats.total_bail_amount == 20000
        assert profile.is_repeat_offender
        assert profile.complete

        entry = next(e for e in profile.case_history if e.case_id == c2.id)
        assert entry.roles == (Role.ACCUSED,)
        assert entry.status_label == "custody"
        assert profile.identity_keys == {"contact": "9000000001", "national_id": "123456789012"}

    @pytest.mark.asyncio
    async def test_scenario_b_excludes_seed_case(self, service, sample_cases):
        ravi_1, ravi_2 = sample_cases["ravi"]
        c1 = sample_cases["cases"][0]

        profile = await service.build_profile(Role.ACCUSED, ravi_1.id, exclude_case_id=c1.id)

        assert [e.case_id for e in profile.case_history] == [ravi_2.case_id]
        assert profile.stats.total_cases == 1
        assert profile.stats.total_bail_amount == 0

    @pytest.mark.asyncio
    async def test_backing_sureties(self, service, sample_cases):
        ravi_1 = sample_cases["ravi"][0]
        profile = await service.build_profile(Role.ACCUSED, ravi_1.id)

        assert len(profile.surety_profiles) == 1
        geeta = profile.surety_profiles[0]
        assert geeta.key == "7000000003"
        assert geeta.total_amount == 20000
        assert not geeta.is_repeat

    @pytest.mark.asyncio
    async def test_scenario_c_surety_seed(self, service, sample_cases):
        """A surety backing three principals is a repeat surety, not an offender."""
        mohan = sample_cases["mohan"][0]

        profile = await service.build_profile(Role.SURETY, mohan.id)

        assert profile.stats.total_cases == 3
        assert not profile.is_repeat_offender
        own = next(p for p in profile.surety_profiles if p.key == "8000000002")
        assert own.count == 3
        assert own.total_amount == 30000
        assert own.unique_principals == 3
        assert own.is_repeat
        assert {p.name for p in own.principals} == {"Suresh", "Vijay", "Anil"}

    @pytest.mark.asyncio
    async def test_scenario_d_no_keys(self, service, case_store):
        case = case_store.add_case("CR-9/2024")
        loner = case_store.add_accused(case.id, "Unknown Person", contact_number="", national_id="  ")

        profile = await service.build_profile(Role.ACCUSED, loner.id)

        assert [a.id for a in profile.appearances] == [loner.id]
        assert profile.stats.total_cases == 1
        assert profile.identity_keys == {"contact": None, "national_id": None}

    @pytest.mark.asyncio
    async def test_scenario_e_partial(self, case_store, sample_cases):
        """Contact lookups time out; the national ID lookup still links C1."""
        service = PersonProfileService(store=SlowContactStore(case_store), lookup_timeout=0.5)
        ravi_1 = sample_cases["ravi"][0]

        profile = await service.build_profile(Role.ACCUSED, ravi_1.id)

        assert not profile.complete
        assert not profile.stats.complete
        assert profile.stats.describe("total_cases") == "at least 1"
        assert {f.reason for f in profile.failures} == {"timeout"}
        assert profile.to_dict()["stats"]["lower_bound"] is True

    @pytest.mark.asyncio
    async def test_seed_not_found(self, service, sample_cases):
        with pytest.raises(SeedNotFoundError):
            await service.build_profile(Role.ACCUSED, 9999)

    @pytest.mark.asyncio
    async def test_name_and_guardian_policy(self, service, sample_cases):
        """Different names with the same contact are different people under this policy."""
        ravi_1 = sample_cases["ravi"][0]
        profile = await service.build_profile(
            Role.ACCUSED, ravi_1.id, policy=MatchPolicy.NAME_AND_GUARDIAN,
        )
        assert profile.stats.total_cases == 1
        assert profile.policy == MatchPolicy.NAME_AND_GUARDIAN

    @pytest.mark.asyncio
    async def test_to_dict_is_serializable(self, service, sample_cases):
        ravi_1 = sample_cases["ravi"][0]
        data = (await service.build_profile(Role.ACCUSED, ravi_1.id)).to_dict()
        assert data["policy"] == "contact_or_national_id"
        assert data["seed"]["role"] == "accused"
        assert data["complete"] is True


class TestRoster:
    """Other cases of every accused in one case."""

    @pytest.mark.asyncio
    async def test_roster_excludes_current_case(self, service, sample_cases):
        c1 = sample_cases["cases"][0]
        ravi_1, ravi_2 = sample_cases["ravi"]

        entries = await service.build_roster(c1.id)

        assert [e.accused.id for e in entries] == [ravi_1.id]
        history = entries[0].history
        assert [h.case_id for h in history.case_history] == [ravi_2.case_id]
        assert history.stats.custody_cases == 1
        assert entries[0].complete

    @pytest.mark.asyncio
    async def test_roster_without_other_cases(self, service, sample_cases):
        c3 = sample_cases["cases"][2]
        entries = await service.build_roster(c3.id)
        assert len(entries) == 1
        assert entries[0].history.stats.total_cases == 0
        assert not entries[0].history.is_repeat_offender

    @pytest.mark.asyncio
    async def test_empty_case(self, service, case_store):
        case = case_store.add_case("CR-EMPTY")
        assert await service.build_roster(case.id) == []


class TestSearch:
    """Search with per-hit case counts."""

    @pytest.mark.asyncio
    async def test_search_by_name(self, service, sample_cases):
        hits = await service.search("ravi")
        assert {h.appearance.id for h in hits} == {a.id for a in sample_cases["ravi"]}
        assert all(h.total_cases == 2 and h.is_repeat for h in hits)
        assert {h.case_number for h in hits} == {"CR-1/2024", "CR-2/2024"}

    @pytest.mark.asyncio
    async def test_search_sureties_by_contact(self, service, sample_cases):
        hits = await service.search("80000 00002", role=Role.SURETY)
        assert len(hits) == 3
        assert all(h.total_cases == 3 for h in hits)
        assert not any(h.is_repeat for h in hits)

    @pytest.mark.asyncio
    async def test_empty_and_unmatched(self, service, sample_cases):
        assert await service.search("   ") == []
        assert await service.search("nobody-by-this-name") == []


class TestSuretyByContact:
    """Bailer view."""

    @pytest.mark.asyncio
    async def test_profile(self, service, sample_cases):
        profile = await service.surety_profile_by_contact("+ 80000-00002")
        assert profile.count == 3
        assert profile.total_amount == 30000
        assert profile.name == "Mohan Lal"

    @pytest.mark.asyncio
    async def test_unknown_contact(self, service, sample_cases):
        assert await service.surety_profile_by_contact("7777777777") is None
        assert await service.surety_profile_by_contact("") is None


class TestRequiredReadTimeouts:
    """A timed-out read a view cannot do without surfaces as the store being unavailable."""

    @pytest.mark.asyncio
    async def test_seed_read(self, case_store, sample_cases):
        service = PersonProfileService(store=HangingStore(case_store, "get_appearance"), lookup_timeout=0.05)
        with pytest.raises(StoreUnavailableError):
            await service.build_profile(Role.ACCUSED, sample_cases["ravi"][0].id)

    @pytest.mark.asyncio
    async def test_roster_read(self, case_store, sample_cases):
        service = PersonProfileService(store=HangingStore(case_store, "list_case_appearances"), lookup_timeout=0.05)
        with pytest.raises(StoreUnavailableError):
            await service.build_roster(sample_cases["cases"][0].id)

    @pytest.mark.asyncio
    async def test_search_read(self, case_store, sample_cases):
        service = PersonProfileService(store=HangingStore(case_store, "search_appearances"), lookup_timeout=0.05)
        with pytest.raises(StoreUnavailableError):
            await service.search("ravi", role=Role.ACCUSED)

    @pytest.mark.asyncio
    async def test_bailer_read(self, case_store, sample_cases):
        service = PersonProfileService(
            store=HangingStore(case_store, "find_bail_grants_by_surety_contact"), lookup_timeout=0.05,
        )
        with pytest.raises(StoreUnavailableError):
            await service.surety_profile_by_contact("8000000002")


class TestBatchedRoster:
    """Roster hydration is one batch for the whole case."""

    @pytest.mark.asyncio
    async def test_one_hydration_for_all_accused(self, service, case_store, monkeypatch):
        joint = case_store.add_case("CR-JOINT", incident_date=date(2024, 9, 1))
        earlier = [case_store.add_case(f"CR-OLD-{i}", incident_date=date(2023, 1, i + 1)) for i in range(3)]
        for i, old in enumerate(earlier):
            contact = f"95000000{i:02d}"
            case_store.add_accused(joint.id, f"Person {i}", contact_number=contact)
            case_store.add_accused(old.id, f"Person {i}", contact_number=contact)

        hydrations = []
        original = case_store.get_case_summaries

        async def counting(case_ids):
            ids = set(case_ids)
            hydrations.append(ids)
            return await original(ids)

        monkeypatch.setattr(case_store, "get_case_summaries", counting)
        entries = await service.build_roster(joint.id)

        assert len(entries) == 3
        assert hydrations == [{c.id for c in earlier}]
        assert all(e.history.stats.total_cases == 1 for e in entries)


class TestDeterminism:
    """Same snapshot, same answer."""

    @pytest.mark.asyncio
    async def test_profile_is_idempotent(self, service, case_store):
        """Two cases on the same date are ordered by case id, every time."""
        first = case_store.add_case("CR-TIE-1", incident_date=date(2024, 4, 1))
        second = case_store.add_case("CR-TIE-2", incident_date=date(2024, 4, 1))
        seed = case_store.add_accused(
            second.id, "Kiran", contact_number="9400000001", custody_state=CustodyState.ARRESTED,
        )
        case_store.add_accused(
            first.id, "Kiran", contact_number="94000-00001", custody_state=CustodyState.BAILED,
        )

        one = await service.build_profile(Role.ACCUSED, seed.id)
        two = await service.build_profile(Role.ACCUSED, seed.id)

        assert one.to_dict() == two.to_dict()
        assert [e.case_id for e in one.case_history] == [first.id, second.id]


class TestExplicitThresholds:
    """An explicit threshold is honored even when it is zero."""

    @pytest.mark.asyncio
    async def test_zero_repeat_threshold(self, service, sample_cases):
        suresh = sample_cases["principals"][0]
        assert not (await service.build_profile(Role.ACCUSED, suresh.id)).is_repeat_offender

        profile = await service.build_profile(Role.ACCUSED, suresh.id, repeat_threshold=0)
        assert profile.is_repeat_offender

    def test_zero_service_defaults(self, case_store):
        service = PersonProfileService(store=case_store, repeat_threshold=0, surety_threshold=0)
        assert service.repeat_threshold == 0
        assert service.surety_threshold == 0
