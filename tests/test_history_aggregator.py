"""
Tests for history aggregation.
"""
from datetime import date

import pytest

from api.services.case_models import (
    AccusedAppearance,
    BailGrant,
    CaseStatus,
    CaseSummary,
    CustodyState,
    Role,
    SuretyAppearance,
)
from api.services.history_aggregator import HistoryStats, aggregate, bailed_grant_total

pytestmark = pytest.mark.unit


@pytest.fixture
def cases():
    return {
        1: CaseSummary(id=1, case_number="CR-1", incident_date=date(2024, 1, 10), status=CaseStatus.OPEN),
        2: CaseSummary(id=2, case_number="CR-2", incident_date=date(2024, 3, 5), status=CaseStatus.IN_COURT),
        3: CaseSummary(id=3, case_number="CR-3", status=CaseStatus.CLOSED),
    }


class TestScenarioA:
    """Accused bailed in one case and in custody in another."""

    def test_stats(self, cases):
        appearances = [
            AccusedAppearance(id=2, case_id=2, name="Ravi", custody_state=CustodyState.ARRESTED),
            AccusedAppearance(id=1, case_id=1, name="Ravi", custody_state=CustodyState.BAILED),
        ]
        grants = [BailGrant(id=1, case_id=1, accused_id=1, amount=20000)]

        result = aggregate(appearances, cases, grants)

        assert result.stats.total_cases == 2
        assert result.stats.bail_cases == 1
        assert result.stats.custody_cases == 1
        assert result.stats.total_bail_amount == 20000
        assert result.is_repeat_offender

        c2 = next(e for e in result.case_history if e.case_id == 2)
        assert c2.roles == (Role.ACCUSED,)
        assert c2.status_label == "custody"
        assert c2.case_number == "CR-2"

    def test_history_keeps_input_order(self, cases):
        appearances = [
            AccusedAppearance(id=2, case_id=2, name="Ravi"),
            AccusedAppearance(id=1, case_id=1, name="Ravi"),
        ]
        result = aggregate(appearances, cases)
        assert [e.case_id for e in result.case_history] == [2, 1]


class TestCounting:
    """Distinct-case counting and role isolation."""

    def test_accused_and_surety_in_same_case_counts_once(self, cases):
        appearances = [
            AccusedAppearance(id=1, case_id=1, name="Ravi", custody_state=CustodyState.BAILED),
            SuretyAppearance(id=5, case_id=1, name="Ravi", accused_id=9),
        ]
        result = aggregate(appearances, cases)
        assert result.stats.total_cases == 1
        assert result.case_history[0].roles == (Role.ACCUSED, Role.SURETY)
        assert not result.is_repeat_offender

    def test_surety_only_contributes_no_custody_stats(self, cases):
        appearances = [
            SuretyAppearance(id=5, case_id=1, name="Mohan", accused_id=9),
            SuretyAppearance(id=6, case_id=3, name="Mohan", accused_id=10),
        ]
        grants = [BailGrant(id=1, case_id=1, accused_id=9, amount=5000)]
        result = aggregate(appearances, cases, grants)
        assert result.stats.total_cases == 2
        assert result.stats.bail_cases == 0
        assert result.stats.total_bail_amount == 0
        assert not result.is_repeat_offender
        assert result.case_history[1].status_label == "closed"

    def test_absconding(self, cases):
        appearances = [AccusedAppearance(id=1, case_id=1, name="X", custody_state=CustodyState.ABSCONDING)]
        result = aggregate(appearances, cases)
        assert result.stats.absconding_cases == 1
        assert result.case_history[0].status_label == "absconding"

    def test_only_bailed_grants_count(self):
        accused = [
            AccusedAppearance(id=1, case_id=1, name="X", custody_state=CustodyState.BAILED),
            AccusedAppearance(id=2, case_id=2, name="X", custody_state=CustodyState.ARRESTED),
        ]
        grants = [
            BailGrant(id=1, case_id=1, accused_id=1, amount=1000),
            BailGrant(id=2, case_id=1, accused_id=1, amount=500),
            BailGrant(id=3, case_id=2, accused_id=2, amount=9999),
        ]
        assert bailed_grant_total(accused, grants) == {1: 1500.0}

    def test_threshold_is_callers_choice(self, cases):
        appearances = [
            AccusedAppearance(id=1, case_id=1, name="X"),
            AccusedAppearance(id=2, case_id=2, name="X"),
        ]
        assert not aggregate(appearances, cases, repeat_threshold=3).is_repeat_offender

    def test_empty(self):
        result = aggregate([], {})
        assert result.stats.total_cases == 0
        assert result.case_history == []


class TestMissingDetails:
    """Cases without metadata and incomplete identities."""

    def test_missing_case_metadata(self):
        appearances = [AccusedAppearance(id=1, case_id=42, name="X")]
        result = aggregate(appearances, {})
        entry = result.case_history[0]
        assert not entry.details_available
        assert entry.to_dict()["details"] == "details unavailable"
        assert result.stats.total_cases == 1

    def test_incomplete_stats_are_lower_bounds(self, cases):
        appearances = [AccusedAppearance(id=1, case_id=1, name="X")]
        stats = aggregate(appearances, cases, complete=False).stats
        assert stats.describe("total_cases") == "at least 1"
        assert stats.to_dict()["lower_bound"] is True

    def test_complete_stats_describe_plainly(self):
        stats = HistoryStats(total_cases=2, total_bail_amount=20000.0)
        assert stats.describe("total_cases") == "2"
        assert stats.describe("total_bail_amount") == "20000"
