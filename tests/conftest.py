"""
Pytest configuration and shared fixtures for CaseLink tests.

Test Categories:
- unit: Fast tests with no external dependencies (< 100ms each)
- slow: Tests that start the FastAPI app through TestClient

Run categories:
- pytest -m unit              # Fast unit tests only
- pytest -m "not slow"        # Skip app tests
- pytest                      # All tests
"""
from datetime import date

import pytest

from tests.reset_singletons import reset_lightweight_singletons


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Fast unit tests")
    config.addinivalue_line("markers", "slow: Slow tests (app startup)")


@pytest.fixture(autouse=True)
def reset_singletons_after_test():
    yield
    reset_lightweight_singletons()


@pytest.fixture(autouse=True)
def fast_store_retry(monkeypatch):
    """Keep store retries from sleeping in tests."""
    from api.services import resilience

    monkeypatch.setattr(resilience, "STORE_RETRY", resilience.RetryConfig(
        max_retries=1,
        base_delay=0.0,
        max_delay=0.0,
        retryable_exceptions=(resilience.StoreUnavailableError,),
    ))


@pytest.fixture(scope="function")
def test_data_path(tmp_path):
    """Temporary data directory for the SQLite case store."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture(scope="function")
def mock_settings(test_data_path, monkeypatch):
    """
    Mock settings for testing.

    Uses temporary paths to avoid affecting real data.
    """
    from config.settings import Settings

    mock = Settings(data_path=test_data_path)

    # Patch the global settings
    monkeypatch.setattr("config.settings.settings", mock)
    monkeypatch.setattr("api.services.case_store.settings", mock)
    return mock


@pytest.fixture
def case_store(test_data_path):
    """Fresh CaseStore on a temporary database."""
    from api.services.case_store import CaseStore

    return CaseStore(db_path=str(test_data_path / "cases.db"))


@pytest.fixture
def sample_cases(case_store):
    """
    Five cases linking two people.

    - Ravi (contact 9000000001): accused in C1 (bailed, 20000 via Geeta)
      and C2 (arrested, contact written differently)
    - Mohan (contact 8000000002): surety in C3, C4, C5 backing three
      different accused for 10000, 15000 and 5000
    """
    store = case_store
    c1 = store.add_case("CR-1/2024", incident_date=date(2024, 1, 10), status="open")
    c2 = store.add_case("CR-2/2024", incident_date=date(2024, 3, 5), status="in_court")
    c3 = store.add_case("CR-3/2024", incident_date=date(2024, 6, 20), status="closed")
    c4 = store.add_case("CR-4/2024", incident_date=date(2024, 8, 1), status="open")
    c5 = store.add_case("CR-5/2024", status="registered")

    ravi_1 = store.add_accused(
        c1.id, "Ravi Kumar", guardian_name="Shyam Kumar",
        contact_number="9000000001", national_id="1234 5678 9012",
        custody_state="bailed",
    )
    ravi_2 = store.add_accused(
        c2.id, "Ravi K", guardian_name="Shyam Kumar",
        contact_number="90000-00001", custody_state="arrested",
    )
    geeta = store.add_surety(
        c1.id, "Geeta", accused_id=ravi_1.id, contact_number="7000000003", relation="sister",
    )
    ravi_grant = store.add_bail_grant(
        ravi_1.id, amount=20000, grant_date=date(2024, 1, 15), surety_id=geeta.id,
    )

    principals = []
    mohan = []
    mohan_grants = []
    for case, accused_name, contact, amount in (
        (c3, "Suresh", "8000000002", 10000),
        (c4, "Vijay", "80000-00002", 15000),
        (c5, "Anil", "80000 00002", 5000),
    ):
        principal = store.add_accused(case.id, accused_name, custody_state="bailed")
        surety = store.add_surety(
            case.id, "Mohan Lal", accused_id=principal.id, contact_number=contact, relation="neighbour",
        )
        grant = store.add_bail_grant(principal.id, amount=amount, surety_id=surety.id)
        principals.append(principal)
        mohan.append(surety)
        mohan_grants.append(grant)

    return {
        "cases": (c1, c2, c3, c4, c5),
        "ravi": (ravi_1, ravi_2),
        "geeta": geeta,
        "ravi_grant": ravi_grant,
        "principals": principals,
        "mohan": mohan,
        "mohan_grants": mohan_grants,
    }
