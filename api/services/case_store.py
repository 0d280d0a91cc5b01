"""
Case Store for CaseLink.

SQLite-backed storage for cases, accused and surety appearances, and bail
grants. Normalized match-key columns are written alongside the raw contact
fields so identity lookups are exact indexed equality checks.

Reads used by the resolution engine are async: each runs on a worker thread
with its own connection, so independent lookups can be issued concurrently.
Writes are synchronous and only exist to load case data and test fixtures.
"""
import asyncio
import logging
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Iterable, Optional

from api.services.case_models import (
    AccusedAppearance,
    BailGrant,
    CaseStatus,
    CaseSummary,
    CustodyState,
    PersonAppearance,
    Role,
    SuretyAppearance,
)
from api.services.match_keys import (
    name_guardian_value,
    normalize_contact,
    normalize_name,
    normalize_national_id,
)
from api.services.resilience import StoreUnavailableError
from config.matching_config import KeyType
from config.settings import settings

logger = logging.getLogger(__name__)

# sqlite errors that mean "cannot reach the database", not "bad query"
_UNAVAILABLE_MARKERS = ("unable to open", "locked", "busy", "disk i/o")

_KEY_COLUMNS = {
    KeyType.CONTACT: "contact_key",
    KeyType.NATIONAL_ID: "national_id_key",
    KeyType.NAME_GUARDIAN: "name_guardian_key",
    KeyType.NAME: "name_key",
}

_TABLES = {
    Role.ACCUSED: "accused",
    Role.SURETY: "sureties",
}

_PERSON_COLUMNS = """
    name TEXT NOT NULL,
    guardian_name TEXT,
    age INTEGER,
    gender TEXT,
    contact_number TEXT,
    national_id TEXT,
    address TEXT,
    contact_key TEXT,
    national_id_key TEXT,
    name_key TEXT,
    name_guardian_key TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
"""


def get_case_db_path() -> str:
    """Get the path to the case records database."""
    db_dir = Path(settings.data_path)
    db_dir.mkdir(parents=True, exist_ok=True)
    return str(settings.db_path)


def _iso(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def _appearance_from_row(role: Role, row) -> PersonAppearance:
    if role == Role.ACCUSED:
        return AccusedAppearance.from_row(row)
    return SuretyAppearance.from_row(row)


def _placeholders(values) -> str:
    return ",".join("?" * len(values))


def _like_pattern(text: str) -> str:
    """Substring LIKE pattern with the wildcards in text matched literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class CaseStore:
    """
    SQLite-backed case records.

    Exposes the read interface the identity engine consumes:
    find_by_key, get_case_summaries and get_bail_grants, plus the
    roster/search/report reads of the calling views.
    """

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize case store.

        Args:
            db_path: Path to SQLite database (default from settings)
        """
        self.db_path = db_path or get_case_db_path()
        self._init_db()

    def _init_db(self):
        """Create database tables if they don't exist."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cases (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    case_number TEXT NOT NULL,
                    incident_date TEXT,
                    incident_time TEXT,
                    status TEXT NOT NULL DEFAULT 'registered',
                    district_name TEXT,
                    station_name TEXT,
                    description TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS accused (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    case_id INTEGER NOT NULL REFERENCES cases(id),
                    custody_state TEXT NOT NULL DEFAULT 'unknown',
                    {_PERSON_COLUMNS}
                )
            """
            )
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS sureties (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    case_id INTEGER NOT NULL REFERENCES cases(id),
                    accused_id INTEGER REFERENCES accused(id),
                    relation TEXT,
                    {_PERSON_COLUMNS}
                )
            """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS bail_grants (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    case_id INTEGER NOT NULL REFERENCES cases(id),
                    accused_id INTEGER NOT NULL REFERENCES accused(id),
                    amount REAL NOT NULL DEFAULT 0,
                    grant_date TEXT,
                    order_number TEXT,
                    court_name TEXT,
                    surety_id INTEGER REFERENCES sureties(id),
                    surety_name TEXT,
                    surety_contact TEXT,
                    surety_contact_key TEXT,
                    surety_relation TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

            # Exact-match key lookups
            for table in _TABLES.values():
                for column in _KEY_COLUMNS.values():
                    conn.execute(
                        f"CREATE INDEX IF NOT EXISTS idx_{table}_{column} ON {table}({column})"
                    )
                conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_case ON {table}(case_id)"
                )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bail_grants_accused ON bail_grants(accused_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bail_grants_surety_contact ON bail_grants(surety_contact_key)"
            )

            conn.commit()
            logger.info(f"Initialized case database at {self.db_path}")
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with name-addressable rows."""
        try:
            conn = sqlite3.connect(self.db_path, timeout=2.0)
        except sqlite3.OperationalError as e:
            raise StoreUnavailableError("case_store", str(e)) from e
        conn.row_factory = sqlite3.Row
        return conn

    async def _read(self, func, *args):
        """Run a blocking read on a worker thread, mapping unreachable-db errors."""
        try:
            return await asyncio.to_thread(func, *args)
        except sqlite3.OperationalError as e:
            if any(marker in str(e).lower() for marker in _UNAVAILABLE_MARKERS):
                raise StoreUnavailableError("case_store", str(e)) from e
            raise

    # ------------------------------------------------------------------
    # Writes (case entry and fixtures)
    # ------------------------------------------------------------------

    def add_case(
        self,
        case_number: str,
        incident_date: Optional[date] = None,
        status: CaseStatus = CaseStatus.REGISTERED,
        incident_time: Optional[str] = None,
        district_name: Optional[str] = None,
        station_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CaseSummary:
        """Add a case record and return its summary."""
        status = CaseStatus(status)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO cases
                (case_number, incident_date, incident_time, status, district_name, station_name, description)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    case_number,
                    _iso(incident_date),
                    incident_time,
                    status.value,
                    district_name,
                    station_name,
                    description,
                ),
            )
            conn.commit()
            case_id = cursor.lastrowid
        finally:
            conn.close()

        return CaseSummary(
            id=case_id,
            case_number=case_number,
            incident_date=incident_date,
            incident_time=incident_time,
            status=status,
            district_name=district_name,
            station_name=station_name,
            description=description,
        )

    def deactivate_case(self, case_id: int) -> bool:
        """Deactivate a case. Cases are never deleted."""
        conn = self._get_connection()
        try:
            cursor = conn.execute("UPDATE cases SET is_active = 0 WHERE id = ?", (case_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def _require_case(self, conn: sqlite3.Connection, case_id: int) -> None:
        row = conn.execute("SELECT id FROM cases WHERE id = ?", (case_id,)).fetchone()
        if row is None:
            raise ValueError(f"Case {case_id} does not exist")

    def _person_values(self, name, guardian_name, age, gender, contact_number, national_id, address) -> tuple:
        return (
            name,
            guardian_name,
            age,
            gender,
            contact_number,
            national_id,
            address,
            normalize_contact(contact_number),
            normalize_national_id(national_id),
            normalize_name(name),
            name_guardian_value(name, guardian_name),
        )

    def add_accused(
        self,
        case_id: int,
        name: str,
        guardian_name: Optional[str] = None,
        age: Optional[int] = None,
        gender: Optional[str] = None,
        contact_number: Optional[str] = None,
        national_id: Optional[str] = None,
        address: Optional[str] = None,
        custody_state: CustodyState = CustodyState.UNKNOWN,
    ) -> AccusedAppearance:
        """Add an accused appearance to an existing case."""
        custody_state = CustodyState(custody_state)
        conn = self._get_connection()
        try:
            self._require_case(conn, case_id)
            cursor = conn.execute(
                """
                INSERT INTO accused
                (case_id, custody_state, name, guardian_name, age, gender, contact_number, national_id,
                 address, contact_key, national_id_key, name_key, name_guardian_key)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (case_id, custody_state.value) + self._person_values(
                    name, guardian_name, age, gender, contact_number, national_id, address
                ),
            )
            conn.commit()
            row_id = cursor.lastrowid
        finally:
            conn.close()

        return AccusedAppearance(
            id=row_id,
            case_id=case_id,
            name=name,
            guardian_name=guardian_name,
            age=age,
            gender=gender,
            contact_number=contact_number,
            national_id=national_id,
            address=address,
            custody_state=custody_state,
        )

    def add_surety(
        self,
        case_id: int,
        name: str,
        guardian_name: Optional[str] = None,
        age: Optional[int] = None,
        gender: Optional[str] = None,
        contact_number: Optional[str] = None,
        national_id: Optional[str] = None,
        address: Optional[str] = None,
        accused_id: Optional[int] = None,
        relation: Optional[str] = None,
    ) -> SuretyAppearance:
        """
        Add a surety appearance.

        Raises:
            ValueError: if the case is missing or the principal belongs to another case
        """
        conn = self._get_connection()
        try:
            self._require_case(conn, case_id)
            if accused_id is not None:
                row = conn.execute(
                    "SELECT case_id FROM accused WHERE id = ?", (accused_id,)
                ).fetchone()
                if row is None or row["case_id"] != case_id:
                    raise ValueError(
                        f"Principal {accused_id} is not an accused appearance in case {case_id}"
                    )
            cursor = conn.execute(
                """
                INSERT INTO sureties
                (case_id, accused_id, relation, name, guardian_name, age, gender, contact_number, national_id,
                 address, contact_key, national_id_key, name_key, name_guardian_key)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (case_id, accused_id, relation) + self._person_values(
                    name, guardian_name, age, gender, contact_number, national_id, address
                ),
            )
            conn.commit()
            row_id = cursor.lastrowid
        finally:
            conn.close()

        return SuretyAppearance(
            id=row_id,
            case_id=case_id,
            name=name,
            guardian_name=guardian_name,
            age=age,
            gender=gender,
            contact_number=contact_number,
            national_id=national_id,
            address=address,
            accused_id=accused_id,
            relation=relation,
        )

    def add_bail_grant(
        self,
        accused_id: int,
        amount: float,
        grant_date: Optional[date] = None,
        order_number: Optional[str] = None,
        court_name: Optional[str] = None,
        surety_id: Optional[int] = None,
        surety_name: Optional[str] = None,
        surety_contact: Optional[str] = None,
        surety_relation: Optional[str] = None,
    ) -> BailGrant:
        """
        Record bail for an accused appearance.

        When surety_id is given the surety must belong to the same case;
        blank surety fields are copied from that appearance.
        """
        conn = self._get_connection()
        try:
            accused_row = conn.execute(
                "SELECT case_id FROM accused WHERE id = ?", (accused_id,)
            ).fetchone()
            if accused_row is None:
                raise ValueError(f"Accused appearance {accused_id} does not exist")
            case_id = accused_row["case_id"]

            if surety_id is not None:
                surety_row = conn.execute(
                    "SELECT case_id, name, contact_number, relation FROM sureties WHERE id = ?",
                    (surety_id,),
                ).fetchone()
                if surety_row is None or surety_row["case_id"] != case_id:
                    raise ValueError(f"Surety {surety_id} is not part of case {case_id}")
                surety_name = surety_name or surety_row["name"]
                surety_contact = surety_contact or surety_row["contact_number"]
                surety_relation = surety_relation or surety_row["relation"]

            cursor = conn.execute(
                """
                INSERT INTO bail_grants
                (case_id, accused_id, amount, grant_date, order_number, court_name, surety_id,
                 surety_name, surety_contact, surety_contact_key, surety_relation)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    case_id,
                    accused_id,
                    amount or 0.0,
                    _iso(grant_date),
                    order_number,
                    court_name,
                    surety_id,
                    surety_name,
                    surety_contact,
                    normalize_contact(surety_contact),
                    surety_relation,
                ),
            )
            conn.commit()
            grant_id = cursor.lastrowid
        finally:
            conn.close()

        return BailGrant(
            id=grant_id,
            case_id=case_id,
            accused_id=accused_id,
            amount=amount or 0.0,
            grant_date=grant_date,
            order_number=order_number,
            court_name=court_name,
            surety_id=surety_id,
            surety_name=surety_name,
            surety_contact=surety_contact,
            surety_relation=surety_relation,
        )

    # ------------------------------------------------------------------
    # Reads consumed by the identity engine
    # ------------------------------------------------------------------

    def _find_by_key_sync(
        self, role: Role, key_type: KeyType, value: str, exclude_case_id: Optional[int]
    ) -> list[PersonAppearance]:
        table = _TABLES[Role(role)]
        column = _KEY_COLUMNS[KeyType(key_type)]
        query = f"SELECT * FROM {table} WHERE {column} = ?"
        params: list = [value]
        if exclude_case_id is not None:
            query += " AND case_id != ?"
            params.append(exclude_case_id)
        query += " ORDER BY case_id, id"

        conn = self._get_connection()
        try:
            rows = conn.execute(query, params).fetchall()
            return [_appearance_from_row(Role(role), row) for row in rows]
        finally:
            conn.close()

    async def find_by_key(
        self,
        role: Role,
        key_type: KeyType,
        value: str,
        exclude_case_id: Optional[int] = None,
    ) -> list[PersonAppearance]:
        """
        Find appearances in one role whose normalized key equals value.

        Args:
            role: accused or surety table
            key_type: which normalized key column to match
            value: already-normalized key value
            exclude_case_id: drop appearances in this case

        Returns:
            Matching appearances ordered by (case_id, id)
        """
        if not value:
            return []
        return await self._read(self._find_by_key_sync, role, key_type, value, exclude_case_id)

    def _get_case_summaries_sync(self, case_ids: list[int]) -> dict[int, CaseSummary]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM cases WHERE is_active = 1 AND id IN ({_placeholders(case_ids)})",
                case_ids,
            ).fetchall()
            return {row["id"]: CaseSummary.from_row(row) for row in rows}
        finally:
            conn.close()

    async def get_case_summaries(self, case_ids: Iterable[int]) -> dict[int, CaseSummary]:
        """
        Fetch summaries for a set of case ids in one query.

        Unknown and deactivated ids are omitted from the result.
        """
        ids = sorted(set(case_ids))
        if not ids:
            return {}
        return await self._read(self._get_case_summaries_sync, ids)

    def _get_bail_grants_sync(
        self, case_id: Optional[int], accused_ids: Optional[list[int]]
    ) -> list[BailGrant]:
        clauses = []
        params: list = []
        if case_id is not None:
            clauses.append("case_id = ?")
            params.append(case_id)
        if accused_ids is not None:
            clauses.append(f"accused_id IN ({_placeholders(accused_ids)})")
            params.extend(accused_ids)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM bail_grants {where} ORDER BY grant_date DESC, id", params
            ).fetchall()
            return [BailGrant.from_row(row) for row in rows]
        finally:
            conn.close()

    async def get_bail_grants(
        self,
        case_id: Optional[int] = None,
        accused_ids: Optional[Iterable[int]] = None,
    ) -> list[BailGrant]:
        """
        Get bail grants for a case and/or a batch of accused appearances.

        Passing neither returns every grant (used by reports).
        """
        ids = sorted(set(accused_ids)) if accused_ids is not None else None
        if ids is not None and not ids:
            return []
        return await self._read(self._get_bail_grants_sync, case_id, ids)

    # ------------------------------------------------------------------
    # Reads for the calling views
    # ------------------------------------------------------------------

    def _get_appearance_sync(self, role: Role, appearance_id: int) -> Optional[PersonAppearance]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                f"SELECT * FROM {_TABLES[role]} WHERE id = ?", (appearance_id,)
            ).fetchone()
            return _appearance_from_row(role, row) if row else None
        finally:
            conn.close()

    async def get_appearance(self, role: Role, appearance_id: int) -> Optional[PersonAppearance]:
        """Get one appearance by role and row id."""
        return await self._read(self._get_appearance_sync, Role(role), appearance_id)

    def _get_appearances_sync(self, role: Role, ids: list[int]) -> list[PersonAppearance]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM {_TABLES[role]} WHERE id IN ({_placeholders(ids)}) ORDER BY id",
                ids,
            ).fetchall()
            return [_appearance_from_row(role, row) for row in rows]
        finally:
            conn.close()

    async def get_appearances(self, role: Role, ids: Iterable[int]) -> list[PersonAppearance]:
        """Batch-fetch appearances of one role by id."""
        ids = sorted(set(ids))
        if not ids:
            return []
        return await self._read(self._get_appearances_sync, Role(role), ids)

    def _list_for_case_sync(self, role: Role, case_id: int) -> list[PersonAppearance]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM {_TABLES[role]} WHERE case_id = ? ORDER BY id", (case_id,)
            ).fetchall()
            return [_appearance_from_row(role, row) for row in rows]
        finally:
            conn.close()

    async def list_case_appearances(self, case_id: int, role: Role) -> list[PersonAppearance]:
        """All appearances of one role in a case."""
        return await self._read(self._list_for_case_sync, Role(role), case_id)

    def _sureties_for_principals_sync(self, accused_ids: list[int]) -> list[SuretyAppearance]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM sureties WHERE accused_id IN ({_placeholders(accused_ids)}) ORDER BY id",
                accused_ids,
            ).fetchall()
            return [SuretyAppearance.from_row(row) for row in rows]
        finally:
            conn.close()

    async def get_sureties_for_principals(self, accused_ids: Iterable[int]) -> list[SuretyAppearance]:
        """Surety appearances recorded against any of the given accused ids."""
        ids = sorted(set(accused_ids))
        if not ids:
            return []
        return await self._read(self._sureties_for_principals_sync, ids)

    def _grants_by_surety_contact_sync(self, contact_key: str) -> list[BailGrant]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                """
                SELECT * FROM bail_grants
                WHERE surety_contact_key = ?
                   OR surety_id IN (SELECT id FROM sureties WHERE contact_key = ?)
                ORDER BY grant_date DESC, id
            """,
                (contact_key, contact_key),
            ).fetchall()
            return [BailGrant.from_row(row) for row in rows]
        finally:
            conn.close()

    async def find_bail_grants_by_surety_contact(self, contact: str) -> list[BailGrant]:
        """Bail grants whose surety had this contact number."""
        contact_key = normalize_contact(contact)
        if not contact_key:
            return []
        return await self._read(self._grants_by_surety_contact_sync, contact_key)

    def _search_sync(self, role: Role, query: str, limit: int) -> list[PersonAppearance]:
        digits = normalize_contact(query)
        clauses = ["name LIKE ? ESCAPE '\\'", "national_id_key LIKE ? ESCAPE '\\'"]
        params: list = [_like_pattern(query), _like_pattern(normalize_national_id(query) or query)]
        if digits:
            clauses.append("contact_key LIKE ?")
            params.append(f"%{digits}%")
        params.append(limit)

        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"""
                SELECT * FROM {_TABLES[role]}
                WHERE {' OR '.join(clauses)}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
            """,
                params,
            ).fetchall()
            return [_appearance_from_row(role, row) for row in rows]
        finally:
            conn.close()

    async def search_appearances(self, query: str, role: Role, limit: int = 100) -> list[PersonAppearance]:
        """Substring search over name, contact number and national ID."""
        query = (query or "").strip()
        if not query:
            return []
        return await self._read(self._search_sync, Role(role), query, limit)

    def _list_all_sync(self, role: Role, limit: Optional[int]) -> list[PersonAppearance]:
        query = f"SELECT * FROM {_TABLES[role]} ORDER BY id"
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        conn = self._get_connection()
        try:
            return [_appearance_from_row(role, row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    async def list_appearances(self, role: Role, limit: Optional[int] = None) -> list[PersonAppearance]:
        """Every appearance of one role (reports)."""
        return await self._read(self._list_all_sync, Role(role), limit)

    def _custody_counts_sync(self) -> dict[str, int]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT custody_state, COUNT(*) AS cnt FROM accused GROUP BY custody_state"
            ).fetchall()
            return {row["custody_state"]: row["cnt"] for row in rows}
        finally:
            conn.close()

    async def count_by_custody_state(self) -> dict[str, int]:
        """Accused appearance counts per custody state."""
        return await self._read(self._custody_counts_sync)


# Singleton instance
_case_store: Optional[CaseStore] = None


def get_case_store(db_path: Optional[str] = None) -> CaseStore:
    """
    Get or create the singleton CaseStore.

    Args:
        db_path: Path to SQLite database

    Returns:
        CaseStore instance
    """
    global _case_store
    if _case_store is None:
        _case_store = CaseStore(db_path)
    return _case_store
