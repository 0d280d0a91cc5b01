"""
Case, appearance and bail records for CaseLink.

An appearance is one person's role-tagged involvement in one case. Accused
and surety appearances are separate record shapes; code that needs either
takes a PersonAppearance and switches on `role`.
"""
from dataclasses import dataclass, asdict
from datetime import date
from enum import Enum
from typing import Optional, Union


class CaseStatus(str, Enum):
    REGISTERED = "registered"
    UNDER_INVESTIGATION = "under_investigation"
    CHARGESHEET_FILED = "chargesheet_filed"
    IN_COURT = "in_court"
    CLOSED = "closed"
    DISPOSED = "disposed"
    OPEN = "open"


class CustodyState(str, Enum):
    UNKNOWN = "unknown"
    KNOWN = "known"
    ARRESTED = "arrested"
    BAILED = "bailed"
    ABSCONDING = "absconding"

    @property
    def label(self) -> str:
        """Label used by the bail ledger (bail / custody / absconding)."""
        return {
            CustodyState.ARRESTED: "custody",
            CustodyState.BAILED: "bail",
        }.get(self, self.value)


class Role(str, Enum):
    ACCUSED = "accused"
    SURETY = "surety"


def _parse_date(value) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_enum(enum_cls, value, default):
    if not value:
        return default
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


@dataclass(frozen=True)
class AppearanceRef:
    """Unique address of one appearance: (case id, role, row id)."""
    case_id: int
    role: Role
    row_id: int


@dataclass(frozen=True)
class CaseSummary:
    """Case fields every identity view needs."""

    id: int
    case_number: str
    incident_date: Optional[date] = None
    incident_time: Optional[str] = None
    status: CaseStatus = CaseStatus.REGISTERED
    district_name: Optional[str] = None
    station_name: Optional[str] = None
    description: Optional[str] = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row) -> "CaseSummary":
        """Create from a sqlite3.Row over the cases table."""
        return cls(
            id=row["id"],
            case_number=row["case_number"],
            incident_date=_parse_date(row["incident_date"]),
            incident_time=row["incident_time"],
            status=_parse_enum(CaseStatus, row["status"], CaseStatus.REGISTERED),
            district_name=row["district_name"],
            station_name=row["station_name"],
            description=row["description"],
            is_active=bool(row["is_active"]),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["incident_date"] = self.incident_date.isoformat() if self.incident_date else None
        data["status"] = self.status.value
        return data


# A case as entered; the summary already carries every column we keep.
CaseRecord = CaseSummary


@dataclass(frozen=True)
class AccusedAppearance:
    """A person named as accused in one case."""

    id: int
    case_id: int
    name: str
    guardian_name: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    contact_number: Optional[str] = None
    national_id: Optional[str] = None
    address: Optional[str] = None
    custody_state: CustodyState = CustodyState.UNKNOWN

    @property
    def role(self) -> Role:
        return Role.ACCUSED

    @property
    def ref(self) -> AppearanceRef:
        return AppearanceRef(self.case_id, Role.ACCUSED, self.id)

    @classmethod
    def from_row(cls, row) -> "AccusedAppearance":
        return cls(
            id=row["id"],
            case_id=row["case_id"],
            name=row["name"] or "",
            guardian_name=row["guardian_name"],
            age=row["age"],
            gender=row["gender"],
            contact_number=row["contact_number"],
            national_id=row["national_id"],
            address=row["address"],
            custody_state=_parse_enum(CustodyState, row["custody_state"], CustodyState.UNKNOWN),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["role"] = self.role.value
        data["custody_state"] = self.custody_state.value
        return data


@dataclass(frozen=True)
class SuretyAppearance:
    """
    A person who stood surety (bailer) in one case.

    `accused_id` names the principal when the surety was recorded against a
    specific accused; None means an unlinked surety.
    """

    id: int
    case_id: int
    name: str
    guardian_name: Optional[str] = None
    age: Optional[int] = None
    gender: Optional[str] = None
    contact_number: Optional[str] = None
    national_id: Optional[str] = None
    address: Optional[str] = None
    accused_id: Optional[int] = None
    relation: Optional[str] = None

    @property
    def role(self) -> Role:
        return Role.SURETY

    @property
    def ref(self) -> AppearanceRef:
        return AppearanceRef(self.case_id, Role.SURETY, self.id)

    @classmethod
    def from_row(cls, row) -> "SuretyAppearance":
        return cls(
            id=row["id"],
            case_id=row["case_id"],
            name=row["name"] or "",
            guardian_name=row["guardian_name"],
            age=row["age"],
            gender=row["gender"],
            contact_number=row["contact_number"],
            national_id=row["national_id"],
            address=row["address"],
            accused_id=row["accused_id"],
            relation=row["relation"],
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["role"] = self.role.value
        return data


PersonAppearance = Union[AccusedAppearance, SuretyAppearance]


@dataclass(frozen=True)
class BailGrant:
    """Bail granted to an accused appearance, with the surety's contact fields."""

    id: int
    case_id: int
    accused_id: int
    amount: float = 0.0
    grant_date: Optional[date] = None
    order_number: Optional[str] = None
    court_name: Optional[str] = None
    surety_id: Optional[int] = None
    surety_name: Optional[str] = None
    surety_contact: Optional[str] = None
    surety_relation: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "BailGrant":
        return cls(
            id=row["id"],
            case_id=row["case_id"],
            accused_id=row["accused_id"],
            amount=row["amount"] or 0.0,
            grant_date=_parse_date(row["grant_date"]),
            order_number=row["order_number"],
            court_name=row["court_name"],
            surety_id=row["surety_id"],
            surety_name=row["surety_name"],
            surety_contact=row["surety_contact"],
            surety_relation=row["surety_relation"],
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["grant_date"] = self.grant_date.isoformat() if self.grant_date else None
        return data
