"""
Closed vocabularies shared by the task, progress and finance workflows.

Adding a category is a schema change: it needs a kind (which decides the
aggregation rule) and a label.
"""
from enum import Enum
from typing import Iterable, List, Optional

from .errors import ValidationError


class CategoryKind(str, Enum):
    sales = "sales"
    maintenance = "maintenance"
    finance = "finance"


class Category(str, Enum):
    SIM = "SIM"
    FTTH = "FTTH"
    LEASE_CIRCUIT = "LEASE_CIRCUIT"
    EB = "EB"
    BTS_DOWN = "BTS_DOWN"
    FTTH_DOWN = "FTTH_DOWN"
    ROUTE_FAIL = "ROUTE_FAIL"
    OFC_FAIL = "OFC_FAIL"
    FIN_LC = "FIN_LC"
    FIN_LL_FTTH = "FIN_LL_FTTH"
    FIN_TOWER = "FIN_TOWER"
    FIN_GSM_POSTPAID = "FIN_GSM_POSTPAID"
    FIN_RENT_BUILDING = "FIN_RENT_BUILDING"

    @property
    def kind(self) -> CategoryKind:
        return CATEGORY_KINDS[self]

    @property
    def label(self) -> str:
        return CATEGORY_LABELS[self]

    @property
    def is_finance(self) -> bool:
        return self.kind is CategoryKind.finance


CATEGORY_KINDS = {
    Category.SIM: CategoryKind.sales,
    Category.FTTH: CategoryKind.sales,
    Category.LEASE_CIRCUIT: CategoryKind.sales,
    Category.EB: CategoryKind.sales,
    Category.BTS_DOWN: CategoryKind.maintenance,
    Category.FTTH_DOWN: CategoryKind.maintenance,
    Category.ROUTE_FAIL: CategoryKind.maintenance,
    Category.OFC_FAIL: CategoryKind.maintenance,
    Category.FIN_LC: CategoryKind.finance,
    Category.FIN_LL_FTTH: CategoryKind.finance,
    Category.FIN_TOWER: CategoryKind.finance,
    Category.FIN_GSM_POSTPAID: CategoryKind.finance,
    Category.FIN_RENT_BUILDING: CategoryKind.finance,
}

CATEGORY_LABELS = {
    Category.SIM: "SIM",
    Category.FTTH: "FTTH",
    Category.LEASE_CIRCUIT: "Lease Circuit",
    Category.EB: "EB",
    Category.BTS_DOWN: "BTS-Down",
    Category.FTTH_DOWN: "FTTH-Down",
    Category.ROUTE_FAIL: "Route-Fail",
    Category.OFC_FAIL: "OFC-Fail",
    Category.FIN_LC: "Lease Circuit Collection",
    Category.FIN_LL_FTTH: "LL/FTTH Collection",
    Category.FIN_TOWER: "Tower Collection",
    Category.FIN_GSM_POSTPAID: "GSM PostPaid",
    Category.FIN_RENT_BUILDING: "Rent Of Building",
}

# Vocabulary order; used whenever "the first" category matters
CATEGORY_ORDER = {category: index for index, category in enumerate(Category)}


class PaymentMode(str, Enum):
    CASH = "CASH"
    CHEQUE = "CHEQUE"
    NEFT = "NEFT"
    UPI = "UPI"
    CARD = "CARD"
    DD = "DD"
    OTHER = "OTHER"


class Rank(str, Enum):
    ADMIN = "ADMIN"
    GM = "GM"
    CGM = "CGM"
    DGM = "DGM"
    AGM = "AGM"
    SD_JTO = "SD_JTO"
    SALES_STAFF = "SALES_STAFF"

    @property
    def level(self) -> int:
        return RANK_LEVELS[self]


RANK_LEVELS = {
    Rank.ADMIN: 7,
    Rank.GM: 6,
    Rank.CGM: 5,
    Rank.DGM: 4,
    Rank.AGM: 3,
    Rank.SD_JTO: 2,
    Rank.SALES_STAFF: 1,
}


class TaskStatus(str, Enum):
    draft = "draft"
    active = "active"
    paused = "paused"
    completed = "completed"
    cancelled = "cancelled"


TERMINAL_TASK_STATUSES = {TaskStatus.completed.value, TaskStatus.cancelled.value}


class SubmissionStatus(str, Enum):
    not_started = "not_started"
    in_progress = "in_progress"
    submitted = "submitted"
    rejected = "rejected"
    approved = "approved"


# Statuses from which a counter mutation is accepted (and moves to in_progress)
MUTABLE_SUBMISSION_STATUSES = (
    SubmissionStatus.not_started.value,
    SubmissionStatus.in_progress.value,
    SubmissionStatus.rejected.value,
)


class AssignmentRole(str, Enum):
    creator = "creator"
    manager = "manager"
    assigned = "assigned"
    team_member = "team_member"


class EntryStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


def parse_category(value: str) -> Category:
    try:
        return Category((value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown category '{value}'", field="category")


def parse_finance_type(value: str) -> Category:
    category = parse_category(value)
    if not category.is_finance:
        raise ValidationError(f"'{value}' is not a finance category", field="finance_type")
    return category


def parse_payment_mode(value: Optional[str]) -> PaymentMode:
    try:
        return PaymentMode((value or "").strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown payment mode '{value}'", field="payment_mode")


def parse_rank(value: Optional[str]) -> Optional[Rank]:
    if not value:
        return None
    try:
        return Rank(value.strip().upper())
    except ValueError:
        return None


def rank_at_least(role: Optional[str], minimum: str) -> bool:
    rank = parse_rank(role)
    floor = parse_rank(minimum)
    if rank is None or floor is None:
        return False
    return rank.level >= floor.level


def sort_categories(categories: Iterable[str]) -> List[str]:
    return sorted(categories, key=lambda c: CATEGORY_ORDER.get(Category(c), len(CATEGORY_ORDER)))
