"""
Category aggregation helpers.

Pure functions over task category rows and assignment progress rows. No
session access and no clock lookups: "today" is always passed in.
"""
from dataclasses import dataclass, asdict
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Union

from ..categories import Category, CategoryKind, CATEGORY_ORDER


Number = Union[int, Decimal]


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percentage(completed: Number, target: Number) -> int:
    """Whole percent of target reached; 0 when there is no target. Not capped at 100."""
    if not target or target <= 0:
        return 0
    return _round_half_up(Decimal(completed) * 100 / Decimal(target))


def effective_task_status(status: Optional[str], start_date: date, end_date: date, today: date) -> str:
    """Explicit lifecycle status wins; otherwise upcoming/active/past_due from the date range."""
    if status:
        return status
    if today < start_date:
        return "upcoming"
    if today > end_date:
        return "past_due"
    return "active"


@dataclass
class CategoryTotal:
    category: str
    label: str
    kind: str
    target: Number
    completed: Number
    percentage: int
    achieved: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _order(category: str) -> int:
    try:
        return CATEGORY_ORDER[Category(category)]
    except ValueError:
        return len(CATEGORY_ORDER)


def category_totals(task_categories: Iterable[Any], progress_rows: Iterable[Any]) -> List[CategoryTotal]:
    """
    Task-level totals per category.

    sales: declared task target vs the sum of assignee completions.
    maintenance: max(declared target, sum of assignee targets) vs the sum of completions.
    finance: declared target vs the approved collected amount.
    """
    completed_sum: Dict[str, int] = {}
    target_sum: Dict[str, int] = {}
    for row in progress_rows:
        completed_sum[row.category] = completed_sum.get(row.category, 0) + (row.completed or 0)
        target_sum[row.category] = target_sum.get(row.category, 0) + (row.target or 0)

    totals: List[CategoryTotal] = []
    for tc in sorted(task_categories, key=lambda c: _order(c.category)):
        category = Category(tc.category)
        declared = tc.target or 0
        if category.kind is CategoryKind.finance:
            target: Number = declared
            completed: Number = tc.collected if tc.collected is not None else Decimal("0")
        elif category.kind is CategoryKind.maintenance:
            target = max(declared, target_sum.get(tc.category, 0))
            completed = completed_sum.get(tc.category, 0)
        else:
            target = declared
            completed = completed_sum.get(tc.category, 0)
        totals.append(
            CategoryTotal(
                category=category.value,
                label=category.label,
                kind=category.kind.value,
                target=target,
                completed=completed,
                percentage=percentage(completed, target),
                achieved=target > 0 and completed >= target,
            )
        )
    return totals


def task_overall_percentage(totals: Iterable[CategoryTotal]) -> int:
    """Sum of completions over sum of targets, work categories only."""
    work = [t for t in totals if t.kind != CategoryKind.finance.value]
    return percentage(sum(t.completed for t in work), sum(t.target for t in work))


def assignment_percentage(progress_rows: Iterable[Any]) -> int:
    rows = list(progress_rows)
    return percentage(sum(r.completed or 0 for r in rows), sum(r.target or 0 for r in rows))


def all_targets_achieved(progress_rows: Iterable[Any]) -> bool:
    """Every assigned category at or above target, and at least one positive target."""
    rows = list(progress_rows)
    if not any((r.target or 0) > 0 for r in rows):
        return False
    return all((r.completed or 0) >= (r.target or 0) for r in rows)


def first_deficient_category(progress_rows: Iterable[Any]) -> Optional[str]:
    for row in sorted(progress_rows, key=lambda r: _order(r.category)):
        if (row.completed or 0) < (row.target or 0):
            return row.category
    return None
