from __future__ import annotations

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import NotFoundError, ValidationError
from ..models.models import EmployeeAccount, EmployeeMasterRecord
from .hierarchy_store import HierarchyStore


logger = structlog.get_logger(__name__)


@dataclass
class HierarchyNode:
    """A master record joined with its linked account and report count. Rebuilt per query."""
    pers_no: str
    name: str
    designation: Optional[str] = None
    circle: Optional[str] = None
    zone: Optional[str] = None
    division: Optional[str] = None
    office_name: Optional[str] = None
    sort_order: Optional[int] = None
    reporting_pers_no: Optional[str] = None
    account: Optional[Dict[str, Any]] = None
    direct_reports_count: int = 0
    children: List["HierarchyNode"] = field(default_factory=list)

    @property
    def is_linked(self) -> bool:
        return self.account is not None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def account_summary(account: Optional[EmployeeAccount]) -> Optional[Dict[str, Any]]:
    if account is None:
        return None
    return {
        "id": str(account.id),
        "name": account.name,
        "role": account.role,
        "circle": account.circle,
        "designation": account.designation,
    }


def _sort_key(record: EmployeeMasterRecord):
    return (record.sort_order is None, record.sort_order or 0, (record.name or "").lower(), record.pers_no)


class HierarchyResolver:
    """
    Ancestor chains, subordinate trees and subtree search over the master table.

    The table is a parent-pointer list imported from an external roster, so
    links may dangle, point at themselves or loop. Every walk keeps a visited
    set and a hard bound; a malformed link ends the walk and never raises.
    """

    def __init__(self, db: Session, store: Optional[HierarchyStore] = None):
        self.db = db
        self.store = store or HierarchyStore(db)

    # ---- building blocks ----

    def _walk_up(self, pers_no: str, max_depth: int) -> List[EmployeeMasterRecord]:
        current = self.store.get(pers_no)
        if current is None:
            return []
        visited: Set[str] = {current.pers_no}
        chain: List[EmployeeMasterRecord] = []
        while len(chain) < max_depth:
            parent_no = current.reporting_pers_no
            if not parent_no:
                break
            if parent_no in visited:
                logger.warning("hierarchy_cycle_detected", pers_no=pers_no, repeated=parent_no, depth=len(chain))
                break
            parent = self.store.get(parent_no)
            if parent is None:
                break
            visited.add(parent_no)
            chain.append(parent)
            current = parent
        return chain

    def _nodes(self, records: Iterable[EmployeeMasterRecord]) -> List[HierarchyNode]:
        records = list(records)
        counts = self.store.count_direct_reports(r.pers_no for r in records)
        accounts = self.store.accounts_by_id(r.linked_account_id for r in records)
        return [
            HierarchyNode(
                pers_no=r.pers_no,
                name=r.name,
                designation=r.designation,
                circle=r.circle,
                zone=r.zone,
                division=r.division,
                office_name=r.office_name,
                sort_order=r.sort_order,
                reporting_pers_no=r.reporting_pers_no,
                account=account_summary(accounts.get(r.linked_account_id)),
                direct_reports_count=counts.get(r.pers_no, 0),
            )
            for r in records
        ]

    # ---- queries ----

    def resolve_ancestors(self, pers_no: str, max_depth: Optional[int] = None) -> List[HierarchyNode]:
        """Managers from the immediate one outward. Unknown pers_no gives []."""
        if max_depth is None:
            max_depth = settings.hierarchy_max_depth
        return self._nodes(self._walk_up(pers_no, max_depth))

    def ancestor_pers_nos(self, pers_no: str, max_depth: Optional[int] = None) -> Set[str]:
        # Visited set bounds the walk, so the default cap is the node cap
        if max_depth is None:
            max_depth = settings.hierarchy_max_nodes
        return {r.pers_no for r in self._walk_up(pers_no, max_depth)}

    def resolve_subordinates(self, pers_no: str, max_depth: Optional[int] = None) -> List[HierarchyNode]:
        """
        Reports of ``pers_no`` as a tree, expanded ``max_depth`` levels.

        Every node carries ``direct_reports_count``, including the leaves of
        the last expanded level, so a client can expand further lazily.
        """
        if max_depth is None:
            max_depth = settings.hierarchy_expand_depth
        root = self.store.get(pers_no)
        if root is None or max_depth < 1:
            return []

        visited: Set[str] = {root.pers_no}
        levels: List[List[EmployeeMasterRecord]] = []
        frontier = [root.pers_no]
        for _ in range(max_depth):
            level = []
            for record in self.store.direct_reports_of_many(frontier):
                if record.pers_no in visited:
                    continue
                if len(visited) >= settings.hierarchy_max_nodes:
                    logger.warning("hierarchy_node_cap_reached", pers_no=pers_no, cap=settings.hierarchy_max_nodes)
                    break
                visited.add(record.pers_no)
                level.append(record)
            if not level:
                break
            levels.append(sorted(level, key=_sort_key))
            frontier = [r.pers_no for r in level]

        by_pers_no: Dict[str, HierarchyNode] = {}
        roots: List[HierarchyNode] = []
        for depth, level in enumerate(levels):
            for node in self._nodes(level):
                by_pers_no[node.pers_no] = node
                if depth == 0:
                    roots.append(node)
                else:
                    by_pers_no[node.reporting_pers_no].children.append(node)
        return roots

    def search(self, root_pers_no: str, query: str) -> List[HierarchyNode]:
        """
        Case-insensitive substring match on name or pers_no, confined to the
        root's own subordinates (root excluded). Never walks upward or sideways.
        """
        needle = (query or "").strip().lower()
        if not needle:
            raise ValidationError("Search query must not be empty", field="q")
        root = self.store.get(root_pers_no)
        if root is None:
            return []

        visited: Set[str] = {root.pers_no}
        matches: List[EmployeeMasterRecord] = []
        frontier = [root.pers_no]
        while frontier and len(visited) < settings.hierarchy_max_nodes:
            next_frontier = []
            for record in self.store.direct_reports_of_many(frontier):
                if record.pers_no in visited:
                    continue
                visited.add(record.pers_no)
                next_frontier.append(record.pers_no)
                if needle in (record.name or "").lower() or needle in record.pers_no.lower():
                    matches.append(record)
            frontier = next_frontier

        matches.sort(key=_sort_key)
        return self._nodes(matches[: settings.search_limit])

    # ---- request/response operations ----

    def get_my_hierarchy(self, employee_id: Any) -> Dict[str, Any]:
        account = self.store.get_account(employee_id)
        if account is None:
            raise NotFoundError("Employee account not found")
        record = self.store.record_for_account(account)
        if record is None:
            return {"is_linked": False, "master_data": None, "manager": None, "subordinates": []}
        managers = self.resolve_ancestors(record.pers_no, max_depth=1)
        return {
            "is_linked": True,
            "master_data": self._nodes([record])[0].to_dict(),
            "manager": managers[0].to_dict() if managers else None,
            "subordinates": [n.to_dict() for n in self.resolve_subordinates(record.pers_no, max_depth=1)],
        }

    def get_full_hierarchy(self, pers_no: str) -> Dict[str, Any]:
        record = self.store.get(pers_no)
        if record is None:
            return {"managers": [], "current_user": None, "subordinates": []}
        return {
            "managers": [n.to_dict() for n in self.resolve_ancestors(pers_no)],
            "current_user": self._nodes([record])[0].to_dict(),
            "subordinates": [n.to_dict() for n in self.resolve_subordinates(pers_no)],
        }
