"""
Unit tests for hierarchy traversal and employee master maintenance.
"""
import pytest

from fieldops.errors import NotFoundError, StateConflictError, ValidationError
from fieldops.models.models import AuditLog, EmployeeMasterRecord

pytestmark = pytest.mark.unit


# ── malformed links ──────────────────────────────────────────────────

class TestAncestors:
    def test_chain_from_immediate_manager_outward(self, resolver, org):
        chain = resolver.resolve_ancestors("E1")
        assert [n.pers_no for n in chain] == ["M1", "G1"]
        assert chain[0].account["id"] == str(org.manager.id)

    def test_two_node_cycle_terminates(self, resolver, make_master):
        make_master("A", "Alpha", reporting_pers_no="B")
        make_master("B", "Beta", reporting_pers_no="A")
        assert [n.pers_no for n in resolver.resolve_ancestors("A")] == ["B"]
        assert [n.pers_no for n in resolver.resolve_ancestors("B")] == ["A"]

    def test_self_reference_has_no_ancestors(self, resolver, make_master):
        make_master("S", "Solo", reporting_pers_no="S")
        assert resolver.resolve_ancestors("S") == []

    def test_dangling_manager_ends_chain(self, resolver, make_master):
        make_master("Y", "Yusuf", reporting_pers_no="GONE")
        assert resolver.resolve_ancestors("Y") == []

    def test_unknown_pers_no(self, resolver):
        assert resolver.resolve_ancestors("NOPE") == []
        assert resolver.ancestor_pers_nos("NOPE") == set()

    def test_depth_bound(self, resolver, make_master):
        make_master("L0", "Level 0")
        for i in range(1, 41):
            make_master(f"L{i}", f"Level {i}", reporting_pers_no=f"L{i - 1}")
        assert len(resolver.resolve_ancestors("L40")) == 32
        assert len(resolver.resolve_ancestors("L40", max_depth=3)) == 3
        assert len(resolver.ancestor_pers_nos("L40")) == 40


class TestSubordinates:
    def test_two_levels_by_default(self, resolver, org):
        tree = resolver.resolve_subordinates("G1")
        assert [n.pers_no for n in tree] == ["M1", "O1"]
        manager = tree[0]
        assert [c.pers_no for c in manager.children] == ["E2", "E1"]
        assert manager.direct_reports_count == 2

    def test_leaf_counts_on_last_level(self, resolver, org):
        tree = resolver.resolve_subordinates("G1", max_depth=1)
        assert tree[0].children == []
        assert tree[0].direct_reports_count == 2
        assert tree[1].direct_reports_count == 0

    def test_sibling_order(self, resolver, make_master):
        make_master("P", "Parent")
        make_master("C1", "Zed", reporting_pers_no="P", sort_order=1)
        make_master("C2", "Amy", reporting_pers_no="P")
        make_master("C3", "Bob", reporting_pers_no="P", sort_order=2)
        make_master("C4", "Abe", reporting_pers_no="P")
        names = [n.name for n in resolver.resolve_subordinates("P", max_depth=1)]
        assert names == ["Zed", "Bob", "Abe", "Amy"]

    def test_cycle_below_root_does_not_repeat(self, resolver, make_master):
        make_master("R", "Root", reporting_pers_no="K")
        make_master("K", "Kid", reporting_pers_no="R")
        tree = resolver.resolve_subordinates("R", max_depth=5)
        assert [n.pers_no for n in tree] == ["K"]
        assert tree[0].children == []

    def test_self_reference_is_not_a_report(self, resolver, store, make_master):
        make_master("S", "Solo", reporting_pers_no="S")
        assert resolver.resolve_subordinates("S") == []
        assert store.count_direct_reports(["S"]) == {"S": 0}

    def test_node_dict_shape(self, resolver, org):
        data = resolver.resolve_subordinates("M1")[0].to_dict()
        assert set(["pers_no", "name", "account", "direct_reports_count", "children"]) <= set(data)


class TestSearch:
    def test_confined_to_subtree(self, resolver, org):
        assert {n.pers_no for n in resolver.search("M1", "staff")} == {"E1", "E2"}
        assert resolver.search("M1", "gita") == []
        assert resolver.search("M1", "omar") == []

    def test_root_is_excluded(self, resolver, org):
        assert resolver.search("M1", "m1") == []

    def test_matches_pers_no(self, resolver, org):
        assert [n.pers_no for n in resolver.search("G1", "e2")] == ["E2"]

    def test_blank_query_rejected(self, resolver, org):
        with pytest.raises(ValidationError):
            resolver.search("G1", "   ")

    def test_unknown_root(self, resolver, org):
        assert resolver.search("NOPE", "staff") == []


class TestMyHierarchy:
    def test_linked_employee(self, resolver, org):
        view = resolver.get_my_hierarchy(org.manager.id)
        assert view["is_linked"] is True
        assert view["master_data"]["pers_no"] == "M1"
        assert view["manager"]["pers_no"] == "G1"
        assert [s["pers_no"] for s in view["subordinates"]] == ["E2", "E1"]

    def test_unlinked_employee(self, resolver, make_account):
        account = make_account("New Hire")
        view = resolver.get_my_hierarchy(account.id)
        assert view == {"is_linked": False, "master_data": None, "manager": None, "subordinates": []}

    def test_unknown_account(self, resolver):
        with pytest.raises(NotFoundError):
            resolver.get_my_hierarchy("not-a-uuid")

    def test_full_hierarchy(self, resolver, org):
        view = resolver.get_full_hierarchy("E1")
        assert [m["pers_no"] for m in view["managers"]] == ["M1", "G1"]
        assert view["current_user"]["pers_no"] == "E1"
        assert view["subordinates"] == []

    def test_full_hierarchy_unknown(self, resolver):
        assert resolver.get_full_hierarchy("NOPE") == {"managers": [], "current_user": None, "subordinates": []}


# ── master maintenance ───────────────────────────────────────────────

class TestImport:
    ROWS = [
        {"pers_no": "N1", "name": "Nina", "circle": "KERALA", "reporting_pers_no": "G1"},
        {"pers_no": "", "name": "Nobody"},
        {"pers_no": "N2", "name": "  "},
        {"pers_no": "N3", "name": "Nora", "sort_order": "abc"},
    ]

    def test_reports_row_errors_and_applies_valid_rows(self, store, db):
        result = store.import_master_records(self.ROWS)
        assert result["imported"] == 1
        assert result["updated"] == 0
        assert result["errors"] == [
            "Row 2: pers_no is required",
            "Row N2: name is required",
            "Row N3: sort_order must be an integer, got 'abc'",
        ]
        assert store.get("N1").reporting_pers_no == "G1"
        assert db.query(AuditLog).filter(AuditLog.action == "IMPORT_EMPLOYEE_MASTER").count() == 1

    def test_reimport_is_idempotent(self, store, db):
        store.import_master_records(self.ROWS[:1])
        result = store.import_master_records(self.ROWS[:1])
        assert result == {"imported": 0, "updated": 1, "errors": []}
        assert db.query(EmployeeMasterRecord).count() == 1

    def test_upsert_updates_fields(self, store):
        store.upsert_master_record("N1", {"name": "Nina"})
        record = store.upsert_master_record("N1", {"name": "Nina K", "sort_order": "4"})
        assert record.name == "Nina K"
        assert record.sort_order == 4


class TestLinking:
    def test_link_sets_both_sides(self, store, make_account, make_master):
        make_master("N1", "Nina")
        account = make_account("Nina")
        record = store.link_master_record_to_account("N1", account.id)
        assert record.linked_account_id == account.id
        assert account.pers_no == "N1"
        assert store.record_for_account(account).pers_no == "N1"

    def test_relink_same_pair_is_a_no_op(self, store, org):
        record = store.link_master_record_to_account("E1", org.staff.id)
        assert record.linked_account_id == org.staff.id

    def test_pers_no_taken(self, store, org, make_account):
        other = make_account("Impostor")
        with pytest.raises(StateConflictError) as exc:
            store.link_master_record_to_account("E1", other.id)
        assert exc.value.rule == "pers_no_already_linked"

    def test_account_already_linked(self, store, org, make_master):
        make_master("N9", "Spare")
        with pytest.raises(StateConflictError) as exc:
            store.link_master_record_to_account("N9", org.staff.id)
        assert exc.value.rule == "account_already_linked"

    def test_unknown_pers_no(self, store, org):
        with pytest.raises(NotFoundError):
            store.link_master_record_to_account("NOPE", org.staff.id)


class TestDeletion:
    def test_linked_record_cannot_be_deleted(self, store, org):
        with pytest.raises(StateConflictError) as exc:
            store.delete_master_record("E1")
        assert exc.value.rule == "record_linked"

    def test_delete_unlinked(self, store, make_master):
        make_master("N1", "Nina")
        store.delete_master_record("N1")
        assert store.get("N1") is None

    def test_purge_keeps_linked_rows(self, store, org, make_master):
        make_master("N1", "Nina", reporting_pers_no="M1")
        make_master("N2", "Noor")
        assert store.purge_unlinked() == 2
        assert store.stats() == {"total": 6, "linked": 6, "unlinked": 0}

    def test_stats_and_listing(self, store, org, make_master):
        make_master("N1", "Nina")
        assert store.stats() == {"total": 7, "linked": 6, "unlinked": 1}
        rows, total = store.list_records(linked=False)
        assert total == 1 and rows[0].pers_no == "N1"
        rows, total = store.list_records(search="STAFF")
        assert {r.pers_no for r in rows} == {"E1", "E2"}
