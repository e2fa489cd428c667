"""
Shared fixtures: in-memory SQLite per test, a pinned clock, and factories
for accounts, master records and a small org chart.
"""
import os
from datetime import date, datetime
from types import SimpleNamespace

import pytest
import pytz

# Never touch a real database; must be set before fieldops is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTO_CREATE_DB"] = "false"
os.environ["RATE_LIMIT"] = "10000/minute"

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from fieldops.db import Base, get_db
from fieldops.models.models import EmployeeAccount, EmployeeMasterRecord
from fieldops.services.finance import FinanceApprovalEngine
from fieldops.services.hierarchy import HierarchyResolver
from fieldops.services.hierarchy_store import HierarchyStore
from fieldops.services.permissions import ReviewAuthorizationGuard
from fieldops.services.progress import ProgressEngine
from fieldops.services.task_service import TaskRepository
from fieldops.services.time_rules import Clock, get_clock


class FixedClock(Clock):
    def __init__(self, moment: datetime):
        self.moment = moment

    def now(self) -> datetime:
        return self.moment


TODAY = date(2025, 3, 10)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FixedClock(pytz.timezone("Asia/Kolkata").localize(datetime(2025, 3, 10, 11, 30)))


# ── factories ────────────────────────────────────────────────────────

@pytest.fixture
def make_account(db):
    def _make(name, role="SALES_STAFF", circle="KERALA", pers_no=None, is_active=True):
        account = EmployeeAccount(name=name, role=role, circle=circle, pers_no=pers_no, is_active=is_active)
        db.add(account)
        db.commit()
        return account
    return _make


@pytest.fixture
def make_master(db):
    def _make(pers_no, name, reporting_pers_no=None, circle="KERALA", sort_order=None, account=None, designation=None):
        record = EmployeeMasterRecord(
            pers_no=pers_no,
            name=name,
            reporting_pers_no=reporting_pers_no,
            circle=circle,
            sort_order=sort_order,
            designation=designation,
            linked_account_id=account.id if account is not None else None,
        )
        if account is not None:
            account.pers_no = pers_no
        db.add(record)
        db.commit()
        return record
    return _make


@pytest.fixture
def org(make_account, make_master):
    """
    GM (G1)
      └─ AGM manager (M1)
           ├─ staff (E1)
           └─ staff (E2)
    plus an outsider JTO in the same circle and an AGM from another circle.
    """
    gm = make_account("Gita GM", role="GM")
    manager = make_account("Manoj AGM", role="AGM")
    staff = make_account("Esha Staff")
    peer = make_account("Eli Staff")
    outsider = make_account("Omar JTO", role="SD_JTO")
    foreign_agm = make_account("Farah AGM", role="AGM", circle="TAMIL_NADU")
    make_master("G1", "Gita GM", account=gm)
    make_master("M1", "Manoj AGM", reporting_pers_no="G1", account=manager)
    make_master("E1", "Esha Staff", reporting_pers_no="M1", account=staff)
    make_master("E2", "Eli Staff", reporting_pers_no="M1", account=peer)
    make_master("O1", "Omar JTO", reporting_pers_no="G1", account=outsider)
    make_master("F1", "Farah AGM", circle="TAMIL_NADU", account=foreign_agm)
    return SimpleNamespace(
        gm=gm, manager=manager, staff=staff, peer=peer, outsider=outsider, foreign_agm=foreign_agm
    )


# ── services ─────────────────────────────────────────────────────────

@pytest.fixture
def store(db, clock):
    return HierarchyStore(db, clock=clock)


@pytest.fixture
def resolver(db, store):
    return HierarchyResolver(db, store=store)


@pytest.fixture
def guard(db, resolver):
    return ReviewAuthorizationGuard(db, resolver=resolver)


@pytest.fixture
def repo(db, clock, guard):
    return TaskRepository(db, clock=clock, guard=guard)


@pytest.fixture
def progress(db, clock, repo, guard):
    return ProgressEngine(db, clock=clock, repo=repo, guard=guard)


@pytest.fixture
def finance(db, clock, repo, guard):
    return FinanceApprovalEngine(db, clock=clock, repo=repo, guard=guard)


@pytest.fixture
def sales_task(repo, org):
    """SIM 10 / FTTH 5 task created by the manager, with the staff member carrying all of it."""
    task = repo.create_task(
        creator_id=org.manager.id,
        name="Kochi SIM mela",
        location="Kochi",
        circle="KERALA",
        zone="Central",
        start_date=date(2025, 3, 1),
        end_date=date(2025, 3, 31),
        targets={"SIM": 10, "FTTH": 5, "FIN_LC": 20000},
    )
    assignment = repo.add_team_member(task.id, org.staff.id, {"SIM": 10, "FTTH": 5}, actor_id=org.manager.id)
    return SimpleNamespace(task=task, assignment=assignment)


# ── HTTP ─────────────────────────────────────────────────────────────

@pytest.fixture
def client(session_factory, clock):
    from fastapi.testclient import TestClient
    from fieldops.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()
