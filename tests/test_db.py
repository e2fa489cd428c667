"""
Unit tests for transaction handling and timeout translation.
"""
import pytest
from sqlalchemy.exc import OperationalError

from fieldops.db import is_timeout_error, unit_of_work
from fieldops.errors import DependencyTimeoutError
from fieldops.models.models import EmployeeAccount

pytestmark = pytest.mark.unit


def _locked():
    return OperationalError("UPDATE assignments", {}, Exception("database is locked"))


class TestUnitOfWork:
    def test_commits_on_success(self, db):
        with unit_of_work(db):
            db.add(EmployeeAccount(name="Asha"))
        assert db.query(EmployeeAccount).count() == 1

    def test_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError):
            with unit_of_work(db):
                db.add(EmployeeAccount(name="Asha"))
                db.flush()
                raise RuntimeError("boom")
        assert db.query(EmployeeAccount).count() == 0

    def test_lock_timeout_becomes_retryable(self, db):
        with pytest.raises(DependencyTimeoutError) as exc:
            with unit_of_work(db):
                db.add(EmployeeAccount(name="Asha"))
                db.flush()
                raise _locked()
        assert exc.value.retryable is True
        assert db.query(EmployeeAccount).count() == 0


def test_is_timeout_error():
    assert is_timeout_error(_locked())
    assert not is_timeout_error(OperationalError("SELECT 1", {}, Exception("no such table: tasks")))
    assert not is_timeout_error(ValueError("database is locked"))
