import uuid
from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..db import get_db
from ..errors import AuthorizationError
from ..models.models import EmployeeAccount
from ..services.permissions import is_admin


logger = structlog.get_logger(__name__)


def get_current_employee(
    x_employee_id: Optional[str] = Header(default=None, alias="X-Employee-Id"),
    db: Session = Depends(get_db),
) -> EmployeeAccount:
    """
    Resolve the acting employee.

    Authentication happens upstream; the gateway forwards the authenticated
    account id in X-Employee-Id.
    """
    if not x_employee_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        account_id = uuid.UUID(x_employee_id.strip())
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid employee id")
    account = db.get(EmployeeAccount, account_id)
    if account is None or not account.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Employee not active")
    structlog.contextvars.bind_contextvars(actor_id=str(account.id))
    return account


def require_admin(employee: EmployeeAccount = Depends(get_current_employee)) -> EmployeeAccount:
    if not is_admin(employee):
        logger.info("authorization_denied", check="admin", actor_id=str(employee.id))
        raise AuthorizationError()
    return employee
