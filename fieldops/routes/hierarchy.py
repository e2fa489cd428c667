from typing import List

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth.actor import get_current_employee
from ..db import get_db
from ..errors import AuthorizationError
from ..models.models import EmployeeAccount
from ..schemas.hierarchy import FullHierarchy, HierarchyNodeOut, MyHierarchy
from ..services.hierarchy import HierarchyResolver
from ..services.permissions import is_admin


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/hierarchy", tags=["hierarchy"])


def _own_pers_no(resolver: HierarchyResolver, me: EmployeeAccount):
    record = resolver.store.record_for_account(me)
    return record.pers_no if record is not None else None


@router.get("/me", response_model=MyHierarchy)
def my_hierarchy(me: EmployeeAccount = Depends(get_current_employee), db: Session = Depends(get_db)):
    return HierarchyResolver(db).get_my_hierarchy(me.id)


@router.get("/{pers_no}", response_model=FullHierarchy)
def full_hierarchy(pers_no: str, me: EmployeeAccount = Depends(get_current_employee), db: Session = Depends(get_db)):
    resolver = HierarchyResolver(db)
    own = _own_pers_no(resolver, me)
    # Own record, anyone below us, or an admin
    if not is_admin(me) and own != pers_no and own not in resolver.ancestor_pers_nos(pers_no):
        logger.info("authorization_denied", check="view_hierarchy", actor_id=str(me.id), pers_no=pers_no)
        raise AuthorizationError()
    return resolver.get_full_hierarchy(pers_no)


@router.get("/{pers_no}/search", response_model=List[HierarchyNodeOut])
def search_hierarchy(
    pers_no: str,
    q: str = Query(default=""),
    me: EmployeeAccount = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    resolver = HierarchyResolver(db)
    if not is_admin(me) and _own_pers_no(resolver, me) != pers_no:
        logger.info("authorization_denied", check="search_hierarchy", actor_id=str(me.id), pers_no=pers_no)
        raise AuthorizationError()
    return [node.to_dict() for node in resolver.search(pers_no, q)]
