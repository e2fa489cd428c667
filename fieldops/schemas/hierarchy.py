from typing import List, Optional

from pydantic import BaseModel, Field


class AccountSummary(BaseModel):
    id: str
    name: str
    role: Optional[str] = None
    circle: Optional[str] = None
    designation: Optional[str] = None


class HierarchyNodeOut(BaseModel):
    pers_no: str
    name: str
    designation: Optional[str] = None
    circle: Optional[str] = None
    zone: Optional[str] = None
    division: Optional[str] = None
    office_name: Optional[str] = None
    sort_order: Optional[int] = None
    reporting_pers_no: Optional[str] = None
    account: Optional[AccountSummary] = None
    direct_reports_count: int = 0
    children: List["HierarchyNodeOut"] = Field(default_factory=list)


class MyHierarchy(BaseModel):
    is_linked: bool
    master_data: Optional[HierarchyNodeOut] = None
    manager: Optional[HierarchyNodeOut] = None
    subordinates: List[HierarchyNodeOut] = Field(default_factory=list)


class FullHierarchy(BaseModel):
    managers: List[HierarchyNodeOut] = Field(default_factory=list)
    current_user: Optional[HierarchyNodeOut] = None
    subordinates: List[HierarchyNodeOut] = Field(default_factory=list)


HierarchyNodeOut.model_rebuild()
