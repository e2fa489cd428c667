import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class MasterRecordIn(BaseModel):
    # Everything optional here; row-level problems are reported per row by the import
    pers_no: Optional[str] = None
    name: Optional[str] = None
    designation: Optional[str] = None
    circle: Optional[str] = None
    zone: Optional[str] = None
    division: Optional[str] = None
    office_name: Optional[str] = None
    building_name: Optional[str] = None
    emp_group: Optional[str] = None
    reporting_pers_no: Optional[str] = None
    reporting_officer_name: Optional[str] = None
    reporting_officer_designation: Optional[str] = None
    sort_order: Optional[int] = None


class MasterImportRequest(BaseModel):
    rows: List[MasterRecordIn]


class MasterImportResult(BaseModel):
    imported: int
    updated: int
    errors: List[str]


class LinkRequest(BaseModel):
    account_id: uuid.UUID


class MasterRecordResponse(BaseModel):
    id: uuid.UUID
    pers_no: str
    name: str
    designation: Optional[str] = None
    circle: Optional[str] = None
    zone: Optional[str] = None
    division: Optional[str] = None
    office_name: Optional[str] = None
    reporting_pers_no: Optional[str] = None
    sort_order: Optional[int] = None
    linked_account_id: Optional[uuid.UUID] = None
    linked_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class MasterStats(BaseModel):
    total: int
    linked: int
    unlinked: int
