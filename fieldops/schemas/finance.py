import uuid
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field


class CollectionCreate(BaseModel):
    task_id: uuid.UUID
    finance_type: str  # FIN_LC|FIN_LL_FTTH|FIN_TOWER|FIN_GSM_POSTPAID|FIN_RENT_BUILDING
    amount: Decimal
    payment_mode: str  # CASH|CHEQUE|NEFT|UPI|CARD|DD|OTHER
    transaction_reference: Optional[str] = None
    customer_name: Optional[str] = None
    customer_contact: Optional[str] = None
    remarks: Optional[str] = None
    photos: List[str] = Field(default_factory=list)  # storage references
    gps_latitude: Optional[float] = None
    gps_longitude: Optional[float] = None


class CollectionReject(BaseModel):
    remarks: Optional[str] = None


class CollectionBulkApprove(BaseModel):
    entry_ids: List[uuid.UUID]
