import uuid
from datetime import date
from typing import Dict, Optional

from pydantic import BaseModel


class TaskCreate(BaseModel):
    name: str
    location: Optional[str] = None
    circle: Optional[str] = None
    zone: Optional[str] = None
    start_date: date
    end_date: date
    targets: Dict[str, int]  # category code -> target
    status: Optional[str] = None  # draft|active|paused|completed|cancelled; omit to derive from dates
    assigned_to: Optional[uuid.UUID] = None
    key_insight: Optional[str] = None
    est_hours: Optional[Dict[str, float]] = None  # maintenance categories only


class TaskStatusUpdate(BaseModel):
    status: str


class TeamMemberTargets(BaseModel):
    targets: Dict[str, int]


class ProgressUpdate(BaseModel):
    category: str
    delta: int


class ReviewReject(BaseModel):
    reason: Optional[str] = None
