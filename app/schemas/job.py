"""
Schemas for the admin job endpoints.
"""
from typing import Optional, Dict, Any
from datetime import datetime
from pydantic import BaseModel, ConfigDict


class JobRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    listing_key: str
    event_kind: str
    status: str
    attempts: int
    payload: Dict[str, Any]
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
