from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from exampro.models.account import utcnow
from exampro.models.exam import new_id


class ContactMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    phone: Optional[str] = None
    message: str = Field(..., min_length=1)
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
