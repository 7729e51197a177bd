"""SQLModel database models and tables."""

import time
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, JSON


class OperationStatusRecord(SQLModel, table=True):
    """Persisted status of a tracked AI operation.

    The full status payload is stored as JSON; the indexed columns exist for
    lookup and cleanup only.
    """

    __tablename__ = "ai_operation_status"

    key: str = Field(primary_key=True, max_length=255)
    operation_type: str = Field(default="", index=True, max_length=50)
    user_id: Optional[str] = Field(default=None, index=True, max_length=255)
    status: str = Field(default="pending", max_length=50)
    data: Dict[str, Any] = Field(sa_column=Column(JSON))
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time, index=True)
