"""Segment — a unit of partitioned storage, owned by the Segment Inventory."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class Segment(BaseModel):
    """Metadata snapshot of a single partition. Read-only to the kernel."""

    id: str                                 # e.g. "SALES.FACT_ORDERS.P_2023_01"
    owner: str
    table_name: str
    partition_name: str
    age_days: Optional[int] = None          # None when the age cannot be derived
    size_mb: float = Field(ge=0, default=0.0)
    compressed: bool = False
    location: Optional[str] = None          # tablespace / storage tier
    read_only: bool = False
    temperature: Optional[str] = None       # classification as last tracked
    last_refreshed: Optional[datetime] = None

    @property
    def age_months(self) -> Optional[int]:
        if self.age_days is None:
            return None
        return self.age_days // 30
