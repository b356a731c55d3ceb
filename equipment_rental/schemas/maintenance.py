from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from equipment_rental.schemas.reservations import naive_local


class ScheduleMaintenanceDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    type: Literal["preventive", "corrective", "emergency"]
    priority: Literal["low", "medium", "high", "critical"] = "medium"
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=1000)
    scheduledDate: datetime
    estimatedDuration: Optional[float] = None
    technicianID: Optional[int] = None
    notes: Optional[str] = None

    @field_validator("scheduledDate")
    @classmethod
    def _to_naive_local(cls, value: datetime) -> datetime:
        return naive_local(value)


class CompleteMaintenanceDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    workPerformed: Optional[str] = None
    laborCost: Optional[float] = Field(default=None, ge=0)
    partsCost: Optional[float] = Field(default=None, ge=0)
    externalCost: Optional[float] = Field(default=None, ge=0)
    nextMaintenanceDate: Optional[datetime] = None

    @field_validator("nextMaintenanceDate")
    @classmethod
    def _to_naive_local(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_local(value)
