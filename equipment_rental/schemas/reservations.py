from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def naive_local(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an offset-aware datetime to naive local time; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


class DeliveryAddressDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    street: Optional[str] = None
    city: Optional[str] = None
    postalCode: Optional[str] = None


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: int
    clientID: Optional[int] = None
    startDate: datetime
    endDate: datetime
    deliveryRequired: bool = False
    deliveryAddress: Optional[DeliveryAddressDto] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("startDate", "endDate")
    @classmethod
    def _to_naive_local(cls, value: datetime) -> datetime:
        return naive_local(value)


class ReasonRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reason: Optional[str] = Field(default=None, max_length=500)
