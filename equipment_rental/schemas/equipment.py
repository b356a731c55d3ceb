from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

EquipmentCategory = Literal["excavator", "bulldozer", "crane", "loader", "compactor", "other"]
EquipmentStatus = Literal["available", "rented", "maintenance", "inactive"]


class UpsertEquipmentDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    category: EquipmentCategory = "other"
    brand: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    dailyRate: float = Field(ge=0)
    status: EquipmentStatus = "available"
    city: Optional[str] = None
    minimumRentalDays: int = Field(default=1, ge=1)
    maximumRentalDays: int = Field(default=30, ge=1)
