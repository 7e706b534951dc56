from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class UserIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    kind: Literal["user"] = "user"
    id: int
    first_name: str = Field(..., min_length=1, max_length=64)
    last_name: str = Field(..., min_length=1, max_length=64)
    birthday: Optional[date] = None


# amount_cents is a 32-bit INTEGER column on postgres
MAX_COST_SUM = 10_000_000


class CostIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    kind: Literal["cost"] = "cost"
    userid: int
    description: str = Field(..., min_length=1, max_length=256)
    category: str = Field(..., min_length=1, max_length=50)
    sum: float = Field(..., gt=0, le=MAX_COST_SUM, allow_inf_nan=False)
    created_at: Optional[datetime] = None


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    first_name: str
    last_name: str
    birthday: Optional[date] = None


class UserDetailOut(BaseModel):
    id: int
    first_name: str
    last_name: str
    total: float


class CostOut(BaseModel):
    id: int
    userid: int
    description: str
    category: str
    sum: float
    day: int
    created_at: datetime


class RequestLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    method: str
    path: str
    status_code: int
    duration_ms: int
    endpoint: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class TeamMemberOut(BaseModel):
    first_name: str
    last_name: str
