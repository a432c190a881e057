from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone


def _now() -> datetime:
    return datetime.now(timezone.utc)


# all timestamps are stored as UTC with the zone
AWARE = DateTime(timezone=True)


class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    id: Optional[int] = Field(default=None, primary_key=True)
    auth_id: Optional[str] = Field(default=None, index=True)
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    car_type: Optional[str] = None
    # captured at request-send time, not tracked continuously
    lat: Optional[float] = None
    lng: Optional[float] = None
    created_at: datetime = Field(default_factory=_now, sa_type=AWARE)


class Mechanic(SQLModel, table=True):
    __tablename__ = "mechanics"

    id: Optional[int] = Field(default=None, primary_key=True)
    auth_id: Optional[str] = Field(default=None, index=True)
    name: str
    phone: Optional[str] = None
    specialization: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    online: bool = False
    is_available: bool = True
    rating: Optional[float] = None
    location_updated_at: Optional[datetime] = Field(default=None, sa_type=AWARE)
    created_at: datetime = Field(default_factory=_now, sa_type=AWARE)


class ServiceRequest(SQLModel, table=True):
    __tablename__ = "requests"

    id: Optional[int] = Field(default=None, primary_key=True)
    customer_id: int = Field(index=True, foreign_key="customers.id")
    mechanic_id: Optional[int] = Field(default=None, index=True, foreign_key="mechanics.id")
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    car_type: str
    description: str
    customer_lat: Optional[float] = None
    customer_lng: Optional[float] = None
    mechanic_lat: Optional[float] = None
    mechanic_lng: Optional[float] = None
    status: str = Field(default="pending", index=True)  # pending, accepted, declined, arrived, completed
    version: int = 0  # bumped on every status change; guards concurrent transitions
    created_at: datetime = Field(default_factory=_now, index=True, sa_type=AWARE)
    updated_at: Optional[datetime] = Field(default=None, sa_type=AWARE)
    accepted_at: Optional[datetime] = Field(default=None, sa_type=AWARE)
    declined_at: Optional[datetime] = Field(default=None, sa_type=AWARE)
    arrived_at: Optional[datetime] = Field(default=None, sa_type=AWARE)
    completed_at: Optional[datetime] = Field(default=None, sa_type=AWARE)
