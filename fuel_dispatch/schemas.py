# schemas.py
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from fuel_dispatch.errors import ConflictError


class Role(str, Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    ADMIN = "admin"


class FuelType(str, Enum):
    PETROL = "petrol"
    DIESEL = "diesel"


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH = "cash"
    WALLET = "wallet"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DRIVER_ASSIGNED = "driver_assigned"
    DRIVER_EN_ROUTE = "driver_en_route"
    ARRIVED = "arrived"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {OrderStatus.COMPLETED, OrderStatus.CANCELLED}
ACTIVE_DELIVERY_STATUSES = {
    OrderStatus.DRIVER_ASSIGNED,
    OrderStatus.DRIVER_EN_ROUTE,
    OrderStatus.ARRIVED,
    OrderStatus.DELIVERING,
}


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# ------------------------
# Address
# ------------------------
class Coordinates(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class Address(BaseModel):
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str = Field(min_length=1)
    coordinates: Coordinates
    landmark: Optional[str] = None
    instructions: Optional[str] = None


# ------------------------
# Tracking timeline
# ------------------------
class Milestone(BaseModel):
    timestamp: datetime


class PlacedMilestone(Milestone):
    location: Optional[Coordinates] = None


class AssignedMilestone(Milestone):
    driver_id: str


class EnRouteMilestone(Milestone):
    estimated_arrival: datetime


class ArrivedMilestone(Milestone):
    location: Optional[Coordinates] = None


class DeliveringMilestone(Milestone):
    pass


class CompletedMilestone(Milestone):
    signature: Optional[str] = None
    photo: Optional[str] = None


class CancelledMilestone(Milestone):
    reason: Optional[str] = None
    cancelled_by: Role


class Tracking(BaseModel):
    placed: Optional[PlacedMilestone] = None
    driver_assigned: Optional[AssignedMilestone] = None
    driver_en_route: Optional[EnRouteMilestone] = None
    arrived: Optional[ArrivedMilestone] = None
    delivering: Optional[DeliveringMilestone] = None
    completed: Optional[CompletedMilestone] = None
    cancelled: Optional[CancelledMilestone] = None

    def has(self, name: str) -> bool:
        return getattr(self, name, None) is not None

    def record(self, name: str, milestone: Milestone) -> "Tracking":
        """Return a copy with `name` written. Milestones are write-once."""
        if self.has(name):
            raise ConflictError(f"Milestone '{name}' already recorded")
        return self.model_copy(update={name: milestone})


class Rating(BaseModel):
    score: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    rated_at: datetime


# ------------------------
# Order document
# ------------------------
class Order(BaseModel):
    id: str
    order_number: str
    customer_id: str
    customer_name: Optional[str] = None
    driver_id: Optional[str] = None
    fuel_type: FuelType
    quantity: Decimal
    unit_price: int
    base_amount: int
    delivery_fee: int
    tax_amount: int
    total_amount: int
    currency: str
    payment_method: PaymentMethod
    delivery_address: Address
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_intent_id: Optional[str] = None
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_id: Optional[str] = None
    tracking: Tracking = Field(default_factory=Tracking)
    rating_by_customer: Optional[Rating] = None
    rating_by_driver: Optional[Rating] = None
    scheduled_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None
    customer_notes: Optional[str] = None
    driver_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int = 0


class DriverProfile(BaseModel):
    id: str
    name: str
    is_approved: bool = False
    rejection_reason: Optional[str] = None
    is_online: bool = False
    is_active: bool = True
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    location_updated_at: Optional[datetime] = None
    rating: float = 0.0
    total_ratings: int = 0
    rating_points: int = 0
    vehicle: Optional[dict] = None
    created_at: Optional[datetime] = None
    version: int = 0

    @property
    def location(self) -> Optional[Coordinates]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinates(latitude=self.latitude, longitude=self.longitude)


# ------------------------
# Requests
# ------------------------
class OrderCreate(BaseModel):
    fuel_type: FuelType
    quantity: Decimal = Field(ge=1)
    delivery_address: Address
    payment_method: PaymentMethod
    scheduled_time: Optional[datetime] = None
    customer_notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: OrderStatus
    location: Optional[Coordinates] = None
    signature: Optional[str] = None
    photo: Optional[str] = None
    cancel_reason: Optional[str] = None
    driver_notes: Optional[str] = None


class AdminStatusUpdate(BaseModel):
    status: OrderStatus
    reason: str = Field(min_length=1)


class RatingRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class DriverCreate(BaseModel):
    id: str
    name: str


class DriverStatusUpdate(BaseModel):
    is_online: bool


class LocationUpdate(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class VehicleUpdate(BaseModel):
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = Field(default=None, ge=1990)
    plate_number: Optional[str] = None
    capacity: Optional[float] = Field(default=None, ge=100)


class ApprovalUpdate(BaseModel):
    is_approved: bool
    rejection_reason: Optional[str] = None


class AccountStatusUpdate(BaseModel):
    is_active: bool
    reason: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    order_id: str


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str
    order_id: str


class RefundRequest(BaseModel):
    order_id: str
    reason: Optional[str] = None
