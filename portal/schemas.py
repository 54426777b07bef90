from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.config import ConfigDict

from .plans import Plan


class RegisterRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=6, max_length=128)
    username: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    def looks_like_email(cls, v: str):
        if "@" not in v or v.startswith("@") or v.endswith("@"):
            raise ValueError("invalid email address")
        return v.strip().lower()


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str


class ConfirmEmailRequest(BaseModel):
    user_id: str = Field(..., alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class ProfileRead(BaseModel):
    user_id: str
    email: Optional[str] = None
    username: Optional[str] = None
    role: str = "user"
    membership_type: str = "free"
    membership_expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class MeRead(ProfileRead):
    has_access: bool = False


class PlanRead(BaseModel):
    plan: Plan
    price: Decimal
    description: str


class CreateOrderRequest(BaseModel):
    user_id: str = Field(..., alias="userId", min_length=1)
    amount: Decimal = Field(..., gt=Decimal("0"))
    order_type: Plan = Field(..., alias="orderType")
    subject: str = Field(default="", max_length=256)
    return_url: Optional[str] = Field(default=None, alias="returnUrl")
    notify_url: Optional[str] = Field(default=None, alias="notifyUrl")

    model_config = ConfigDict(populate_by_name=True)


class ArtifactRequest(BaseModel):
    return_url: Optional[str] = Field(default=None, alias="returnUrl")
    notify_url: Optional[str] = Field(default=None, alias="notifyUrl")

    model_config = ConfigDict(populate_by_name=True)


class CreateOrderResponse(BaseModel):
    success: bool = True
    order_id: str = Field(..., alias="orderId")
    qr_code_url: Optional[str] = Field(default=None, alias="qrCodeUrl")
    form: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class OrderRead(BaseModel):
    order_id: str
    user_id: str
    amount: Decimal
    plan: str
    subject: str
    status: str
    gateway_trade_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ApproveRequest(BaseModel):
    trade_id: Optional[str] = Field(default=None, max_length=64)


class ManualActivateRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254)
    plan: Plan
    force: bool = False


class EntitlementRead(BaseModel):
    feature: Optional[str] = None
    has_access: bool
    has_permission: bool


class StatsRead(BaseModel):
    total_orders: int
    pending_orders: int
    completed_orders: int
    failed_orders: int
    total_revenue: Decimal
    paid_users: int
