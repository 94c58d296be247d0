"""
Schemas for payment, subscription, access and usage endpoints.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, model_validator


class PlanTier(str, Enum):
    basic = "basic"
    premium = "premium"


class PaymentPurpose(str, Enum):
    track_access = "track_access"
    track_content_save = "track_content_save"


class UsageKind(str, Enum):
    daily = "daily"
    monthly = "monthly"


class CreateOrderRequest(BaseModel):
    """Body for POST /payments/create-order"""
    plan_tier: PlanTier = Field(..., description="basic | premium")
    purpose: PaymentPurpose = Field(PaymentPurpose.track_access)
    track_id: Optional[str] = Field(
        None, description="Track being paid for (null = temporary entitlement)"
    )

    @model_validator(mode="after")
    def check_track_for_content_save(self):
        if self.purpose == PaymentPurpose.track_content_save and not self.track_id:
            raise ValueError("track_id is required for track_content_save payments")
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "plan_tier": "premium",
                "purpose": "track_access",
                "track_id": None,
            }
        }


class CreateTrackOrderRequest(BaseModel):
    """Body for POST /payments/create-track-order"""
    plan_tier: PlanTier = Field(PlanTier.basic)
    track_id: str = Field(..., min_length=1)


class CreateOrderResponse(BaseModel):
    order_id: str
    amount: int = Field(..., description="Amount in major currency units")
    currency: str
    payment_id: int = Field(..., description="Local payment record id")
    key_id: Optional[str] = Field(None, description="Public gateway key for checkout")


class VerifyPaymentRequest(BaseModel):
    """Body for POST /payments/verify (fields as posted by Razorpay checkout)"""
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)
    payment_id: Optional[int] = Field(None, description="Local payment record id")


class PaymentResponse(BaseModel):
    id: int
    status: str
    amount: int
    currency: str
    plan_tier: str
    purpose: str
    track_id: Optional[str] = None
    subscription_id: Optional[int] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class VerifyPaymentResponse(BaseModel):
    success: bool
    payment: PaymentResponse


class SubscriptionInfo(BaseModel):
    id: int
    track_id: Optional[str] = None
    plan_tier: str
    plan_amount: int
    start_date: datetime
    expiry_date: datetime
    is_active: bool
    daily_chat_limit: int
    monthly_generation_limit: int
    tracks_saved: int
    max_tracks_per_payment: int
    unlocked_module_count: int


class SubscriptionStatusResponse(BaseModel):
    has_subscription: bool
    subscription: Optional[SubscriptionInfo] = None
    can_save_track: bool


class LinkSubscriptionResponse(BaseModel):
    linked: bool
    subscription_id: Optional[int] = None
    can_save_track: bool


class ModuleAccessResponse(BaseModel):
    track_id: str
    module_index: int
    chapter_index: Optional[int] = None
    has_access: bool
    is_locked: bool
    unlocked_module_count: int
    reason: Optional[str] = None


class UsageCounterStatus(BaseModel):
    used: int
    limit: int
    remaining: int


class ChapterUsageResponse(BaseModel):
    subscription_id: int
    content_unit_id: str
    daily: UsageCounterStatus
    monthly: UsageCounterStatus


class RecordUsageRequest(BaseModel):
    """Body for POST /usage/record"""
    track_id: Optional[str] = None
    content_unit_id: str = Field(..., min_length=1, description="Chapter id")
    kind: UsageKind


class RecordUsageResponse(BaseModel):
    subscription_id: int
    content_unit_id: str
    kind: UsageKind
    count: int
    remaining: int
