from pydantic import AliasChoices, BaseModel, Field
from typing import Optional
from datetime import datetime


class CheckoutSessionCreate(BaseModel):
    plan: Optional[str] = None
    email: Optional[str] = None


class VerifySessionRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("sessionId", "session_id"))


class ManualUpdateRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("userId", "user_id"))
    tier: Optional[str] = Field(default=None, validation_alias=AliasChoices("tier", "plan"))
    session_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("paymentSessionId", "sessionId", "session_id")
    )
    payment_intent_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("paymentIntentId", "payment_intent_id")
    )
    expires_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("expiresAt", "expires_at"))


class AdminUserUpdate(BaseModel):
    user_id: Optional[str] = None
    username: Optional[str] = None
    membership_type: Optional[str] = None


class AdminUserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    username: Optional[str] = None
    membership_type: str
    subscription_expires_at: Optional[str] = None
    created_at: Optional[str] = None


class MembershipResponse(BaseModel):
    user_id: str
    email: Optional[str] = None
    membership_type: Optional[str] = None
    subscription_expires_at: Optional[str] = None
    effective_membership_type: str
    is_admin: bool
