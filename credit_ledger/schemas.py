from datetime import datetime
from typing import Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AccountCreate(BaseModel):
    email: EmailStr
    account_id: Optional[UUID] = None


class AccountLogin(BaseModel):
    email: EmailStr


class AccountOut(BaseModel):
    id: UUID
    email: EmailStr
    balance: int
    model_config = ConfigDict(from_attributes=True)


class CreditBalance(BaseModel):
    credits: int


class DeductRequest(BaseModel):
    tool: str = Field(default="general", max_length=120)
    credits: int = Field(gt=0)
    description: Optional[str] = Field(default=None, max_length=500)


class DeductResponse(BaseModel):
    success: bool
    credits_used: int
    previous_balance: int
    remaining_balance: int
    replayed: bool = False


class ExpirationInfoOut(BaseModel):
    expires_at: datetime
    days_until_expiry: int
    is_expiring_soon: bool
    is_expired: bool


class UsageRecordOut(BaseModel):
    id: UUID
    tool: str
    credits_used: int
    description: Optional[str] = None
    used_at: datetime
    model_config = ConfigDict(from_attributes=True)


class UsageSummary(BaseModel):
    used_this_month: int
    records: list[UsageRecordOut]


class CreditAdjustRequest(BaseModel):
    account_id: UUID
    operation: Literal["add", "deduct"]
    credits: int = Field(gt=0)
    reason: Optional[str] = Field(default=None, max_length=500)
    actor: Optional[str] = Field(default=None, max_length=255)


class CreditAdjustmentOut(BaseModel):
    adjustment_id: UUID
    account_id: UUID
    operation: str
    credits: int
    balance_after: int
    batch_id: Optional[UUID] = None


class StuckEventOut(BaseModel):
    event_id: str
    event_type: str
    processing_attempts: int
    error_message: Optional[str] = None
    dead_letter: bool
    created_at: datetime
    next_retry_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class ReplayResponse(BaseModel):
    event_id: str
    success: bool
    message: str
