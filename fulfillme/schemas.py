"""
Pydantic schemas for the marketplace API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from fulfillme.types import Category, ContactMethod, Gender, Role, Timeframe


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    role: Role
    email: EmailStr
    phone: str = Field(..., min_length=7, max_length=20)
    password: str = Field(..., min_length=6, max_length=72)
    full_name: str = Field(..., min_length=1, max_length=120)
    location: str = Field(..., min_length=1, max_length=120)
    gender: Gender
    national_id: Optional[str] = Field(default=None, max_length=32)
    categories: list[str] = Field(default_factory=list)
    description: Optional[str] = Field(default=None, max_length=1024)


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, description="Email or phone")
    password: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    user_id: str
    email: str
    phone: str
    full_name: str
    location: str
    gender: str
    role: str
    categories: list[str]
    description: Optional[str] = None
    credits: int
    rating: float
    total_ratings: int
    completed_jobs: int
    is_verified: bool
    profile_photo: Optional[str] = None
    created_at: float


class AuthResponse(BaseModel):
    token: str
    token_type: Literal["bearer"] = "bearer"
    user: UserResponse


class PostNeedRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(..., min_length=1, max_length=140)
    description: str = Field(..., min_length=1, max_length=5000)
    budget: float = Field(..., ge=0, allow_inf_nan=False)
    category: Category
    subcategory: Optional[str] = Field(default=None, max_length=64)
    location: str = Field(..., min_length=1, max_length=120)
    timeframe: Timeframe = Timeframe.FLEXIBLE
    contact_methods: list[ContactMethod] = Field(default_factory=list)
    photo: Optional[str] = None
    is_urgent: bool = False


class NeedResponse(BaseModel):
    need_id: str
    title: str
    description: str
    budget: float
    category: str
    subcategory: Optional[str] = None
    location: str
    timeframe: str
    status: str
    photo: Optional[str] = None
    is_urgent: bool
    unlock_count: int
    offer_count: int
    expires_at: float
    created_at: float
    updated_at: float


class OfferResponse(BaseModel):
    offer_id: str
    fulfiller_id: str
    amount: float
    message: Optional[str] = None
    status: str
    created_at: float


class OwnedNeedResponse(NeedResponse):
    contact_methods: list[str]
    offers: list[OfferResponse]
    selected_fulfiller: Optional[str] = None


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ListNeedsResponse(BaseModel):
    needs: list[NeedResponse]
    pagination: PaginationResponse


class MyNeedsResponse(BaseModel):
    needs: list[OwnedNeedResponse]


class ContactResponse(BaseModel):
    full_name: str
    phone: str
    email: str
    location: str
    rating: float
    contact_methods: list[str]


class UnlockResponse(BaseModel):
    need_id: str
    contact: ContactResponse
    credits: int
    transaction_id: str


class AddCreditsRequest(BaseModel):
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    payment_code: str = Field(..., min_length=1, max_length=64)


class AddCreditsResponse(BaseModel):
    credits: int
    credits_added: int
    transaction_id: str


class OfferRequest(BaseModel):
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    message: Optional[str] = Field(default=None, max_length=1024)


class TransactionResponse(BaseModel):
    transaction_id: str
    user_id: str
    need_id: Optional[str] = None
    amount: float
    type: str
    status: str
    payment_code: Optional[str] = None
    metadata: dict
    created_at: float
    completed_at: Optional[float] = None


class TransactionListResponse(BaseModel):
    transactions: list[TransactionResponse]


class AskerStatsResponse(BaseModel):
    role: Literal["asker"]
    active_needs: int
    completed_needs: int
    unlocks_received: int
    offers_received: int
    total_offers: int


class FulfillerStatsResponse(BaseModel):
    role: Literal["fulfiller"]
    unlocked_needs: int
    completed_jobs: int
    total_earnings: float
    credits: int


class HealthResponse(BaseModel):
    status: Literal["ok"]
    message: str
