"""
Closed enumerations shared by the store, schemas and routes.
"""

from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    ASKER = "asker"
    FULFILLER = "fulfiller"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"
    PREFER_NOT_TO_SAY = "prefer-not-to-say"


class Category(str, Enum):
    SERVICES = "services"
    PRODUCTS = "products"
    RENTALS = "rentals"
    PETS = "pets"
    TRANSPORT = "transport"
    OTHER = "other"


class Timeframe(str, Enum):
    ASAP = "asap"
    TODAY = "today"
    TOMORROW = "tomorrow"
    WEEK = "week"
    MONTH = "month"
    FLEXIBLE = "flexible"


class ContactMethod(str, Enum):
    WHATSAPP = "whatsapp"
    SMS = "sms"
    CALL = "call"
    EMAIL = "email"


class NeedStatus(str, Enum):
    ACTIVE = "active"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class TransactionType(str, Enum):
    UNLOCK = "unlock"
    CREDIT_PURCHASE = "credit_purchase"
    JOB_COMPLETED = "job_completed"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class NeedSort(str, Enum):
    NEWEST = "newest"
    BUDGET_HIGH = "budget_high"
    BUDGET_LOW = "budget_low"
    URGENT = "urgent"
