"""
Marketplace operations: registration, need posting, unlocking contact
details with credits, credit purchases, offers, job completion, refunds and
dashboard aggregation.

Routes stay thin and call into these functions; each function takes the DB
client (and settings where prices or limits matter) explicitly.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Optional

from fulfillme.auth import hash_password, verify_password
from fulfillme.config import Settings
from fulfillme.db import (
    DAY_SECONDS,
    DbClient,
    NeedQuery,
    NeedRecord,
    OfferRecord,
    TransactionRecord,
    UnlockResult,
    UserRecord,
)
from fulfillme.errors import (
    AuthError,
    Forbidden,
    InvalidPaymentCode,
    NotFound,
    ValidationError,
)
from fulfillme.types import (
    Category,
    NeedSort,
    NeedStatus,
    Role,
    Timeframe,
    TransactionType,
)

logger = logging.getLogger(__name__)

PAYMENT_CODE_BODY = re.compile(r"^[A-Z0-9]+$")
CATEGORIES = {c.value for c in Category}
TIMEFRAMES = {t.value for t in Timeframe}


def _require_text(fields: dict, *names: str) -> None:
    for name in names:
        value = fields.get(name)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{name} is required")


def _require_owner(need: NeedRecord, user: UserRecord) -> None:
    if need.user_id != user.user_id:
        raise Forbidden("Only the owner of this need can do that")


def _get_live_need(db: DbClient, need_id: str) -> NeedRecord:
    need = db.get_need(need_id)
    if not need:
        raise NotFound("Need not found")
    return need


# -- accounts ------------------------------------------------------------


def register_user(db: DbClient, fields: dict) -> UserRecord:
    _require_text(fields, "email", "phone", "password", "full_name", "location")
    role = Role(fields["role"])
    now = time.time()
    user = UserRecord(
        user_id=uuid.uuid4().hex,
        email=fields["email"].strip().lower(),
        phone=fields["phone"].strip(),
        password_hash=hash_password(fields["password"]),
        full_name=fields["full_name"].strip(),
        location=fields["location"].strip(),
        gender=fields["gender"],
        role=role,
        national_id=fields.get("national_id"),
        categories=list(fields.get("categories") or []),
        description=fields.get("description"),
        created_at=now,
        updated_at=now,
    )
    created = db.create_user(user)
    logger.info("Registered %s %s", created.role.value, created.user_id)
    return created


def authenticate(db: DbClient, identifier: str, password: str) -> UserRecord:
    """Look a user up by email or phone and check the password."""
    identifier = identifier.strip()
    if "@" in identifier:
        user = db.get_user_by_email(identifier.lower())
    else:
        user = db.get_user_by_phone(identifier)
    if not user or not verify_password(password, user.password_hash):
        raise AuthError("Invalid credentials")
    return user


# -- needs ---------------------------------------------------------------


def post_need(
    db: DbClient, asker: UserRecord, fields: dict, settings: Settings
) -> NeedRecord:
    if asker.role != Role.ASKER:
        raise Forbidden("Only askers can post needs")
    _require_text(fields, "title", "description", "location", "category")
    budget = fields.get("budget")
    if budget is None or budget < 0:
        raise ValidationError("budget must be zero or more")
    if fields["category"] not in CATEGORIES:
        raise ValidationError(f"Unknown category: {fields['category']}")
    timeframe = fields.get("timeframe") or Timeframe.FLEXIBLE.value
    if timeframe not in TIMEFRAMES:
        raise ValidationError(f"Unknown timeframe: {timeframe}")

    now = time.time()
    need = NeedRecord(
        need_id=uuid.uuid4().hex,
        user_id=asker.user_id,
        title=fields["title"].strip(),
        description=fields["description"].strip(),
        budget=float(budget),
        category=fields["category"],
        subcategory=fields.get("subcategory"),
        location=fields["location"].strip(),
        timeframe=timeframe,
        photo=fields.get("photo"),
        contact_methods=list(fields.get("contact_methods") or []),
        is_urgent=bool(fields.get("is_urgent")),
        expires_at=now + settings.need_ttl_days * DAY_SECONDS,
        created_at=now,
        updated_at=now,
    )
    created = db.create_need(need)
    logger.info("Need %s posted by %s", created.need_id, asker.user_id)
    return created


def list_active_needs(
    db: DbClient,
    *,
    category: Optional[str] = None,
    location: Optional[str] = None,
    min_budget: Optional[float] = None,
    max_budget: Optional[float] = None,
    sort: NeedSort = NeedSort.NEWEST,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[dict], dict]:
    """
    Return public projections of active needs and pagination metadata.
    Contact details are never part of the projection.
    """
    if min_budget is not None and max_budget is not None and min_budget > max_budget:
        raise ValidationError("min_budget cannot exceed max_budget")
    query = NeedQuery(
        category=category,
        location=location.strip() if location else None,
        min_budget=min_budget,
        max_budget=max_budget,
        sort=sort,
        page=page,
        limit=limit,
    )
    needs, total = db.list_active_needs(query)
    pagination = {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }
    return [need.public_dict() for need in needs], pagination


def get_need(db: DbClient, need_id: str) -> NeedRecord:
    return _get_live_need(db, need_id)


def list_my_needs(db: DbClient, asker: UserRecord) -> list[NeedRecord]:
    if asker.role != Role.ASKER:
        raise Forbidden("Only askers own needs")
    return db.list_needs_by_owner(asker.user_id)


def cancel_need(db: DbClient, need_id: str, asker: UserRecord) -> NeedRecord:
    need = _get_live_need(db, need_id)
    _require_owner(need, asker)
    if need.status != NeedStatus.ACTIVE:
        raise ValidationError("Only active needs can be cancelled")
    cancelled = db.set_need_status(need_id, NeedStatus.CANCELLED)
    logger.info("Need %s cancelled", need_id)
    return cancelled


# -- unlocking and credits -------------------------------------------------


def unlock_need(
    db: DbClient, need_id: str, fulfiller: UserRecord, settings: Settings
) -> UnlockResult:
    """
    Charge one credit and reveal the asker's contact details.

    The credit deduction, the ``unlocked_by`` append and the ledger entry
    happen in a single store transaction.
    """
    if fulfiller.role != Role.FULFILLER:
        raise Forbidden("Only fulfillers can unlock needs")
    result = db.unlock_need(need_id, fulfiller.user_id, settings.unlock_price)
    logger.info(
        "Fulfiller %s unlocked need %s (credits left: %d)",
        fulfiller.user_id,
        need_id,
        result.fulfiller.credits,
    )
    return result


def get_contact(db: DbClient, need_id: str, fulfiller: UserRecord) -> dict:
    """Contact details for a need the fulfiller already paid for."""
    need = _get_live_need(db, need_id)
    if fulfiller.user_id not in need.unlocked_by:
        raise Forbidden("Unlock this need to see contact details")
    asker = db.get_user(need.user_id)
    if not asker:
        raise NotFound("Need owner not found")
    contact = asker.contact_dict()
    contact["contact_methods"] = list(need.contact_methods)
    return contact


def validate_payment_code(payment_code: str, settings: Settings) -> str:
    code = (payment_code or "").strip().upper()
    prefix = settings.payment_code_prefix.upper()
    if not code or not code.startswith(prefix) or len(code) <= len(prefix):
        raise InvalidPaymentCode("Invalid payment code")
    if not PAYMENT_CODE_BODY.match(code):
        raise InvalidPaymentCode("Invalid payment code")
    return code


def add_credits(
    db: DbClient,
    user: UserRecord,
    amount_paid: float,
    payment_code: str,
    settings: Settings,
) -> tuple[UserRecord, TransactionRecord]:
    if user.role != Role.FULFILLER:
        raise Forbidden("Only fulfillers can buy credits")
    code = validate_payment_code(payment_code, settings)
    credits = int(amount_paid // settings.unlock_price)
    if credits < 1:
        raise ValidationError(
            f"Minimum purchase is {settings.unlock_price} for one credit"
        )
    updated, txn = db.add_credits(user.user_id, credits, amount_paid, code)
    logger.info(
        "User %s bought %d credit(s) with %s (balance: %d)",
        user.user_id,
        credits,
        code,
        updated.credits,
    )
    return updated, txn


def refund_transaction(db: DbClient, transaction_id: str) -> TransactionRecord:
    refund = db.refund_transaction(transaction_id)
    logger.info(
        "Refunded transaction %s (credit delta %s)",
        transaction_id,
        refund.metadata.get("credits"),
    )
    return refund


def list_transactions(
    db: DbClient, user: UserRecord, limit: int = 100
) -> list[TransactionRecord]:
    return db.list_transactions(user.user_id, limit=limit)


# -- offers and completion -----------------------------------------------


def make_offer(
    db: DbClient,
    need_id: str,
    fulfiller: UserRecord,
    amount: float,
    message: Optional[str] = None,
) -> OfferRecord:
    if fulfiller.role != Role.FULFILLER:
        raise Forbidden("Only fulfillers can make offers")
    if amount < 0:
        raise ValidationError("amount must be zero or more")
    offer = OfferRecord(fulfiller_id=fulfiller.user_id, amount=amount, message=message)
    db.add_offer(need_id, offer)
    logger.info("Offer %s on need %s by %s", offer.offer_id, need_id, fulfiller.user_id)
    return offer


def accept_offer(
    db: DbClient, need_id: str, offer_id: str, asker: UserRecord
) -> NeedRecord:
    need = _get_live_need(db, need_id)
    _require_owner(need, asker)
    return db.accept_offer(need_id, offer_id)


def complete_need(db: DbClient, need_id: str, asker: UserRecord) -> TransactionRecord:
    need = _get_live_need(db, need_id)
    _require_owner(need, asker)
    txn = db.complete_need(need_id)
    logger.info("Need %s fulfilled by %s", need_id, txn.user_id)
    return txn


# -- dashboard -----------------------------------------------------------


def dashboard_stats(db: DbClient, user: UserRecord) -> dict:
    if user.role == Role.ASKER:
        unlocks = db.count_unlocks_received(user.user_id)
        offers = db.count_offers_received(user.user_id)
        return {
            "role": user.role.value,
            "active_needs": db.count_needs(
                owner_id=user.user_id, status=NeedStatus.ACTIVE
            ),
            "completed_needs": db.count_needs(
                owner_id=user.user_id, status=NeedStatus.FULFILLED
            ),
            "unlocks_received": unlocks,
            "offers_received": offers,
            "total_offers": unlocks + offers,
        }
    return {
        "role": user.role.value,
        "unlocked_needs": db.count_needs(unlocked_by=user.user_id),
        "completed_jobs": user.completed_jobs,
        "total_earnings": db.sum_transactions(
            user.user_id, txn_type=TransactionType.JOB_COMPLETED
        ),
        "credits": user.credits,
    }
