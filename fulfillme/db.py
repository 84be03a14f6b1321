"""
Record store for users, needs and the transaction ledger.

Two implementations share the ``DbClient`` interface: an in-memory store for
development/tests and a SQLAlchemy-backed store (Postgres in production,
SQLite in tests). Operations that touch more than one record (unlock, credit
purchase, job completion, refund) are all-or-nothing in both.
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Integer,
    String,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from fulfillme.errors import (
    AlreadyUnlocked,
    Conflict,
    InsufficientCredits,
    NotFound,
    ValidationError,
)
from fulfillme.types import (
    NeedSort,
    NeedStatus,
    OfferStatus,
    Role,
    TransactionStatus,
    TransactionType,
)

DAY_SECONDS = 24 * 60 * 60


class DbClient(Protocol):
    """Interface for database access."""

    def create_user(self, user: "UserRecord") -> "UserRecord":
        ...

    def get_user(self, user_id: str) -> Optional["UserRecord"]:
        ...

    def get_user_by_email(self, email: str) -> Optional["UserRecord"]:
        ...

    def get_user_by_phone(self, phone: str) -> Optional["UserRecord"]:
        ...

    def create_need(self, need: "NeedRecord") -> "NeedRecord":
        ...

    def get_need(self, need_id: str) -> Optional["NeedRecord"]:
        ...

    def list_active_needs(self, query: "NeedQuery") -> tuple[list["NeedRecord"], int]:
        ...

    def list_needs_by_owner(self, user_id: str) -> list["NeedRecord"]:
        ...

    def set_need_status(self, need_id: str, status: NeedStatus) -> "NeedRecord":
        ...

    def add_offer(self, need_id: str, offer: "OfferRecord") -> "NeedRecord":
        ...

    def accept_offer(self, need_id: str, offer_id: str) -> "NeedRecord":
        ...

    def unlock_need(
        self, need_id: str, fulfiller_id: str, price: float
    ) -> "UnlockResult":
        ...

    def add_credits(
        self, user_id: str, credits: int, amount_paid: float, payment_code: str
    ) -> tuple["UserRecord", "TransactionRecord"]:
        ...

    def complete_need(self, need_id: str) -> "TransactionRecord":
        ...

    def refund_transaction(self, transaction_id: str) -> "TransactionRecord":
        ...

    def get_transaction(self, transaction_id: str) -> Optional["TransactionRecord"]:
        ...

    def list_transactions(
        self, user_id: str, limit: int = 100
    ) -> list["TransactionRecord"]:
        ...

    def count_needs(
        self,
        *,
        owner_id: Optional[str] = None,
        status: Optional[NeedStatus] = None,
        unlocked_by: Optional[str] = None,
    ) -> int:
        ...

    def count_unlocks_received(self, owner_id: str) -> int:
        ...

    def count_offers_received(self, owner_id: str) -> int:
        ...

    def sum_transactions(
        self,
        user_id: str,
        *,
        txn_type: TransactionType,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> float:
        ...

    def purge_expired_needs(self, now: Optional[float] = None) -> int:
        ...


@dataclass
class UserRecord:
    user_id: str
    email: str
    phone: str
    password_hash: str
    full_name: str
    location: str
    gender: str
    role: Role
    national_id: Optional[str] = None
    categories: list[str] = field(default_factory=list)
    description: Optional[str] = None
    credits: int = 0
    rating: float = 5.0
    total_ratings: int = 0
    completed_jobs: int = 0
    is_verified: bool = False
    profile_photo: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        """Account view for the user themselves. Never includes the hash."""
        return {
            "user_id": self.user_id,
            "email": self.email,
            "phone": self.phone,
            "full_name": self.full_name,
            "location": self.location,
            "gender": self.gender,
            "role": self.role.value,
            "categories": list(self.categories),
            "description": self.description,
            "credits": self.credits,
            "rating": self.rating,
            "total_ratings": self.total_ratings,
            "completed_jobs": self.completed_jobs,
            "is_verified": self.is_verified,
            "profile_photo": self.profile_photo,
            "created_at": self.created_at,
        }

    def contact_dict(self) -> dict:
        return {
            "full_name": self.full_name,
            "phone": self.phone,
            "email": self.email,
            "location": self.location,
            "rating": self.rating,
        }


@dataclass
class OfferRecord:
    fulfiller_id: str
    amount: float
    message: Optional[str] = None
    status: OfferStatus = OfferStatus.PENDING
    offer_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "offer_id": self.offer_id,
            "fulfiller_id": self.fulfiller_id,
            "amount": self.amount,
            "message": self.message,
            "status": self.status.value,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OfferRecord":
        return cls(
            offer_id=data["offer_id"],
            fulfiller_id=data["fulfiller_id"],
            amount=data["amount"],
            message=data.get("message"),
            status=OfferStatus(data.get("status", OfferStatus.PENDING.value)),
            created_at=data.get("created_at", 0.0),
        )


@dataclass
class NeedRecord:
    need_id: str
    user_id: str
    title: str
    description: str
    budget: float
    category: str
    location: str
    subcategory: Optional[str] = None
    timeframe: str = "flexible"
    status: NeedStatus = NeedStatus.ACTIVE
    photo: Optional[str] = None
    contact_methods: list[str] = field(default_factory=list)
    is_urgent: bool = False
    unlocked_by: list[str] = field(default_factory=list)
    offers: list[OfferRecord] = field(default_factory=list)
    selected_fulfiller: Optional[str] = None
    expires_at: float = field(default_factory=lambda: time.time() + 30 * DAY_SECONDS)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def is_expired(self, now: Optional[float] = None) -> bool:
        return self.expires_at <= (now if now is not None else time.time())

    def public_dict(self) -> dict:
        """
        Projection safe for anyone to read: no contact channels, no
        fulfiller lists and nothing identifying the asker.
        """
        return {
            "need_id": self.need_id,
            "title": self.title,
            "description": self.description,
            "budget": self.budget,
            "category": self.category,
            "subcategory": self.subcategory,
            "location": self.location,
            "timeframe": self.timeframe,
            "status": self.status.value,
            "photo": self.photo,
            "is_urgent": self.is_urgent,
            "unlock_count": len(self.unlocked_by),
            "offer_count": len(self.offers),
            "expires_at": self.expires_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def owner_dict(self) -> dict:
        data = self.public_dict()
        data.update(
            {
                "contact_methods": list(self.contact_methods),
                "offers": [offer.as_dict() for offer in self.offers],
                "selected_fulfiller": self.selected_fulfiller,
            }
        )
        return data


@dataclass
class TransactionRecord:
    user_id: str
    amount: float
    type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    need_id: Optional[str] = None
    payment_code: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    transaction_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=lambda: time.time())
    completed_at: Optional[float] = None

    def as_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "user_id": self.user_id,
            "need_id": self.need_id,
            "amount": self.amount,
            "type": self.type.value,
            "status": self.status.value,
            "payment_code": self.payment_code,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


@dataclass
class UnlockResult:
    need: NeedRecord
    asker: UserRecord
    fulfiller: UserRecord
    transaction: TransactionRecord

    def contact_dict(self) -> dict:
        contact = self.asker.contact_dict()
        contact["contact_methods"] = list(self.need.contact_methods)
        return contact


@dataclass
class NeedQuery:
    category: Optional[str] = None
    location: Optional[str] = None
    min_budget: Optional[float] = None
    max_budget: Optional[float] = None
    sort: NeedSort = NeedSort.NEWEST
    page: int = 1
    limit: int = 20
    now: float = field(default_factory=lambda: time.time())

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


def _completed(
    user_id: str,
    amount: float,
    txn_type: TransactionType,
    **kwargs,
) -> TransactionRecord:
    now = time.time()
    return TransactionRecord(
        user_id=user_id,
        amount=amount,
        type=txn_type,
        status=TransactionStatus.COMPLETED,
        created_at=now,
        completed_at=now,
        **kwargs,
    )


def _refund_credit_delta(original: TransactionRecord) -> int:
    """Credits to add back to the user when ``original`` is refunded."""
    if original.status != TransactionStatus.COMPLETED:
        raise ValidationError("Only completed transactions can be refunded")
    credits = int(original.metadata.get("credits", 0))
    if original.type == TransactionType.UNLOCK:
        return credits or 1
    if original.type == TransactionType.CREDIT_PURCHASE:
        return -credits
    raise ValidationError(f"{original.type.value} transactions cannot be refunded")


def _accepted_offer(need: NeedRecord) -> Optional[OfferRecord]:
    for offer in need.offers:
        if offer.status == OfferStatus.ACCEPTED:
            return offer
    return None


class InMemoryDbClient:
    """Simple in-memory store for development and tests."""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.needs: Dict[str, NeedRecord] = {}
        self.transactions: Dict[str, TransactionRecord] = {}
        self._lock = threading.RLock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.users.clear()
            self.needs.clear()
            self.transactions.clear()

    def _user(self, user_id: str) -> UserRecord:
        user = self.users.get(user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def _need(self, need_id: str) -> NeedRecord:
        need = self.needs.get(need_id)
        if not need or need.is_expired():
            raise NotFound("Need not found")
        return need

    def create_user(self, user: UserRecord) -> UserRecord:
        with self._lock:
            for existing in self.users.values():
                if existing.email == user.email or existing.phone == user.phone:
                    raise Conflict("User already exists")
            self.users[user.user_id] = copy.deepcopy(user)
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        user = self.users.get(user_id)
        return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.email == email:
                return copy.deepcopy(user)
        return None

    def get_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.phone == phone:
                return copy.deepcopy(user)
        return None

    def create_need(self, need: NeedRecord) -> NeedRecord:
        with self._lock:
            self.needs[need.need_id] = copy.deepcopy(need)
            return copy.deepcopy(need)

    def get_need(self, need_id: str) -> Optional[NeedRecord]:
        need = self.needs.get(need_id)
        if not need or need.is_expired():
            return None
        return copy.deepcopy(need)

    def list_active_needs(self, query: NeedQuery) -> tuple[list[NeedRecord], int]:
        location = query.location.lower() if query.location else None
        matches = []
        for need in self.needs.values():
            if need.status != NeedStatus.ACTIVE or need.is_expired(query.now):
                continue
            if query.category and need.category != query.category:
                continue
            if location and location not in need.location.lower():
                continue
            if query.min_budget is not None and need.budget < query.min_budget:
                continue
            if query.max_budget is not None and need.budget > query.max_budget:
                continue
            matches.append(need)

        if query.sort == NeedSort.BUDGET_HIGH:
            matches.sort(key=lambda n: (-n.budget, -n.created_at))
        elif query.sort == NeedSort.BUDGET_LOW:
            matches.sort(key=lambda n: (n.budget, -n.created_at))
        elif query.sort == NeedSort.URGENT:
            matches.sort(key=lambda n: (not n.is_urgent, -n.created_at))
        else:
            matches.sort(key=lambda n: -n.created_at)

        page = matches[query.offset : query.offset + query.limit]
        return [copy.deepcopy(n) for n in page], len(matches)

    def list_needs_by_owner(self, user_id: str) -> list[NeedRecord]:
        owned = [
            n for n in self.needs.values() if n.user_id == user_id and not n.is_expired()
        ]
        owned.sort(key=lambda n: -n.created_at)
        return [copy.deepcopy(n) for n in owned]

    def set_need_status(self, need_id: str, status: NeedStatus) -> NeedRecord:
        with self._lock:
            need = self._need(need_id)
            need.status = status
            need.updated_at = time.time()
            return copy.deepcopy(need)

    def add_offer(self, need_id: str, offer: OfferRecord) -> NeedRecord:
        with self._lock:
            need = self._need(need_id)
            if need.status != NeedStatus.ACTIVE:
                raise ValidationError("Need is no longer active")
            need.offers.append(copy.deepcopy(offer))
            need.updated_at = time.time()
            return copy.deepcopy(need)

    def accept_offer(self, need_id: str, offer_id: str) -> NeedRecord:
        with self._lock:
            need = self._need(need_id)
            if need.status != NeedStatus.ACTIVE:
                raise ValidationError("Need is no longer active")
            target = next((o for o in need.offers if o.offer_id == offer_id), None)
            if not target:
                raise NotFound("Offer not found")
            if target.status != OfferStatus.PENDING:
                raise ValidationError("Offer is not pending")
            for offer in need.offers:
                if offer.offer_id == offer_id:
                    offer.status = OfferStatus.ACCEPTED
                elif offer.status == OfferStatus.PENDING:
                    offer.status = OfferStatus.REJECTED
            need.selected_fulfiller = target.fulfiller_id
            need.updated_at = time.time()
            return copy.deepcopy(need)

    def unlock_need(self, need_id: str, fulfiller_id: str, price: float) -> UnlockResult:
        with self._lock:
            need = self._need(need_id)
            fulfiller = self._user(fulfiller_id)
            if fulfiller_id in need.unlocked_by:
                raise AlreadyUnlocked("You have already unlocked this need")
            if fulfiller.credits < 1:
                raise InsufficientCredits("Insufficient credits")
            asker = self._user(need.user_id)

            txn = _completed(
                fulfiller_id,
                price,
                TransactionType.UNLOCK,
                need_id=need_id,
                metadata={"credits": 1},
            )
            now = time.time()
            fulfiller.credits -= 1
            fulfiller.updated_at = now
            need.unlocked_by.append(fulfiller_id)
            need.updated_at = now
            self.transactions[txn.transaction_id] = txn
            return UnlockResult(
                need=copy.deepcopy(need),
                asker=copy.deepcopy(asker),
                fulfiller=copy.deepcopy(fulfiller),
                transaction=copy.deepcopy(txn),
            )

    def add_credits(
        self, user_id: str, credits: int, amount_paid: float, payment_code: str
    ) -> tuple[UserRecord, TransactionRecord]:
        with self._lock:
            user = self._user(user_id)
            for existing in self.transactions.values():
                if existing.payment_code == payment_code:
                    raise Conflict("Payment code has already been used")
            txn = _completed(
                user_id,
                amount_paid,
                TransactionType.CREDIT_PURCHASE,
                payment_code=payment_code,
                metadata={"credits": credits},
            )
            user.credits += credits
            user.updated_at = time.time()
            self.transactions[txn.transaction_id] = txn
            return copy.deepcopy(user), copy.deepcopy(txn)

    def complete_need(self, need_id: str) -> TransactionRecord:
        with self._lock:
            need = self._need(need_id)
            if need.status != NeedStatus.ACTIVE:
                raise ValidationError("Need is no longer active")
            offer = _accepted_offer(need)
            if not need.selected_fulfiller or not offer:
                raise ValidationError("Accept an offer before completing the need")
            fulfiller = self._user(need.selected_fulfiller)
            txn = _completed(
                fulfiller.user_id,
                offer.amount,
                TransactionType.JOB_COMPLETED,
                need_id=need_id,
                metadata={"offer_id": offer.offer_id},
            )
            now = time.time()
            need.status = NeedStatus.FULFILLED
            need.updated_at = now
            fulfiller.completed_jobs += 1
            fulfiller.updated_at = now
            self.transactions[txn.transaction_id] = txn
            return copy.deepcopy(txn)

    def refund_transaction(self, transaction_id: str) -> TransactionRecord:
        with self._lock:
            original = self.transactions.get(transaction_id)
            if not original:
                raise NotFound("Transaction not found")
            delta = _refund_credit_delta(original)
            user = self._user(original.user_id)
            if user.credits + delta < 0:
                raise InsufficientCredits("Purchased credits have already been spent")
            refund = _completed(
                original.user_id,
                original.amount,
                TransactionType.REFUND,
                need_id=original.need_id,
                metadata={"refunded_transaction_id": transaction_id, "credits": delta},
            )
            user.credits += delta
            user.updated_at = time.time()
            original.status = TransactionStatus.REFUNDED
            self.transactions[refund.transaction_id] = refund
            return copy.deepcopy(refund)

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        txn = self.transactions.get(transaction_id)
        return copy.deepcopy(txn) if txn else None

    def list_transactions(self, user_id: str, limit: int = 100) -> list[TransactionRecord]:
        items = [t for t in self.transactions.values() if t.user_id == user_id]
        items.sort(key=lambda t: -t.created_at)
        return [copy.deepcopy(t) for t in items[:limit]]

    def count_needs(
        self,
        *,
        owner_id: Optional[str] = None,
        status: Optional[NeedStatus] = None,
        unlocked_by: Optional[str] = None,
    ) -> int:
        count = 0
        for need in self.needs.values():
            if owner_id and need.user_id != owner_id:
                continue
            if status and (need.status != status or need.is_expired()):
                continue
            if unlocked_by and unlocked_by not in need.unlocked_by:
                continue
            count += 1
        return count

    def count_unlocks_received(self, owner_id: str) -> int:
        return sum(
            len(n.unlocked_by) for n in self.needs.values() if n.user_id == owner_id
        )

    def count_offers_received(self, owner_id: str) -> int:
        return sum(len(n.offers) for n in self.needs.values() if n.user_id == owner_id)

    def sum_transactions(
        self,
        user_id: str,
        *,
        txn_type: TransactionType,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> float:
        return float(
            sum(
                t.amount
                for t in self.transactions.values()
                if t.user_id == user_id and t.type == txn_type and t.status == status
            )
        )

    def purge_expired_needs(self, now: Optional[float] = None) -> int:
        now = now if now is not None else time.time()
        with self._lock:
            expired = [nid for nid, n in self.needs.items() if n.is_expired(now)]
            for need_id in expired:
                del self.needs[need_id]
            return len(expired)


class SqlDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("database_url is required for SqlDbClient")
        engine_kwargs = {"future": True, "pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            engine_kwargs["pool_recycle"] = 1800
        self.engine = create_engine(database_url, **engine_kwargs)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    # -- row conversion -------------------------------------------------

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            user_id=row.user_id,
            email=row.email,
            phone=row.phone,
            password_hash=row.password_hash,
            full_name=row.full_name,
            location=row.location,
            gender=row.gender,
            role=Role(row.role),
            national_id=row.national_id,
            categories=list(row.categories or []),
            description=row.description,
            credits=row.credits,
            rating=row.rating,
            total_ratings=row.total_ratings,
            completed_jobs=row.completed_jobs,
            is_verified=row.is_verified,
            profile_photo=row.profile_photo,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_need_record(self, row: "NeedRow", unlocked_by: list[str]) -> NeedRecord:
        return NeedRecord(
            need_id=row.need_id,
            user_id=row.user_id,
            title=row.title,
            description=row.description,
            budget=row.budget,
            category=row.category,
            location=row.location,
            subcategory=row.subcategory,
            timeframe=row.timeframe,
            status=NeedStatus(row.status),
            photo=row.photo,
            contact_methods=list(row.contact_methods or []),
            is_urgent=row.is_urgent,
            unlocked_by=unlocked_by,
            offers=[OfferRecord.from_dict(o) for o in row.offers or []],
            selected_fulfiller=row.selected_fulfiller,
            expires_at=row.expires_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_transaction_record(self, row: "TransactionRow") -> TransactionRecord:
        return TransactionRecord(
            transaction_id=row.transaction_id,
            user_id=row.user_id,
            need_id=row.need_id,
            amount=row.amount,
            type=TransactionType(row.type),
            status=TransactionStatus(row.status),
            payment_code=row.payment_code,
            metadata=dict(row.details or {}),
            created_at=row.created_at,
            completed_at=row.completed_at,
        )

    def _transaction_row(self, record: TransactionRecord) -> "TransactionRow":
        return TransactionRow(
            transaction_id=record.transaction_id,
            user_id=record.user_id,
            need_id=record.need_id,
            amount=record.amount,
            type=record.type.value,
            status=record.status.value,
            payment_code=record.payment_code,
            details=dict(record.metadata),
            created_at=record.created_at,
            completed_at=record.completed_at,
        )

    def _unlocks_for(self, session: Session, need_ids: list[str]) -> dict[str, list[str]]:
        unlocks: dict[str, list[str]] = {need_id: [] for need_id in need_ids}
        if not need_ids:
            return unlocks
        stmt = (
            select(NeedUnlockRow)
            .where(NeedUnlockRow.need_id.in_(need_ids))
            .order_by(NeedUnlockRow.created_at.asc())
        )
        for row in session.execute(stmt).scalars():
            unlocks[row.need_id].append(row.fulfiller_id)
        return unlocks

    def _need_records(self, session: Session, rows: list["NeedRow"]) -> list[NeedRecord]:
        unlocks = self._unlocks_for(session, [row.need_id for row in rows])
        return [self._to_need_record(row, unlocks[row.need_id]) for row in rows]

    def _live_need(
        self, session: Session, need_id: str, *, for_update: bool = False
    ) -> "NeedRow":
        row = session.get(NeedRow, need_id, with_for_update=for_update)
        if not row or row.expires_at <= time.time():
            raise NotFound("Need not found")
        return row

    def _locked_user(self, session: Session, user_id: str) -> "UserRow":
        row = session.get(UserRow, user_id, with_for_update=True)
        if not row:
            raise NotFound("User not found")
        return row

    # -- users ----------------------------------------------------------

    def create_user(self, user: UserRecord) -> UserRecord:
        try:
            with self.Session.begin() as session:
                existing = session.execute(
                    select(UserRow.user_id).where(
                        (UserRow.email == user.email) | (UserRow.phone == user.phone)
                    )
                ).first()
                if existing:
                    raise Conflict("User already exists")
                row = UserRow(
                    user_id=user.user_id,
                    email=user.email,
                    phone=user.phone,
                    password_hash=user.password_hash,
                    full_name=user.full_name,
                    location=user.location,
                    gender=user.gender,
                    role=user.role.value,
                    national_id=user.national_id,
                    categories=list(user.categories),
                    description=user.description,
                    credits=user.credits,
                    rating=user.rating,
                    total_ratings=user.total_ratings,
                    completed_jobs=user.completed_jobs,
                    is_verified=user.is_verified,
                    profile_photo=user.profile_photo,
                    created_at=user.created_at,
                    updated_at=user.updated_at,
                )
                session.add(row)
                session.flush()
                return self._to_user_record(row)
        except IntegrityError as exc:
            raise Conflict("User already exists") from exc

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.email == email)
            ).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def get_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.phone == phone)
            ).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    # -- needs ----------------------------------------------------------

    def create_need(self, need: NeedRecord) -> NeedRecord:
        with self.Session() as session:
            row = NeedRow(
                need_id=need.need_id,
                user_id=need.user_id,
                title=need.title,
                description=need.description,
                budget=need.budget,
                category=need.category,
                subcategory=need.subcategory,
                location=need.location,
                timeframe=need.timeframe,
                status=need.status.value,
                photo=need.photo,
                contact_methods=list(need.contact_methods),
                is_urgent=need.is_urgent,
                offers=[o.as_dict() for o in need.offers],
                selected_fulfiller=need.selected_fulfiller,
                expires_at=need.expires_at,
                created_at=need.created_at,
                updated_at=need.updated_at,
            )
            session.add(row)
            session.commit()
            return self._to_need_record(row, [])

    def get_need(self, need_id: str) -> Optional[NeedRecord]:
        with self.Session() as session:
            row = session.get(NeedRow, need_id)
            if not row or row.expires_at <= time.time():
                return None
            return self._need_records(session, [row])[0]

    def list_active_needs(self, query: NeedQuery) -> tuple[list[NeedRecord], int]:
        stmt = select(NeedRow).where(
            NeedRow.status == NeedStatus.ACTIVE.value,
            NeedRow.expires_at > query.now,
        )
        if query.category:
            stmt = stmt.where(NeedRow.category == query.category)
        if query.location:
            stmt = stmt.where(
                func.lower(NeedRow.location, type_=String).contains(
                    query.location.lower(), autoescape=True
                )
            )
        if query.min_budget is not None:
            stmt = stmt.where(NeedRow.budget >= query.min_budget)
        if query.max_budget is not None:
            stmt = stmt.where(NeedRow.budget <= query.max_budget)

        if query.sort == NeedSort.BUDGET_HIGH:
            order = (NeedRow.budget.desc(), NeedRow.created_at.desc())
        elif query.sort == NeedSort.BUDGET_LOW:
            order = (NeedRow.budget.asc(), NeedRow.created_at.desc())
        elif query.sort == NeedSort.URGENT:
            order = (NeedRow.is_urgent.desc(), NeedRow.created_at.desc())
        else:
            order = (NeedRow.created_at.desc(),)

        with self.Session() as session:
            total = session.execute(
                select(func.count()).select_from(stmt.subquery())
            ).scalar_one()
            rows = (
                session.execute(
                    stmt.order_by(*order).offset(query.offset).limit(query.limit)
                )
                .scalars()
                .all()
            )
            return self._need_records(session, list(rows)), total

    def list_needs_by_owner(self, user_id: str) -> list[NeedRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(NeedRow)
                    .where(NeedRow.user_id == user_id, NeedRow.expires_at > time.time())
                    .order_by(NeedRow.created_at.desc())
                )
                .scalars()
                .all()
            )
            return self._need_records(session, list(rows))

    def set_need_status(self, need_id: str, status: NeedStatus) -> NeedRecord:
        with self.Session.begin() as session:
            row = self._live_need(session, need_id, for_update=True)
            row.status = status.value
            row.updated_at = time.time()
            session.flush()
            return self._need_records(session, [row])[0]

    def add_offer(self, need_id: str, offer: OfferRecord) -> NeedRecord:
        with self.Session.begin() as session:
            row = self._live_need(session, need_id, for_update=True)
            if row.status != NeedStatus.ACTIVE.value:
                raise ValidationError("Need is no longer active")
            row.offers = list(row.offers or []) + [offer.as_dict()]
            row.updated_at = time.time()
            session.flush()
            return self._need_records(session, [row])[0]

    def accept_offer(self, need_id: str, offer_id: str) -> NeedRecord:
        with self.Session.begin() as session:
            row = self._live_need(session, need_id, for_update=True)
            if row.status != NeedStatus.ACTIVE.value:
                raise ValidationError("Need is no longer active")
            offers = [OfferRecord.from_dict(o) for o in row.offers or []]
            target = next((o for o in offers if o.offer_id == offer_id), None)
            if not target:
                raise NotFound("Offer not found")
            if target.status != OfferStatus.PENDING:
                raise ValidationError("Offer is not pending")
            for offer in offers:
                if offer.offer_id == offer_id:
                    offer.status = OfferStatus.ACCEPTED
                elif offer.status == OfferStatus.PENDING:
                    offer.status = OfferStatus.REJECTED
            row.offers = [o.as_dict() for o in offers]
            row.selected_fulfiller = target.fulfiller_id
            row.updated_at = time.time()
            session.flush()
            return self._need_records(session, [row])[0]

    # -- ledger operations ----------------------------------------------

    def unlock_need(self, need_id: str, fulfiller_id: str, price: float) -> UnlockResult:
        try:
            with self.Session.begin() as session:
                # Lock the fulfiller first so concurrent unlocks by the same
                # account serialise on the credit balance.
                fulfiller = self._locked_user(session, fulfiller_id)
                need = self._live_need(session, need_id)
                if session.get(NeedUnlockRow, (need_id, fulfiller_id)):
                    raise AlreadyUnlocked("You have already unlocked this need")
                if fulfiller.credits < 1:
                    raise InsufficientCredits("Insufficient credits")
                asker = session.get(UserRow, need.user_id)
                if not asker:
                    raise NotFound("Need owner not found")

                now = time.time()
                txn = _completed(
                    fulfiller_id,
                    price,
                    TransactionType.UNLOCK,
                    need_id=need_id,
                    metadata={"credits": 1},
                )
                fulfiller.credits -= 1
                fulfiller.updated_at = now
                need.updated_at = now
                session.add(
                    NeedUnlockRow(need_id=need_id, fulfiller_id=fulfiller_id, created_at=now)
                )
                session.add(self._transaction_row(txn))
                session.flush()
                return UnlockResult(
                    need=self._need_records(session, [need])[0],
                    asker=self._to_user_record(asker),
                    fulfiller=self._to_user_record(fulfiller),
                    transaction=txn,
                )
        except IntegrityError as exc:
            raise AlreadyUnlocked("You have already unlocked this need") from exc

    def add_credits(
        self, user_id: str, credits: int, amount_paid: float, payment_code: str
    ) -> tuple[UserRecord, TransactionRecord]:
        try:
            with self.Session.begin() as session:
                user = self._locked_user(session, user_id)
                used = session.execute(
                    select(TransactionRow.transaction_id).where(
                        TransactionRow.payment_code == payment_code
                    )
                ).first()
                if used:
                    raise Conflict("Payment code has already been used")
                txn = _completed(
                    user_id,
                    amount_paid,
                    TransactionType.CREDIT_PURCHASE,
                    payment_code=payment_code,
                    metadata={"credits": credits},
                )
                user.credits += credits
                user.updated_at = time.time()
                session.add(self._transaction_row(txn))
                session.flush()
                return self._to_user_record(user), txn
        except IntegrityError as exc:
            raise Conflict("Payment code has already been used") from exc

    def complete_need(self, need_id: str) -> TransactionRecord:
        with self.Session.begin() as session:
            row = self._live_need(session, need_id, for_update=True)
            if row.status != NeedStatus.ACTIVE.value:
                raise ValidationError("Need is no longer active")
            need = self._to_need_record(row, [])
            offer = _accepted_offer(need)
            if not need.selected_fulfiller or not offer:
                raise ValidationError("Accept an offer before completing the need")
            fulfiller = self._locked_user(session, need.selected_fulfiller)

            now = time.time()
            txn = _completed(
                fulfiller.user_id,
                offer.amount,
                TransactionType.JOB_COMPLETED,
                need_id=need_id,
                metadata={"offer_id": offer.offer_id},
            )
            row.status = NeedStatus.FULFILLED.value
            row.updated_at = now
            fulfiller.completed_jobs += 1
            fulfiller.updated_at = now
            session.add(self._transaction_row(txn))
            return txn

    def refund_transaction(self, transaction_id: str) -> TransactionRecord:
        with self.Session.begin() as session:
            original_row = session.get(
                TransactionRow, transaction_id, with_for_update=True
            )
            if not original_row:
                raise NotFound("Transaction not found")
            original = self._to_transaction_record(original_row)
            delta = _refund_credit_delta(original)
            user = self._locked_user(session, original.user_id)
            if user.credits + delta < 0:
                raise InsufficientCredits("Purchased credits have already been spent")

            refund = _completed(
                original.user_id,
                original.amount,
                TransactionType.REFUND,
                need_id=original.need_id,
                metadata={"refunded_transaction_id": transaction_id, "credits": delta},
            )
            user.credits += delta
            user.updated_at = time.time()
            original_row.status = TransactionStatus.REFUNDED.value
            session.add(self._transaction_row(refund))
            return refund

    def get_transaction(self, transaction_id: str) -> Optional[TransactionRecord]:
        with self.Session() as session:
            row = session.get(TransactionRow, transaction_id)
            return self._to_transaction_record(row) if row else None

    def list_transactions(self, user_id: str, limit: int = 100) -> list[TransactionRecord]:
        with self.Session() as session:
            rows = (
                session.execute(
                    select(TransactionRow)
                    .where(TransactionRow.user_id == user_id)
                    .order_by(TransactionRow.created_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )
            return [self._to_transaction_record(row) for row in rows]

    # -- aggregation ----------------------------------------------------

    def count_needs(
        self,
        *,
        owner_id: Optional[str] = None,
        status: Optional[NeedStatus] = None,
        unlocked_by: Optional[str] = None,
    ) -> int:
        stmt = select(func.count(NeedRow.need_id)).select_from(NeedRow)
        if owner_id:
            stmt = stmt.where(NeedRow.user_id == owner_id)
        if status:
            stmt = stmt.where(
                NeedRow.status == status.value, NeedRow.expires_at > time.time()
            )
        if unlocked_by:
            stmt = stmt.join(
                NeedUnlockRow, NeedUnlockRow.need_id == NeedRow.need_id
            ).where(NeedUnlockRow.fulfiller_id == unlocked_by)
        with self.Session() as session:
            return session.execute(stmt).scalar_one()

    def count_unlocks_received(self, owner_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(NeedUnlockRow)
            .join(NeedRow, NeedUnlockRow.need_id == NeedRow.need_id)
            .where(NeedRow.user_id == owner_id)
        )
        with self.Session() as session:
            return session.execute(stmt).scalar_one()

    def count_offers_received(self, owner_id: str) -> int:
        with self.Session() as session:
            offers = session.execute(
                select(NeedRow.offers).where(NeedRow.user_id == owner_id)
            ).scalars()
            return sum(len(o or []) for o in offers)

    def sum_transactions(
        self,
        user_id: str,
        *,
        txn_type: TransactionType,
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> float:
        stmt = select(func.coalesce(func.sum(TransactionRow.amount), 0.0)).where(
            TransactionRow.user_id == user_id,
            TransactionRow.type == txn_type.value,
            TransactionRow.status == status.value,
        )
        with self.Session() as session:
            return float(session.execute(stmt).scalar_one())

    def purge_expired_needs(self, now: Optional[float] = None) -> int:
        now = now if now is not None else time.time()
        with self.Session.begin() as session:
            expired = select(NeedRow.need_id).where(NeedRow.expires_at <= now)
            session.execute(
                delete(NeedUnlockRow).where(NeedUnlockRow.need_id.in_(expired))
            )
            result = session.execute(delete(NeedRow).where(NeedRow.expires_at <= now))
            return result.rowcount or 0


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    user_id = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True)
    phone = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=False)
    full_name = Column(String, nullable=False)
    location = Column(String, nullable=False)
    gender = Column(String, nullable=False)
    role = Column(String, nullable=False, index=True)
    national_id = Column(String, nullable=True)
    categories = Column(JSON, nullable=False)
    description = Column(String, nullable=True)
    credits = Column(Integer, nullable=False, default=0)
    rating = Column(Float, nullable=False, default=5.0)
    total_ratings = Column(Integer, nullable=False, default=0)
    completed_jobs = Column(Integer, nullable=False, default=0)
    is_verified = Column(Boolean, nullable=False, default=False)
    profile_photo = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class NeedRow(Base):
    __tablename__ = "needs"

    need_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, nullable=False)
    budget = Column(Float, nullable=False)
    category = Column(String, nullable=False, index=True)
    subcategory = Column(String, nullable=True)
    location = Column(String, nullable=False)
    timeframe = Column(String, nullable=False, default="flexible")
    status = Column(String, nullable=False, index=True)
    photo = Column(String, nullable=True)
    contact_methods = Column(JSON, nullable=False)
    is_urgent = Column(Boolean, nullable=False, default=False)
    offers = Column(JSON, nullable=False)
    selected_fulfiller = Column(String, nullable=True)
    expires_at = Column(Float, nullable=False, index=True)
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)


class NeedUnlockRow(Base):
    __tablename__ = "need_unlocks"

    need_id = Column(String, primary_key=True)
    fulfiller_id = Column(String, primary_key=True, index=True)
    created_at = Column(Float, nullable=False)


class TransactionRow(Base):
    __tablename__ = "transactions"

    transaction_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    need_id = Column(String, nullable=True, index=True)
    amount = Column(Float, nullable=False)
    type = Column(String, nullable=False)
    status = Column(String, nullable=False)
    payment_code = Column(String, nullable=True, unique=True)
    details = Column("metadata", JSON, nullable=False)
    created_at = Column(Float, nullable=False)
    completed_at = Column(Float, nullable=True)
