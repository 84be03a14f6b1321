"""
HTTP routes for the marketplace API.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query

from fulfillme import marketplace
from fulfillme.auth import (
    create_access_token,
    get_current_user,
    require_asker,
    require_fulfiller,
)
from fulfillme.config import Settings, get_settings
from fulfillme.db import DbClient, UserRecord
from fulfillme.dependencies import get_db_client
from fulfillme.schemas import (
    AddCreditsRequest,
    AddCreditsResponse,
    AskerStatsResponse,
    AuthResponse,
    ContactResponse,
    FulfillerStatsResponse,
    HealthResponse,
    ListNeedsResponse,
    LoginRequest,
    MyNeedsResponse,
    NeedResponse,
    OfferRequest,
    OfferResponse,
    OwnedNeedResponse,
    PaginationResponse,
    PostNeedRequest,
    RegisterRequest,
    TransactionListResponse,
    TransactionResponse,
    UnlockResponse,
    UserResponse,
)
from fulfillme.types import Category, NeedSort

logger = logging.getLogger(__name__)

router = APIRouter()


def _auth_response(user: UserRecord, settings: Settings) -> AuthResponse:
    return AuthResponse(
        token=create_access_token(user, settings),
        user=UserResponse(**user.as_dict()),
    )


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse(status="ok", message="FulfillME API is running")


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(
    payload: RegisterRequest,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    user = marketplace.register_user(db, payload.model_dump(mode="json"))
    return _auth_response(user, settings)


@router.post("/auth/login", response_model=AuthResponse)
def login(
    payload: LoginRequest,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    user = marketplace.authenticate(db, payload.identifier, payload.password)
    return _auth_response(user, settings)


@router.get("/auth/me", response_model=UserResponse)
def me(user: UserRecord = Depends(get_current_user)):
    return UserResponse(**user.as_dict())


@router.post("/needs", response_model=NeedResponse, status_code=201)
def post_need(
    payload: PostNeedRequest,
    user: UserRecord = Depends(require_asker),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    need = marketplace.post_need(db, user, payload.model_dump(mode="json"), settings)
    return NeedResponse(**need.public_dict())


@router.get("/needs", response_model=ListNeedsResponse)
def list_needs(
    category: Optional[Category] = Query(None),
    location: Optional[str] = Query(None, max_length=120),
    min_budget: Optional[float] = Query(None, ge=0),
    max_budget: Optional[float] = Query(None, ge=0),
    sort: NeedSort = Query(NeedSort.NEWEST),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: DbClient = Depends(get_db_client),
):
    needs, pagination = marketplace.list_active_needs(
        db,
        category=category.value if category else None,
        location=location,
        min_budget=min_budget,
        max_budget=max_budget,
        sort=sort,
        page=page,
        limit=limit,
    )
    return ListNeedsResponse(
        needs=[NeedResponse(**n) for n in needs],
        pagination=PaginationResponse(**pagination),
    )


@router.get("/needs/mine", response_model=MyNeedsResponse)
def my_needs(
    user: UserRecord = Depends(require_asker),
    db: DbClient = Depends(get_db_client),
):
    needs = marketplace.list_my_needs(db, user)
    return MyNeedsResponse(needs=[OwnedNeedResponse(**n.owner_dict()) for n in needs])


@router.get("/needs/{need_id}", response_model=NeedResponse)
def get_need(need_id: str, db: DbClient = Depends(get_db_client)):
    need = marketplace.get_need(db, need_id)
    return NeedResponse(**need.public_dict())


@router.post("/needs/{need_id}/unlock", response_model=UnlockResponse)
def unlock_need(
    need_id: str,
    user: UserRecord = Depends(require_fulfiller),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    result = marketplace.unlock_need(db, need_id, user, settings)
    return UnlockResponse(
        need_id=need_id,
        contact=ContactResponse(**result.contact_dict()),
        credits=result.fulfiller.credits,
        transaction_id=result.transaction.transaction_id,
    )


@router.get("/needs/{need_id}/contact", response_model=ContactResponse)
def need_contact(
    need_id: str,
    user: UserRecord = Depends(require_fulfiller),
    db: DbClient = Depends(get_db_client),
):
    return ContactResponse(**marketplace.get_contact(db, need_id, user))


@router.post(
    "/needs/{need_id}/offers", response_model=OfferResponse, status_code=201
)
def make_offer(
    need_id: str,
    payload: OfferRequest,
    user: UserRecord = Depends(require_fulfiller),
    db: DbClient = Depends(get_db_client),
):
    offer = marketplace.make_offer(db, need_id, user, payload.amount, payload.message)
    return OfferResponse(**offer.as_dict())


@router.post(
    "/needs/{need_id}/offers/{offer_id}/accept", response_model=OwnedNeedResponse
)
def accept_offer(
    need_id: str,
    offer_id: str,
    user: UserRecord = Depends(require_asker),
    db: DbClient = Depends(get_db_client),
):
    need = marketplace.accept_offer(db, need_id, offer_id, user)
    return OwnedNeedResponse(**need.owner_dict())


@router.post("/needs/{need_id}/complete", response_model=TransactionResponse)
def complete_need(
    need_id: str,
    user: UserRecord = Depends(require_asker),
    db: DbClient = Depends(get_db_client),
):
    txn = marketplace.complete_need(db, need_id, user)
    return TransactionResponse(**txn.as_dict())


@router.post("/needs/{need_id}/cancel", response_model=OwnedNeedResponse)
def cancel_need(
    need_id: str,
    user: UserRecord = Depends(require_asker),
    db: DbClient = Depends(get_db_client),
):
    need = marketplace.cancel_need(db, need_id, user)
    return OwnedNeedResponse(**need.owner_dict())


@router.post("/credits", response_model=AddCreditsResponse)
def add_credits(
    payload: AddCreditsRequest,
    user: UserRecord = Depends(require_fulfiller),
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    updated, txn = marketplace.add_credits(
        db, user, payload.amount, payload.payment_code, settings
    )
    return AddCreditsResponse(
        credits=updated.credits,
        credits_added=txn.metadata["credits"],
        transaction_id=txn.transaction_id,
    )


@router.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    limit: int = Query(100, ge=1, le=500),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    txns = marketplace.list_transactions(db, user, limit=limit)
    return TransactionListResponse(
        transactions=[TransactionResponse(**t.as_dict()) for t in txns]
    )


@router.get(
    "/dashboard/stats",
    response_model=Union[AskerStatsResponse, FulfillerStatsResponse],
)
def dashboard_stats(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return marketplace.dashboard_stats(db, user)
