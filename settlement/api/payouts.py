from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from settlement.dependencies import get_current_user
from settlement.models import User, get_db
from settlement.schemas.payouts import (
    PayoutPreferencesResponse,
    PayoutPreferencesUpdate,
    PayoutRequestCreate,
    PayoutRequestResponse,
)
from settlement.services import payouts

router = APIRouter()


@router.get("/preferences", response_model=PayoutPreferencesResponse, summary="Payout preferences")
def get_preferences(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return payouts.get_payout_preferences(db, current_user)


@router.put("/preferences", response_model=PayoutPreferencesResponse, summary="Update payout preferences")
def update_preferences(
    body: PayoutPreferencesUpdate,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return payouts.update_payout_preferences(
        db,
        current_user,
        payout_schedule=body.payout_schedule.value if body.payout_schedule else None,
        minimum_payout_amount=body.minimum_payout_amount,
        preferred_payout_day=body.preferred_payout_day,
        instant_payout_enabled=body.instant_payout_enabled,
    )


@router.get("", response_model=list[PayoutRequestResponse], summary="My payout requests")
def list_payouts(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return payouts.list_payout_requests(db, current_user)


@router.post("", response_model=PayoutRequestResponse, status_code=201, summary="Request a manual payout")
def request_payout(
    body: PayoutRequestCreate,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """
    Pay part of the available processor balance to the connected account.
    A processor failure is recorded on the request and answered with 502.
    A timeout leaves the request pending and is answered with 503.
    """
    return payouts.request_payout(db, current_user, body.amount)
