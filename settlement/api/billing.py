from typing import Annotated

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from settlement.dependencies import get_current_user
from settlement.models import User, get_db
from settlement.models.order import OrderType
from settlement.models.user import FeeTier
from settlement.schemas.billing import (
    BalanceResponse,
    BalanceTransactionResponse,
    ConversionResponse,
    CurrencyPreference,
    FailedPaymentResponse,
    FeeQuoteResponse,
    LedgerResultResponse,
    RetryRequest,
    RetryResultResponse,
    SavedPaymentMethodResponse,
    SavePaymentMethodRequest,
    SupportedCurrency,
    TopUpConfirmRequest,
    TopUpIntentResponse,
    TopUpRequest,
)
from settlement.services import currency, fees, ledger, payment_methods, retries

router = APIRouter()


@router.get("/fees/quote", response_model=FeeQuoteResponse, summary="Quote the platform fee")
def fee_quote(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    amount: Annotated[int, Query(gt=0)],
    order_type: Annotated[OrderType | None, Query()] = None,
    fee_tier: Annotated[FeeTier | None, Query()] = None,
):
    """Fee and net payout for a gross amount. Defaults to the caller's own fee tier."""
    breakdown = fees.quote_fee(
        db,
        amount,
        fee_tier.value if fee_tier else current_user.fee_tier,
        order_type.value if order_type else None,
    )
    return FeeQuoteResponse(
        gross_amount=breakdown.gross_amount,
        fee_percent=breakdown.fee_percent,
        fee_amount=breakdown.fee_amount,
        net_amount=breakdown.net_amount,
    )


@router.get("/balance", response_model=BalanceResponse, summary="Account balance")
def balance(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    account = ledger.get_balance(db, current_user)
    return BalanceResponse(
        balance_amount=account.balance_amount,
        currency=account.currency,
        last_topped_up_at=account.last_topped_up_at,
    )


@router.get(
    "/balance/transactions",
    response_model=list[BalanceTransactionResponse],
    summary="Balance history, newest first",
)
def balance_transactions(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
):
    return ledger.list_balance_transactions(db, current_user, limit=limit)


@router.post("/balance/top-up", response_model=TopUpIntentResponse, summary="Start a balance top-up")
def top_up(
    body: TopUpRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    intent = ledger.create_top_up_intent(db, current_user, body.amount, body.payment_method_id)
    return TopUpIntentResponse(
        payment_intent_id=intent.payment_intent_id,
        client_secret=intent.client_secret,
        amount=intent.amount,
        currency=intent.currency,
    )


@router.post(
    "/balance/top-up/confirm",
    response_model=LedgerResultResponse,
    summary="Credit a completed top-up",
)
def confirm_top_up(
    body: TopUpConfirmRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    """Safe to repeat: a top-up is credited once per payment intent."""
    result = ledger.confirm_top_up(db, body.payment_intent_id, current_user)
    return LedgerResultResponse(
        success=result.success,
        new_balance=result.new_balance,
        error_message=result.error_message,
    )


@router.get(
    "/failed-payments",
    response_model=list[FailedPaymentResponse],
    summary="Failed payments that can still be retried",
)
def failed_payments(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return retries.list_failed_payments(db, current_user)


@router.post(
    "/failed-payments/{failed_payment_id}/retry",
    response_model=RetryResultResponse,
    summary="Retry a failed payment with a card",
)
def retry_failed_payment(
    failed_payment_id: int,
    body: RetryRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    result = retries.retry_failed_payment(db, current_user, failed_payment_id, body.payment_method_id)
    return RetryResultResponse(success=result.success, error=result.error)


@router.post(
    "/failed-payments/{failed_payment_id}/cancel",
    response_model=FailedPaymentResponse,
    summary="Stop retrying a failed payment",
)
def cancel_failed_payment(
    failed_payment_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return retries.cancel_failed_payment(db, current_user, failed_payment_id)


@router.get(
    "/payment-methods",
    response_model=list[SavedPaymentMethodResponse],
    summary="Saved cards",
)
def list_payment_methods(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return payment_methods.list_payment_methods(db, current_user)


@router.post(
    "/payment-methods",
    response_model=SavedPaymentMethodResponse,
    status_code=201,
    summary="Save a card",
)
def save_payment_method(
    body: SavePaymentMethodRequest,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return payment_methods.save_payment_method(
        db,
        current_user,
        body.payment_method_id,
        set_as_default=body.set_as_default,
    )


@router.post(
    "/payment-methods/{method_id}/default",
    response_model=SavedPaymentMethodResponse,
    summary="Make a saved card the default",
)
def set_default_payment_method(
    method_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return payment_methods.set_default_payment_method(db, current_user, method_id)


@router.delete("/payment-methods/{method_id}", status_code=204, summary="Remove a saved card")
def delete_payment_method(
    method_id: int,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    payment_methods.delete_payment_method(db, current_user, method_id)
    return Response(status_code=204)


@router.get("/currency", response_model=CurrencyPreference, summary="Preferred display currency")
def get_currency(current_user: Annotated[User, Depends(get_current_user)]):
    return CurrencyPreference(currency=currency.get_preferred_currency(current_user))


@router.put("/currency", response_model=CurrencyPreference, summary="Set preferred display currency")
def update_currency(
    body: CurrencyPreference,
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
):
    return CurrencyPreference(currency=currency.update_preferred_currency(db, current_user, body.currency.value))


@router.get("/currency/convert", response_model=ConversionResponse, summary="Convert between currencies")
def convert(
    current_user: Annotated[User, Depends(get_current_user)],
    db: Annotated[Session, Depends(get_db)],
    amount: Annotated[int, Query(ge=0)],
    from_currency: Annotated[SupportedCurrency, Query(alias="from")],
    to_currency: Annotated[SupportedCurrency, Query(alias="to")],
):
    conversion = currency.convert_currency(db, amount, from_currency.value, to_currency.value)
    return ConversionResponse(
        amount=amount,
        from_currency=from_currency,
        to_currency=to_currency,
        converted_amount=conversion.amount,
        rate=conversion.rate,
    )
