"""
Subscription API routes.

Surface:
- GET  /api/subscription/plans: Plan catalog (public)
- POST /api/subscription/create-order: Start checkout
- POST /api/subscription/verify-payment: Client checkout callback
- POST /api/subscription/verify-by-order: Server-side check by order id
- POST /api/subscription/webhook: Razorpay webhooks (public, signed)
- GET  /api/subscription/status: Current subscription
- POST /api/subscription/check-payment-status: One ledger entry + subscription
- GET  /api/subscription/history: Recent ledger entries
- POST /api/subscription/cancel: Cancel active subscription

Errors are AppError subclasses rendered by the global handlers.
"""
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

from invoiz.core.auth import get_current_user_id
from invoiz.features.billing import service as billing
from invoiz.features.billing.plans import list_plans, format_plan
from invoiz.features.subscriptions.service import get_subscription_status, cancel_subscription


router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class CreateOrderRequest(BaseModel):
    plan_id: str = Field(..., min_length=1)


class VerifyPaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: Optional[str] = None
    # Informational; the plan recorded on the order wins
    plan_id: Optional[str] = None


class VerifyByOrderRequest(BaseModel):
    order_id: str = Field(..., min_length=1)


class PaymentStatusRequest(BaseModel):
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None


@router.get("/plans")
def get_plans():
    return {"plans": [format_plan(p) for p in list_plans()]}


@router.post("/create-order")
def create_order(body: CreateOrderRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create a gateway order for a plan.

    Errors:
        404: Unknown plan
        409: Active subscription already exists
        503: Gateway unreachable or billing disabled
    """
    return billing.create_order(user_id, body.plan_id)


@router.post("/verify-payment")
def verify_payment(
    body: VerifyPaymentRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
):
    """
    Verify the checkout callback and activate the subscription.

    Safe to retry: a completed order returns the existing subscription.

    Errors:
        400: Verification failed (`retryable` tells whether to try again)
        404: Order not found for this user
        409: Order already failed
        503: Gateway unreachable
    """
    return billing.verify_client_payment(
        user_id,
        body.order_id,
        payment_id=body.payment_id,
        signature=body.signature,
        plan_id=body.plan_id,
        schedule=background_tasks.add_task,
    )


@router.post("/verify-by-order")
def verify_by_order(
    body: VerifyByOrderRequest,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
):
    """Verify using only the order id (gateway lists the order's payments)."""
    return billing.verify_client_payment(user_id, body.order_id, schedule=background_tasks.add_task)


@router.post("/webhook")
async def handle_webhook(request: Request, background_tasks: BackgroundTasks):
    """
    Handle Razorpay webhook events.

    Raw body is required for signature verification. Business no-ops
    (unknown order, already completed, unrelated event) are 200s.

    Errors:
        400: Invalid signature or payload
        503: Billing disabled or gateway unreachable
    """
    body = await request.body()
    headers = dict(request.headers)
    return await run_in_threadpool(
        billing.process_webhook,
        headers,
        body,
        schedule=background_tasks.add_task,
    )


@router.get("/status")
def get_status(user_id: str = Depends(get_current_user_id)):
    return get_subscription_status(user_id)


@router.post("/check-payment-status")
def check_payment_status(body: PaymentStatusRequest, user_id: str = Depends(get_current_user_id)):
    return billing.check_payment_status(user_id, transaction_id=body.transaction_id, order_id=body.order_id)


@router.get("/history")
def get_history(
    limit: int = Query(10, ge=1, le=billing.HISTORY_MAX_LIMIT),
    user_id: str = Depends(get_current_user_id),
):
    return billing.get_history(user_id, limit=limit)


@router.post("/cancel")
def cancel(user_id: str = Depends(get_current_user_id)):
    """
    Cancel the active subscription. The end date is kept.

    Errors:
        409: No active subscription
    """
    subscription = cancel_subscription(user_id)
    return {"message": "Subscription cancelled", "subscription_info": subscription.info()}
