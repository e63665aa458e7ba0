"""AssignSavvy Stripe Webhook Handler

Maps verified Stripe events to credit allocation:
- checkout.session.completed: pro or custom credits (upgrade or top-up),
  from session metadata {user_id, plan, mode}
- customer.subscription.deleted: flag the subscription cancelled; the daily
  refresh downgrades the user

Each event id is processed once (stripe_events unique index).
"""

from fastapi import APIRouter, Request, HTTPException, Depends
from datetime import datetime, timezone
from decimal import Decimal
import logging

import stripe
from pymongo.errors import DuplicateKeyError

from assignsavvy.config import STRIPE_WEBHOOK_SECRET
from assignsavvy.errors import AccountNotFoundError, InvalidArgumentError
from assignsavvy.models.user import PlanType
from assignsavvy.routes.deps import get_services
from assignsavvy.services.container import CreditServices

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def handle_stripe_webhook(request: Request, services: CreditServices = Depends(get_services)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, STRIPE_WEBHOOK_SECRET
        )
    except ValueError:
        logger.error("Invalid payload")
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.error("Invalid signature")
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event.type
    db = services.db

    try:
        await db.stripe_events.insert_one({
            "event_id": event.id,
            "event_type": event_type,
            "received_at": datetime.now(timezone.utc).isoformat(),
        })
    except DuplicateKeyError:
        logger.info(f"Duplicate Stripe event {event.id} ignored")
        return {"status": "duplicate", "event_type": event_type}

    logger.info(f"Stripe webhook: {event_type}")

    try:
        if event_type == "checkout.session.completed":
            result = await handle_checkout_completed(services, event.data.object)
        elif event_type == "customer.subscription.deleted":
            result = await handle_subscription_deleted(services, event.data.object)
        else:
            logger.info(f"Unhandled Stripe event type: {event_type}")
            result = {"status": "ignored"}
    except (AccountNotFoundError, InvalidArgumentError) as e:
        logger.error(f"Stripe event {event.id} rejected: {e}")
        return {"status": "rejected", "event_type": event_type, "reason": str(e)}
    except Exception as e:
        # Let Stripe retry
        await db.stripe_events.delete_one({"event_id": event.id})
        logger.error(f"Stripe webhook handler error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Webhook processing failed")

    return {"event_type": event_type, **result}


async def handle_checkout_completed(services: CreditServices, session) -> dict:
    metadata = session.get("metadata") or {}
    user_id = metadata.get("user_id")
    if not user_id:
        logger.warning("checkout.session.completed without user_id metadata")
        return {"status": "ignored", "reason": "missing_user_id"}

    plan = metadata.get("plan")
    is_upgrade = metadata.get("mode", "topup") == "upgrade"
    session_id = session.get("id")

    if plan == PlanType.PRO.value:
        allocation = await services.allocation.allocate_pro_credits(
            user_id, is_upgrade=is_upgrade, reference_id=session_id
        )
    elif plan == PlanType.CUSTOM.value:
        amount_total = session.get("amount_total") or 0
        amount_paid = Decimal(amount_total) / 100
        allocation = await services.allocation.allocate_custom_credits(
            user_id, amount_paid, is_upgrade=is_upgrade, reference_id=session_id
        )
    else:
        logger.warning(f"checkout.session.completed with unknown plan {plan!r}")
        return {"status": "ignored", "reason": "unknown_plan"}

    return {"status": "success", "allocation": allocation}


async def handle_subscription_deleted(services: CreditServices, subscription) -> dict:
    metadata = subscription.get("metadata") or {}
    user_id = metadata.get("user_id")
    if not user_id:
        logger.warning("customer.subscription.deleted without user_id metadata")
        return {"status": "ignored", "reason": "missing_user_id"}

    await services.allocation.mark_subscription_cancelled(user_id)
    return {"status": "success"}
