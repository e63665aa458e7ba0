"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and for manual runs.
Each run_* opens its own connection and returns a dict with "message" (and "count").
"""
import logging

from database import get_db_context

logger = logging.getLogger(__name__)


async def run_monthly_credit_refresh():
    """Daily: downgrade cancelled paid users and refresh due freemium users."""
    try:
        from assignsavvy.services.container import build_services
        async with get_db_context() as db:
            services = build_services(db)
            stats = await services.allocation.run_daily_refresh()
        logger.info(f"Credit refresh job completed: {stats}")
        return {
            "message": f"Credits refreshed: {stats['refreshed']}, downgraded: {stats['downgraded']}",
            "count": stats["refreshed"] + stats["downgraded"],
            "stats": stats,
        }
    except Exception as e:
        logger.error(f"Credit refresh job failed: {e}")
        raise


async def run_stale_reservation_sweep():
    """Flag reservations left unresolved past the grace period. Does not resolve them."""
    try:
        from assignsavvy.services.container import build_services
        async with get_db_context() as db:
            services = build_services(db)
            stale = await services.ledger.find_stale_reservations()
        for reservation in stale:
            logger.warning(
                f"Stale credit reservation {reservation.transaction_id}: user {reservation.user_id}, "
                f"{reservation.credits_reserved} credits ({reservation.tool_type.value}) since {reservation.created_at}"
            )
        held = sum(r.credits_reserved for r in stale)
        logger.info(f"Stale reservation sweep completed: {len(stale)} found, {held} credits held")
        return {"message": f"Stale reservations: {len(stale)} ({held} credits)", "count": len(stale)}
    except Exception as e:
        logger.error(f"Stale reservation sweep failed: {e}")
        raise
