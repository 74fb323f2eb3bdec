import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.core.membership import isoformat, utcnow
from app.dependencies.auth import verify_cron_secret
from app.dependencies.services import get_reconciler
from app.services.reconciler import ExpirySweep, MembershipReconciler, ResultStatus
from app.services.user_table import UserTableError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/check-subscription-expiration", dependencies=[Depends(verify_cron_secret)])
def check_subscription_expiration(
    reconciler: MembershipReconciler = Depends(get_reconciler),
):
    """Daily job: lapse expired subscriptions to free."""
    now = utcnow()
    try:
        report = reconciler.reconcile(ExpirySweep(now=now))
    except UserTableError as e:
        logger.error("[CRON] Expiry sweep could not query users: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to downgrade expired subscriptions", "details": str(e)}
        )

    logger.info("[CRON] Expiry sweep at %s downgraded %d users", isoformat(now), report.updated_count)
    return {
        "success": True,
        "message": f"Downgraded {report.updated_count} expired subscriptions to free tier",
        "ranAt": isoformat(now),
        "updatedCount": report.updated_count,
        "degradedCount": report.degraded_count,
        "refusedCount": report.refused_count,
        "skippedCount": report.skipped_count,
        "failedCount": report.failed_count,
        "failedUserIds": [r.user_id for r in report.results if r.status == ResultStatus.FAILED],
    }
