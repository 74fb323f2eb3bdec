from fastapi import HTTPException, status

from app.services.reconciler import ReconciliationResult, ResultStatus


def reconciliation_response(result: ReconciliationResult) -> dict:
    """
    JSON body for a successful reconciliation, or HTTPException for the rest.
    Refusals and invalid input are 400 with a reason, both-store failure is 500.
    """
    if result.status == ResultStatus.DOWNGRADE_REFUSED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Lifetime member downgrade prevented",
                "reason": "lifetime_downgrade_refused",
                "currentMembershipType": result.current_tier.value if result.current_tier else None,
            }
        )
    if result.status == ResultStatus.INVALID_INPUT:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": result.reason or "Invalid input", "reason": "invalid_input"}
        )
    if result.status == ResultStatus.FAILED:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Failed to update membership", "reason": result.reason}
        )

    body = result.to_dict()
    body["success"] = True
    return body
