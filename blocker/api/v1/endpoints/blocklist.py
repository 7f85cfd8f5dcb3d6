"""
Blocklist endpoints: report skylinks to block.
"""
import time
from fastapi import APIRouter, Depends, HTTPException, status, Request
from blocker.api.deps import get_store
from blocker.models.schemas import BlockRequest, BlockResponse
from blocker.services.skylink_store import SkylinkStore
from blocker.utils import get_logger, log_performance

router = APIRouter()
logger = get_logger(__name__)

@router.post(
    "/block",
    response_model=BlockResponse,
    summary="Report a skylink for blocking"
)
async def block_skylink(
    payload: BlockRequest,
    request: Request,
    store: SkylinkStore = Depends(get_store)
) -> BlockResponse:
    """Queue a skylink for the sweeper. Reporting an already known skylink is a no-op."""
    start_time = time.time()
    request_id = getattr(request.state, "request_id", "unknown")

    try:
        _, created = store.add_skylink(
            payload.skylink,
            reporter_name=payload.reporter.name,
            reporter_email=payload.reporter.email,
            reporter_other_contact=payload.reporter.other_contact,
            tags=payload.tags,
        )
    except Exception as e:
        logger.error(
            "Failed to store skylink",
            skylink=payload.skylink,
            error=str(e),
            request_id=request_id,
            exc_info=True
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error while storing skylink"
        )

    log_performance(
        operation="block_skylink",
        duration_ms=(time.time() - start_time) * 1000,
        additional_data={"created": created}
    )

    return BlockResponse(
        message="skylink queued for blocking" if created else "skylink already reported",
        skylink=payload.skylink,
        created=created,
    )
