"""
Dispatch endpoint, invoked by an external scheduler.

Configuration and key errors propagate to the application exception
handlers and are returned as 500 responses.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from reminder_engine.db.database import get_db
from reminder_engine.schemas.dispatch import DispatchSummaryResponse
from reminder_engine.services.dispatch_service import DispatchService
from reminder_engine.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/dispatch",
    tags=["Dispatch"],
)


def get_dispatch_service(db: Session = Depends(get_db)) -> DispatchService:
    """Create DispatchService instance with database session."""
    return DispatchService(db=db)


@router.post(
    "/run",
    response_model=DispatchSummaryResponse,
    summary="Run one dispatch pass",
    description="Deliver due calendar reminders and scheduled client reminders. "
                "Safe to call concurrently; each reminder is delivered at most once.",
)
def run_dispatch(
    service: DispatchService = Depends(get_dispatch_service),
):
    """Run one dispatch pass and return its summary."""
    summary = service.run()
    return DispatchSummaryResponse.model_validate(summary.to_dict())
