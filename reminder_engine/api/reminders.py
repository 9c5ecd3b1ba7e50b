"""
Client reminder scheduling endpoint.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from reminder_engine.config.settings import get_settings
from reminder_engine.db.database import get_db
from reminder_engine.schemas.reminders import ScheduleReminderRequest, ScheduleReminderResponse
from reminder_engine.services.reminder_service import ReminderService
from reminder_engine.utils.logging_config import get_logger


logger = get_logger("api")

router = APIRouter(
    prefix="/reminders",
    tags=["Reminders"],
)


def get_reminder_service(db: Session = Depends(get_db)) -> ReminderService:
    """Create ReminderService instance with database session and settings."""
    return ReminderService(db=db, settings=get_settings())


@router.post(
    "/schedule",
    response_model=ScheduleReminderResponse,
    status_code=status.HTTP_200_OK,
    summary="Schedule a client reminder",
)
async def schedule_reminder(
    body: ScheduleReminderRequest,
    service: ReminderService = Depends(get_reminder_service),
):
    """
    Schedule the reminder for an appointment.

    Existing unsent reminders for the event (or for previous_event_id after
    a reschedule) are updated in place. When reminders are disabled or the
    reminder time has passed, only the contact mapping is stored.
    """
    result = service.schedule_reminder(
        event_id=body.event_id,
        client_phone=body.client_phone,
        client_name=body.client_name,
        service_name=body.service_name,
        appointment_time=body.appointment_time,
        previous_event_id=body.previous_event_id,
    )
    logger.info(
        "Reminder schedule request handled",
        extra={"event_id": body.event_id, "action": result.action},
    )
    return ScheduleReminderResponse.model_validate(result)
