from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.api.problem_details import PROBLEM_TYPE_DOMAIN, problem_details
from booking_crm.dependencies import get_collaborators, get_db_session
from booking_crm.domain.bookings import batch_service
from booking_crm.domain.bookings import cancellation as cancellation_service
from booking_crm.domain.bookings import schemas as booking_schemas
from booking_crm.domain.bookings import service as booking_service
from booking_crm.domain.bookings.ports import BookingCollaborators
from booking_crm.domain.contacts import service as contact_service

router = APIRouter()


@router.post(
    "/v1/bookings",
    response_model=booking_schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    payload: booking_schemas.BookingCreateRequest,
    session: AsyncSession = Depends(get_db_session),
    collaborators: BookingCollaborators = Depends(get_collaborators),
) -> booking_schemas.BookingRead:
    booking = await booking_service.create_booking(
        session,
        collaborators,
        payload.contact_id,
        payload.conversation_id,
        payload.event,
        payload.options,
    )
    return booking_schemas.BookingRead.from_model(booking)


@router.post(
    "/v1/bookings/batch",
    response_model=booking_schemas.BatchBookingResult,
    status_code=status.HTTP_201_CREATED,
)
async def create_batch_booking(
    payload: booking_schemas.BatchBookingRequest,
    request: Request,
    session: AsyncSession = Depends(get_db_session),
    collaborators: BookingCollaborators = Depends(get_collaborators),
):
    result = await batch_service.create_batch_booking(session, collaborators, payload)
    if not result.success:
        return problem_details(
            request=request,
            status=status.HTTP_422_UNPROCESSABLE_ENTITY,
            title="Batch booking rejected",
            detail=result.error or "The sessions could not be booked.",
            type_=PROBLEM_TYPE_DOMAIN,
        )
    return result


@router.get("/v1/bookings/stats", response_model=booking_schemas.BookingStats)
async def booking_stats(
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingStats:
    return await booking_service.get_booking_stats(session, start, end)


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingRead)
async def get_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingRead:
    booking = await booking_service.get_booking(session, booking_id)
    return booking_schemas.BookingRead.from_model(booking)


@router.patch("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingRead)
async def update_booking(
    booking_id: str,
    payload: booking_schemas.BookingUpdate,
    session: AsyncSession = Depends(get_db_session),
    collaborators: BookingCollaborators = Depends(get_collaborators),
) -> booking_schemas.BookingRead:
    booking = await booking_service.update_booking(session, collaborators, booking_id, payload)
    return booking_schemas.BookingRead.from_model(booking)


@router.post("/v1/bookings/{booking_id}/cancel", response_model=booking_schemas.CancellationResult)
async def cancel_booking(
    booking_id: str,
    payload: booking_schemas.CancellationRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    collaborators: BookingCollaborators = Depends(get_collaborators),
) -> booking_schemas.CancellationResult:
    reason = payload.reason if payload else None
    return await cancellation_service.cancel_booking(session, collaborators, booking_id, reason)


@router.post("/v1/bookings/{booking_id}/no-show", response_model=booking_schemas.NoShowResult)
async def record_no_show(
    booking_id: str,
    payload: booking_schemas.NoShowRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.NoShowResult:
    tracking = await contact_service.record_no_show(
        session, booking_id, notes=payload.notes if payload else None
    )
    return booking_schemas.NoShowResult(
        booking_id=tracking.booking_id,
        strike_count=tracking.strike_count,
        suspension_until=tracking.suspension_until,
    )


@router.get("/v1/availability", response_model=list[booking_schemas.TimeSlot])
async def availability(
    start: datetime = Query(...),
    end: datetime = Query(...),
    calendar_id: str | None = Query(None, alias="calendarId"),
    collaborators: BookingCollaborators = Depends(get_collaborators),
) -> list[booking_schemas.TimeSlot]:
    if end <= start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="end must be after start")
    return await booking_service.get_availability(collaborators, start, end, calendar_id)
