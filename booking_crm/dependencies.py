from fastapi import HTTPException, Request

from booking_crm.domain.bookings.ports import BookingCollaborators
from booking_crm.infra.db import get_db_session
from booking_crm.services import resolve_services


def get_collaborators(request: Request) -> BookingCollaborators:
    services = resolve_services(request.app)
    if services is None:
        raise HTTPException(status_code=503, detail="Booking services not initialised")
    return services.collaborators
