from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from booking_crm.domain.catalog.db_models import Service, ServiceTeamMember
from booking_crm.domain.errors import NotFound


@dataclass(frozen=True)
class ServiceBuffers:
    before_minutes: int = 0
    after_minutes: int = 0


NO_BUFFERS = ServiceBuffers()


async def get_service(session: AsyncSession, service_id: str) -> Service:
    service = await session.get(Service, service_id)
    if service is None:
        raise NotFound(detail=f"Service {service_id} not found")
    return service


async def get_service_buffers(session: AsyncSession, service_id: str | None) -> ServiceBuffers:
    """Buffer minutes copied onto a booking at creation time; zero without a service."""
    if not service_id:
        return NO_BUFFERS
    service = await get_service(session, service_id)
    return ServiceBuffers(
        before_minutes=max(0, service.buffer_time_before or 0),
        after_minutes=max(0, service.buffer_time_after or 0),
    )


async def is_team_member_assigned(session: AsyncSession, service_id: str, team_member_id: str) -> bool:
    assignment_id = await session.scalar(
        select(ServiceTeamMember.assignment_id).where(
            ServiceTeamMember.service_id == service_id,
            ServiceTeamMember.team_member_id == team_member_id,
        )
    )
    return assignment_id is not None
