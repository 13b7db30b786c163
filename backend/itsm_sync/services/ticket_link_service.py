from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.models.ticket_link import TicketLink


async def get_link(
    db: AsyncSession, organization_id: str, platform: str, ticket_id: str
) -> TicketLink | None:
    result = await db.execute(
        select(TicketLink).where(
            TicketLink.organization_id == organization_id,
            TicketLink.platform == platform,
            TicketLink.ticket_id == ticket_id,
        )
    )
    return result.scalar_one_or_none()


async def get_link_by_external_id(
    db: AsyncSession, organization_id: str, platform: str, external_id: str
) -> TicketLink | None:
    """Most recently touched link for ``external_id`` (several may exist, last write wins)."""
    result = await db.execute(
        select(TicketLink)
        .where(
            TicketLink.organization_id == organization_id,
            TicketLink.platform == platform,
            TicketLink.external_id == external_id,
        )
        .order_by(TicketLink.updated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_or_create_link(
    db: AsyncSession, organization_id: str, platform: str, ticket_id: str
) -> TicketLink:
    link = await get_link(db, organization_id, platform, ticket_id)
    if link is None:
        link = TicketLink(organization_id=organization_id, platform=platform, ticket_id=ticket_id)
        db.add(link)
        await db.flush()
    return link
