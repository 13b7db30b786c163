from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.api.deps import Principal, require_admin, require_viewer
from itsm_sync.database import get_db
from itsm_sync.models.conflict_policy import ConflictPolicy
from itsm_sync.services.conflict_service import get_policy, update_policy

router = APIRouter()


class ConflictPolicyIn(BaseModel):
    comments_last_writer_wins: bool | None = None
    status_forward_only: bool | None = None
    priority_max_policy: bool | None = None


def _policy_to_dict(policy: ConflictPolicy) -> dict:
    return {
        "comments_last_writer_wins": policy.comments_last_writer_wins,
        "status_forward_only": policy.status_forward_only,
        "priority_max_policy": policy.priority_max_policy,
    }


@router.get("")
async def read_policy(
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_viewer),
):
    return _policy_to_dict(await get_policy(db, principal.organization_id))


@router.put("")
async def write_policy(
    body: ConflictPolicyIn,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(require_admin),
):
    policy = await update_policy(db, principal.organization_id, body.model_dump(exclude_none=True))
    await db.commit()
    return _policy_to_dict(policy)
