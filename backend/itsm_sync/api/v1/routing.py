from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from itsm_sync.api.deps import Principal, require_viewer
from itsm_sync.services.routing_service import PRODUCT_GROUPS, ROUTING_RULES, route

router = APIRouter()


@router.get("/rules")
async def list_rules(principal: Principal = Depends(require_viewer)):
    return {
        "rules": [
            {
                "category": r.category,
                "product_group": r.product_group,
                "assignee": r.assignee,
                "role": r.role,
            }
            for r in ROUTING_RULES
        ],
        "product_groups": {group: list(categories) for group, categories in PRODUCT_GROUPS.items()},
    }


@router.get("/route")
async def resolve_route(
    category: str = Query(""),
    principal: Principal = Depends(require_viewer),
):
    return {"category": category, **route(category).to_dict()}
