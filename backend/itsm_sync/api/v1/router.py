from fastapi import APIRouter

from itsm_sync.api.v1 import (
    conflict_policy,
    connections,
    field_mappings,
    routing,
    sync_logs,
    sync_queue,
    webhooks,
)

api_router = APIRouter()

api_router.include_router(connections.router, prefix="/connections", tags=["connections"])
api_router.include_router(field_mappings.router, prefix="/field-mappings", tags=["field-mappings"])
api_router.include_router(sync_queue.router, prefix="/sync-queue", tags=["sync-queue"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(routing.router, prefix="/routing", tags=["routing"])
api_router.include_router(conflict_policy.router, prefix="/conflict-policy", tags=["conflict-policy"])
api_router.include_router(sync_logs.router, tags=["sync-logs"])
