from __future__ import annotations

from collections.abc import Callable

import httpx

from itsm_sync.adapters.base import PlatformAdapter
from itsm_sync.adapters.jira import JiraAdapter
from itsm_sync.adapters.servicenow import ServiceNowAdapter
from itsm_sync.core.errors import ValidationError

ADAPTERS: dict[str, type[PlatformAdapter]] = {
    "servicenow": ServiceNowAdapter,
    "jira": JiraAdapter,
}

AdapterFactory = Callable[..., PlatformAdapter]


def build_adapter(
    platform: str, registry, transport: httpx.AsyncBaseTransport | None = None
) -> PlatformAdapter:
    adapter_cls = ADAPTERS.get(platform)
    if adapter_cls is None:
        raise ValidationError(f"No adapter for platform: {platform}")
    return adapter_cls(registry, transport=transport)
