"""Per-field merge policies for changes arriving from an external platform.

- comments: last writer wins by timestamp, ties keep the local value
- status: forward-only over STATUS_RANKS
- priority: max over PRIORITY_RANKS, never downgrades

A disabled policy means the incoming value overwrites blindly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from itsm_sync.models.conflict_policy import ConflictPolicy

logger = logging.getLogger(__name__)

STATUS_RANKS = {"open": 1, "investigating": 2, "on_hold": 3, "resolved": 6, "closed": 7}
PRIORITY_RANKS = {"low": 1, "medium": 2, "high": 3, "critical": 4}

_STATUS_VOCAB = {
    "servicenow": {
        "1": "open",
        "new": "open",
        "2": "investigating",
        "in progress": "investigating",
        "3": "on_hold",
        "on hold": "on_hold",
        "6": "resolved",
        "7": "closed",
    },
    "jira": {
        "to do": "open",
        "backlog": "open",
        "in progress": "investigating",
        "in review": "investigating",
        "on hold": "on_hold",
        "blocked": "on_hold",
        "done": "resolved",
    },
}

_PRIORITY_VOCAB = {
    "servicenow": {"1": "critical", "2": "high", "3": "medium", "4": "low", "5": "low"},
    "jira": {"highest": "critical", "high": "high", "medium": "medium", "low": "low", "lowest": "low"},
}


def normalize_status(platform: str | None, value) -> str | None:
    """Map a platform status (numeric state, Jira name, or canonical) to a ranked status."""
    if value is None:
        return None
    key = str(value).strip().lower()
    if not key:
        return None
    canonical = key.replace(" ", "_")
    if canonical in STATUS_RANKS:
        return canonical
    return _STATUS_VOCAB.get(platform or "", {}).get(key)


def normalize_priority(platform: str | None, value) -> str | None:
    if value is None:
        return None
    key = str(value).strip().lower()
    if not key:
        return None
    mapped = _PRIORITY_VOCAB.get(platform or "", {}).get(key)
    if mapped:
        return mapped
    return key if key in PRIORITY_RANKS else None


@dataclass(frozen=True)
class StatusMerge:
    value: str | None
    skipped: bool = False
    reason: str | None = None


@dataclass(frozen=True)
class CommentMerge:
    text: str | None
    at: datetime | None
    replaced: bool = False


def merge_status(local: str | None, incoming: str | None, forward_only: bool = True) -> StatusMerge:
    """Both sides must already be normalized. Backward moves are skipped, not errors."""
    if incoming is None:
        return StatusMerge(local)
    if not forward_only or local is None:
        return StatusMerge(incoming)
    local_rank = STATUS_RANKS.get(local, 0)
    incoming_rank = STATUS_RANKS.get(incoming, 0)
    if incoming_rank < local_rank:
        return StatusMerge(
            local,
            skipped=True,
            reason=f"Status transition {local} -> {incoming} rejected (forward-only)",
        )
    return StatusMerge(incoming)


def merge_priority(local: str | None, incoming: str | None, max_policy: bool = True) -> str | None:
    if incoming is None:
        return local
    if not max_policy or local is None:
        return incoming
    if PRIORITY_RANKS.get(incoming, 0) > PRIORITY_RANKS.get(local, 0):
        return incoming
    return local


def merge_comment(
    local_text: str | None,
    local_at: datetime | None,
    incoming_text: str | None,
    incoming_at: datetime | None,
    last_writer_wins: bool = True,
) -> CommentMerge:
    if incoming_text is None:
        return CommentMerge(local_text, local_at)
    if not last_writer_wins or local_at is None:
        return CommentMerge(incoming_text, incoming_at, replaced=True)
    if incoming_at is not None and incoming_at > local_at:
        return CommentMerge(incoming_text, incoming_at, replaced=True)
    return CommentMerge(local_text, local_at)


# ---------------------------------------------------------------------------
# Policy storage
# ---------------------------------------------------------------------------


POLICY_FIELDS = ("comments_last_writer_wins", "status_forward_only", "priority_max_policy")


async def get_policy(db: AsyncSession, organization_id: str) -> ConflictPolicy:
    """Stored policy, or an unsaved all-enabled default."""
    result = await db.execute(
        select(ConflictPolicy).where(ConflictPolicy.organization_id == organization_id)
    )
    policy = result.scalar_one_or_none()
    if policy is None:
        policy = ConflictPolicy(
            organization_id=organization_id,
            comments_last_writer_wins=True,
            status_forward_only=True,
            priority_max_policy=True,
        )
    return policy


async def update_policy(db: AsyncSession, organization_id: str, changes: dict) -> ConflictPolicy:
    policy = await get_policy(db, organization_id)
    for key, value in changes.items():
        if key in POLICY_FIELDS and value is not None:
            setattr(policy, key, bool(value))
    db.add(policy)
    await db.flush()
    logger.info("Conflict policy updated for %s: %s", organization_id, changes)
    return policy
