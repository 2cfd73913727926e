"""Audit trail helpers.

Rows are added to the caller's session; the caller owns the commit.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from . import models

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Client details captured for audit rows and rate limiting."""
    ip: str = "unknown"
    user_agent: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> RequestContext:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
        else:
            ip = request.headers.get("x-real-ip") or (request.client.host if request.client else None)
        return cls(ip=ip or "unknown", user_agent=request.headers.get("user-agent"))


def record_audit(
    session: AsyncSession,
    *,
    user_id: str | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    context: RequestContext | None = None,
    metadata: dict[str, Any] | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
) -> models.AuditLog:
    """Stage an audit row on ``session``."""
    context = context or RequestContext()
    row = models.AuditLog(
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        ip_address=context.ip,
        user_agent=context.user_agent,
        metadata_=metadata,
        old_values=old_values,
        new_values=new_values,
    )
    session.add(row)
    logger.debug(f"Audit {action} on {entity_type}:{entity_id} by {user_id}")
    return row


def audit_row_to_dict(row: models.AuditLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "action": row.action,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "ip_address": row.ip_address,
        "user_agent": row.user_agent,
        "metadata": row.metadata_,
        "old_values": row.old_values,
        "new_values": row.new_values,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
