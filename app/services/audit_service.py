"""
Audit recorder: append-only facts about every state change.

Records are written on the caller's connection inside a savepoint, so an
audit failure rolls back only the audit row and never the business write.
Nothing in the services reads these records back.
"""
import json
import logging
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, Dict, Any, List
from uuid import UUID

from app.database import get_db_connection
from app.core.middleware import RequestMeta
from app.models.audit import AuditAction, AuditSeverity, AuditRecord

logger = logging.getLogger(__name__)


HIGH_SEVERITY_ACTIONS = {
    AuditAction.PAYMENT_CREATE,
    AuditAction.PAYMENT_CONFIRM,
    AuditAction.PAYMENT_STATUS_CHANGE,
    AuditAction.PAYMENT_FAIL,
    AuditAction.PAYMENT_REFUND,
    AuditAction.PAYMENT_EXPIRE,
    AuditAction.TICKET_REFUND,
}

MEDIUM_SEVERITY_ACTIONS = {
    AuditAction.TICKET_ISSUE,
    AuditAction.TICKET_CHECK_IN,
    AuditAction.TRANSFER_CREATE,
    AuditAction.TRANSFER_ACCEPT,
    AuditAction.TRANSFER_REJECT,
    AuditAction.TRANSFER_CANCEL,
    AuditAction.TRANSFER_EXPIRE,
    AuditAction.COUPON_CREATE,
    AuditAction.COUPON_USE,
    AuditAction.COUPON_DEACTIVATE,
    AuditAction.COUPON_EXPIRE,
}


def classify_severity(action: AuditAction) -> AuditSeverity:
    if action in HIGH_SEVERITY_ACTIONS:
        return AuditSeverity.HIGH
    if action in MEDIUM_SEVERITY_ACTIONS:
        return AuditSeverity.MEDIUM
    return AuditSeverity.LOW


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _snapshot(state: Optional[Dict[str, Any]]) -> Optional[str]:
    if state is None:
        return None
    return json.dumps(dict(state), default=_json_default)


async def record(
    conn,
    action: AuditAction,
    resource_type: str,
    resource_id: str,
    actor_id: Optional[str] = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    meta: Optional[RequestMeta] = None,
    success: bool = True,
    error_message: Optional[str] = None
) -> bool:
    """
    Append an audit record. Never raises; returns False when the write failed.
    """
    meta = meta or RequestMeta()
    try:
        async with conn.transaction():
            await conn.execute("""
                INSERT INTO audit_records (
                    actor_id, action, resource_type, resource_id,
                    before, after, ip_address, user_agent, request_id,
                    success, error_message, severity
                ) VALUES ($1, $2, $3, $4, $5::jsonb, $6::jsonb, $7, $8, $9, $10, $11, $12)
            """,
                actor_id,
                action.value,
                resource_type,
                str(resource_id),
                _snapshot(before),
                _snapshot(after),
                meta.ip_address,
                meta.user_agent,
                meta.request_id,
                success,
                error_message,
                classify_severity(action).value
            )
        return True
    except Exception as e:
        logger.error(f"Audit write failed for {action.value} on {resource_type}/{resource_id}: {e}")
        return False


def _parse_json_field(value):
    if isinstance(value, str):
        return json.loads(value)
    return value


async def get_audit_trail(resource_type: str, resource_id: str, limit: int = 200) -> List[AuditRecord]:
    """Chronological audit trail of one resource (staff only, output only)"""
    async with get_db_connection(use_transaction=False) as conn:
        rows = await conn.fetch("""
            SELECT id, actor_id, action, resource_type, resource_id, before, after,
                   ip_address, user_agent, request_id, success, error_message,
                   severity, created_at
            FROM audit_records
            WHERE resource_type = $1 AND resource_id = $2
            ORDER BY created_at ASC, id ASC
            LIMIT $3
        """, resource_type, resource_id, limit)

        return [
            AuditRecord(**{
                **dict(row),
                'before': _parse_json_field(row['before']),
                'after': _parse_json_field(row['after']),
            })
            for row in rows
        ]
