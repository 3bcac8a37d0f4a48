from fastapi import APIRouter, Depends, Query
from typing import List
from app.core.dependencies import require_staff, AuthenticatedUser
from app.models.audit import AuditRecord
from app.services import audit_service

router = APIRouter()


@router.get("/{resource_type}/{resource_id}", response_model=List[AuditRecord])
async def get_audit_trail(
    resource_type: str,
    resource_id: str,
    limit: int = Query(200, ge=1, le=1000),
    user: AuthenticatedUser = Depends(require_staff)
):
    """
    Audit records of one resource, oldest first (staff only).

    `resource_type` is one of payment_intent, ticket, ticket_transfer, coupon.
    """
    return await audit_service.get_audit_trail(resource_type, resource_id, limit)
