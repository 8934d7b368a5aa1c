from typing import Optional, Dict, Any, List
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fiscal_invoicing.models.audit_log import AuditLog


class AuditService:
    """
    Audit service for lifecycle overrides and counterparty corrections.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str,
        entity_type: str,
        actor: str,
        entity_id: Optional[uuid.UUID] = None,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            action: The action performed (VOID_WITHOUT_CREDIT_NOTE, ...)
            entity_type: Type of entity (INVOICE)
            actor: Who performed the action
            entity_id: ID of the affected entity
            old_values: Previous values
            new_values: New values
            description: Human-readable description

        Returns:
            The created AuditLog entry
        """
        audit_log = AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            old_values=old_values,
            new_values=new_values,
            description=description,
        )
        self.db.add(audit_log)
        await self.db.flush()
        return audit_log

    async def log_void_override(self, invoice, actor: str, reason: str) -> AuditLog:
        """Log an authorized invoice voided without a credit note."""
        return await self.log(
            action="VOID_WITHOUT_CREDIT_NOTE",
            entity_type="INVOICE",
            entity_id=invoice.id,
            actor=actor,
            old_values={"status": "AUTHORIZED", "document_number": invoice.document_number, "cae": invoice.cae},
            new_values={"status": "VOIDED", "void_reason": reason},
            description=f"Voided {invoice.document_number} without credit note: {reason}",
        )

    async def log_counterparty_change(
        self,
        invoice,
        actor: str,
        old_values: Dict[str, Any],
        new_values: Dict[str, Any],
    ) -> AuditLog:
        """Log a draft's counterparty being corrected and re-resolved."""
        return await self.log(
            action="RESOLVE_COUNTERPARTY",
            entity_type="INVOICE",
            entity_id=invoice.id,
            actor=actor,
            old_values=old_values,
            new_values=new_values,
            description="Counterparty corrected and tax profile re-resolved",
        )

    async def get_entity_logs(self, entity_type: str, entity_id: uuid.UUID) -> List[AuditLog]:
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at)
        )
        return list(result.scalars().all())
