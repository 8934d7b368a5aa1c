import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_invoicing.database import Base
from fiscal_invoicing.db_types import JSONType, UUIDType


class AuditLog(Base):
    """
    Audit log for actions that bypass the normal lifecycle,
    e.g. voiding an authorized invoice without a credit note.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Who performed the action
    actor: Mapped[str] = mapped_column(String(100), nullable=False)

    # Action details
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # Actions: VOID_WITHOUT_CREDIT_NOTE, RESOLVE_COUNTERPARTY

    # Entity being modified
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUIDType, nullable=True)

    # Change tracking
    old_values: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    new_values: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Additional context
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<AuditLog(action='{self.action}', entity='{self.entity_type}', id='{self.entity_id}')>"
