"""
Audit Log Service

Append-only compliance trail. Every credit, distribution step and payout
step writes exactly one entry here. Entries are never updated or deleted
(enforced by mapper listeners on AuditLogDB).
"""
import csv
import io
import json
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import ValidationError
from ...models.db_models import AuditLogDB, utcnow
from ...models.domain import ActorType

EXPORT_COLUMNS = [
    "id", "created_at", "event_type", "actor", "account_id", "entity_type", "entity_id",
    "amount_cents", "gross_cents", "tax_cents", "net_cents", "channel", "event_metadata",
]


class AuditLogService:
    """Writes and reads the audit trail."""

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        event_type: str,
        actor: ActorType = ActorType.SYSTEM,
        account_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        amount_cents: Optional[int] = None,
        gross_cents: Optional[int] = None,
        tax_cents: Optional[int] = None,
        net_cents: Optional[int] = None,
        channel: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditLogDB:
        entry = AuditLogDB(
            id=str(uuid4()),
            event_type=event_type,
            actor=actor,
            account_id=account_id,
            entity_type=entity_type,
            entity_id=entity_id,
            amount_cents=amount_cents,
            gross_cents=gross_cents,
            tax_cents=tax_cents,
            net_cents=net_cents,
            channel=channel,
            event_metadata=metadata,
            created_at=utcnow(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def query(
        self,
        account_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditLogDB]:
        """Newest first."""
        query = self.db.query(AuditLogDB)
        if account_id:
            query = query.filter(AuditLogDB.account_id == account_id)
        if event_type:
            query = query.filter(AuditLogDB.event_type == event_type)
        if since:
            query = query.filter(AuditLogDB.created_at >= since)
        return query.order_by(AuditLogDB.created_at.desc(), AuditLogDB.id).limit(limit).all()

    def export(
        self,
        fmt: str = "json",
        account_id: Optional[str] = None,
        event_type: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 10_000,
    ) -> str:
        """Serialize matching entries for compliance export, oldest first."""
        if fmt not in ("json", "csv"):
            raise ValidationError(f"Unsupported export format: {fmt}")
        rows = [self.to_dict(entry) for entry in reversed(self.query(account_id, event_type, since, limit))]

        if fmt == "json":
            return json.dumps(rows, indent=2)

        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_COLUMNS)
        writer.writeheader()
        for row in rows:
            row["event_metadata"] = json.dumps(row["event_metadata"]) if row["event_metadata"] else ""
            writer.writerow(row)
        return buffer.getvalue()

    @staticmethod
    def to_dict(entry: AuditLogDB) -> Dict[str, Any]:
        return {
            "id": entry.id,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
            "event_type": entry.event_type,
            "actor": entry.actor.value if entry.actor else None,
            "account_id": entry.account_id,
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "amount_cents": entry.amount_cents,
            "gross_cents": entry.gross_cents,
            "tax_cents": entry.tax_cents,
            "net_cents": entry.net_cents,
            "channel": entry.channel,
            "event_metadata": entry.event_metadata,
        }
