"""
Audit trail for ledger changes.

Every mutation to a company's records is logged here. The audit log is:
- Append-only (entries never modified or deleted)
- User-attributed (who made the change)
- Company-scoped (which tenant the record belongs to)

When a change runs inside a transaction, pass it as `tx` so the audit entry
commits or rolls back together with the change it describes.
"""

from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from psycopg2.extras import Json

from clients.postgres_client import PostgresClient, Transaction
from utils.timezone import now_utc
from utils.user_context import get_current_user_id


class AuditAction(Enum):
    """Type of change made to an entity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CONVERT = "convert"
    ALLOCATE = "allocate"
    DEALLOCATE = "deallocate"


def compute_changes(
    old: dict[str, Any],
    new: dict[str, Any],
    exclude_fields: set[str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Compute changes between two entity states.

    Args:
        old: Previous state of entity
        new: New state of entity
        exclude_fields: Fields to ignore (defaults to {"updated_at"})

    Returns:
        Dict of {field: {"old": old_val, "new": new_val}} for changed fields.
        Empty dict if no changes.
    """
    exclude = exclude_fields or {"updated_at"}
    changes = {}

    for key in set(old.keys()) | set(new.keys()):
        if key in exclude:
            continue

        old_val = old.get(key)
        new_val = new.get(key)

        if old_val != new_val:
            changes[key] = {"old": old_val, "new": new_val}

    return changes


class AuditLogger:
    """
    Audit trail writer.

    Always pass model_dump(mode="json") output so UUIDs, Decimals and dates
    are stored as JSON-compatible values.

    Usage:
        audit = AuditLogger(postgres)

        audit.log_change(
            entity_type="estimate",
            entity_id=estimate.id,
            action=AuditAction.CREATE,
            changes={"created": data.model_dump(mode="json", exclude_none=True)},
            company_id=company_id,
            tx=tx,
        )

        history = audit.get_entity_history("estimate", estimate.id)
    """

    def __init__(self, postgres: PostgresClient):
        self.postgres = postgres

    def log_change(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        changes: dict[str, Any],
        company_id: UUID | None = None,
        user_id: UUID | None = None,
        tx: Transaction | None = None,
    ) -> None:
        """
        Log an entity change.

        Args:
            entity_type: Type of entity ("estimate", "payment", etc.)
            entity_id: ID of the entity
            action: The action performed
            changes: The changes made (format depends on action)
            company_id: Company the entity belongs to
            user_id: User who made change (defaults to current context)
            tx: Open transaction to write through; autocommits when None

        Changes format by action:
        - CREATE: {"created": {full entity data}}
        - UPDATE: {"field": {"old": old_val, "new": new_val}, ...}
        - DELETE: {"deleted": {full entity data at deletion}}
        - CONVERT / ALLOCATE / DEALLOCATE: {summary of the operation}
        """
        if user_id is None:
            user_id = get_current_user_id()

        executor = tx if tx is not None else self.postgres
        executor.execute(
            """
            INSERT INTO audit_log (id, user_id, company_id, entity_type, entity_id, action, changes, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                uuid4(),
                user_id,
                company_id,
                entity_type,
                entity_id,
                action.value,
                Json(changes),
                now_utc()
            )
        )

    def get_entity_history(
        self,
        entity_type: str,
        entity_id: UUID,
        company_id: UUID | None = None,
    ) -> list[dict[str, Any]]:
        """
        Get full audit history for an entity, newest first.

        Args:
            entity_type: Type of entity ("estimate", "payment", etc.)
            entity_id: ID of the entity
            company_id: When given, only entries logged under this company
        """
        query = """
            SELECT id, user_id, company_id, entity_type, entity_id, action, changes, created_at
            FROM audit_log
            WHERE entity_type = %s AND entity_id = %s
        """
        params: list = [entity_type, entity_id]
        if company_id is not None:
            query += " AND company_id = %s"
            params.append(company_id)

        return self.postgres.execute(query + " ORDER BY created_at DESC", tuple(params))

    def get_company_activity(
        self,
        company_id: UUID,
        limit: int = 100
    ) -> list[dict[str, Any]]:
        """
        Get recent activity within a company.

        Args:
            company_id: Company to get activity for
            limit: Maximum entries to return

        Returns:
            List of audit entries, newest first.
        """
        return self.postgres.execute(
            """
            SELECT id, user_id, company_id, entity_type, entity_id, action, changes, created_at
            FROM audit_log
            WHERE company_id = %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (company_id, limit)
        )
