"""
Customer service for CRUD operations.

All operations are scoped to a company owned by the current user.
"""

import logging
from collections.abc import Iterable, Mapping
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, Transaction
from ledger.audit import AuditLogger, AuditAction, compute_changes
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.csv_mapping import map_customer_records
from ledger.exceptions import InvalidStateError, NotFoundError, PersistenceError
from ledger.models import Customer, CustomerCreate, CustomerUpdate, RowImportResult
from ledger.services.company_service import CompanyService
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# Valid columns that can be updated
_UPDATABLE_COLUMNS = {
    "name", "ntn_cnic", "registration_type",
    "address", "city", "province", "phone", "email",
}


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so user text matches literally."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class CustomerService:
    """Service for customer operations."""

    def __init__(
        self,
        postgres: PostgresClient,
        audit: AuditLogger,
        companies: CompanyService,
        config: LedgerConfig = DEFAULT_CONFIG,
    ):
        self.postgres = postgres
        self.audit = audit
        self.companies = companies
        self.config = config

    def _insert(self, tx: Transaction, company_id: UUID, data: CustomerCreate) -> Customer:
        """Write one customer and its audit entry in the caller's transaction."""
        now = now_utc()

        row = tx.execute_returning(
            """
            INSERT INTO customers (
                id, company_id, name, ntn_cnic, registration_type,
                address, city, province, phone, email,
                created_at, updated_at
            ) VALUES (
                %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s,
                %s, %s
            )
            RETURNING *
            """,
            (
                uuid4(), company_id, data.name, data.ntn_cnic,
                data.registration_type.value if data.registration_type else None,
                data.address, data.city, data.province, data.phone, data.email,
                now, now
            )
        )[0]

        customer = Customer.model_validate(row)

        self.audit.log_change(
            entity_type="customer",
            entity_id=customer.id,
            action=AuditAction.CREATE,
            changes={"created": data.model_dump(mode="json", exclude_none=True)},
            company_id=company_id,
            tx=tx,
        )

        return customer

    def create(self, company_id: UUID, data: CustomerCreate) -> Customer:
        """
        Create a new customer.

        Args:
            company_id: Owning company
            data: Customer creation data

        Returns:
            Created customer
        """
        self.companies.require_owned(company_id)

        with self.postgres.transaction() as tx:
            return self._insert(tx, company_id, data)

    def get_by_id(self, company_id: UUID, customer_id: UUID) -> Customer | None:
        """
        Get customer by ID.

        Returns:
            Customer if found in the company, None otherwise.
        """
        self.companies.require_owned(company_id)

        row = self.postgres.execute_single(
            "SELECT * FROM customers WHERE id = %s AND company_id = %s",
            (customer_id, company_id)
        )

        if row is None:
            return None

        return Customer.model_validate(row)

    def require(self, company_id: UUID, customer_id: UUID) -> Customer:
        """Like get_by_id, but raises NotFoundError when missing."""
        customer = self.get_by_id(company_id, customer_id)
        if customer is None:
            raise NotFoundError(f"Customer {customer_id} not found")
        return customer

    def find_by_name(self, company_id: UUID, name: str) -> Customer | None:
        """
        Find a customer by exact name, ignoring case.

        Used to resolve customer names from imported files.
        """
        name = (name or "").strip()
        if not name:
            return None

        row = self.postgres.execute_single(
            """
            SELECT * FROM customers
            WHERE company_id = %s AND name ILIKE %s
            ORDER BY created_at
            LIMIT 1
            """,
            (company_id, escape_like(name))
        )

        if row is None:
            return None

        return Customer.model_validate(row)

    def update(self, company_id: UUID, customer_id: UUID, data: CustomerUpdate) -> Customer:
        """
        Update customer fields.

        Args:
            company_id: Owning company
            customer_id: Customer UUID
            data: Fields to update (only non-None fields are changed)

        Returns:
            Updated customer

        Raises:
            NotFoundError: If customer not found
        """
        current = self.require(company_id, customer_id)

        updates = data.model_dump(mode="json", exclude_none=True)
        if not updates:
            return current

        for field in updates:
            if field not in _UPDATABLE_COLUMNS:
                logger.warning(
                    f"Attempted to update unknown field '{field}' on customer {customer_id}"
                )

        valid_updates = {k: v for k, v in updates.items() if k in _UPDATABLE_COLUMNS}
        if not valid_updates:
            return current

        set_parts = []
        params = []
        for field, value in valid_updates.items():
            set_parts.append(f"{field} = %s")
            params.append(value)

        set_parts.append("updated_at = %s")
        params.append(now_utc())
        params.extend([customer_id, company_id])

        with self.postgres.transaction() as tx:
            row = tx.execute_returning(
                f"""
                UPDATE customers
                SET {', '.join(set_parts)}
                WHERE id = %s AND company_id = %s
                RETURNING *
                """,
                tuple(params)
            )[0]

            updated = Customer.model_validate(row)

            changes = compute_changes(
                current.model_dump(mode="json"),
                updated.model_dump(mode="json")
            )
            if changes:
                self.audit.log_change(
                    entity_type="customer",
                    entity_id=customer_id,
                    action=AuditAction.UPDATE,
                    changes=changes,
                    company_id=company_id,
                    tx=tx,
                )

        return updated

    def delete(self, company_id: UUID, customer_id: UUID) -> bool:
        """
        Delete a customer.

        Returns:
            True if deleted, False if not found

        Raises:
            InvalidStateError: If estimates, invoices or payments still reference the customer
        """
        current = self.get_by_id(company_id, customer_id)
        if current is None:
            return False

        try:
            with self.postgres.transaction() as tx:
                tx.execute(
                    "DELETE FROM customers WHERE id = %s AND company_id = %s",
                    (customer_id, company_id)
                )
                self.audit.log_change(
                    entity_type="customer",
                    entity_id=customer_id,
                    action=AuditAction.DELETE,
                    changes={"deleted": current.model_dump(mode="json")},
                    company_id=company_id,
                    tx=tx,
                )
        except PersistenceError as e:
            if e.is_foreign_key_violation:
                raise InvalidStateError(
                    f"Customer '{current.name}' has documents or payments and cannot be deleted."
                ) from e
            raise

        return True

    def delete_many(self, company_id: UUID, customer_ids: list[UUID]) -> int:
        """
        Delete several customers, a chunk of ids per statement.

        Runs in one transaction: when any of them still has documents or
        payments, none are deleted. Ids not in the company are ignored.

        Returns:
            Number of customers deleted

        Raises:
            InvalidStateError: If a selected customer is still referenced
        """
        self.companies.require_owned(company_id)
        ids = list(dict.fromkeys(customer_ids))
        chunk_size = self.config.delete_chunk_size
        deleted = 0

        try:
            with self.postgres.transaction() as tx:
                for start in range(0, len(ids), chunk_size):
                    rows = tx.execute_returning(
                        """
                        DELETE FROM customers
                        WHERE company_id = %s AND id = ANY(%s::uuid[])
                        RETURNING id, name
                        """,
                        (company_id, ids[start:start + chunk_size])
                    )
                    for row in rows:
                        self.audit.log_change(
                            entity_type="customer",
                            entity_id=row["id"],
                            action=AuditAction.DELETE,
                            changes={"deleted": {"name": row["name"], "bulk": True}},
                            company_id=company_id,
                            tx=tx,
                        )
                    deleted += len(rows)
        except PersistenceError as e:
            if e.is_foreign_key_violation:
                raise InvalidStateError(
                    "Some of the selected customers have documents or payments and cannot be deleted."
                ) from e
            raise

        logger.info(f"Deleted {deleted} of {len(ids)} customers for company {company_id}")
        return deleted

    def import_customers(self, company_id: UUID, records: Iterable[Mapping]) -> RowImportResult:
        """
        Create customers from CSV records, one per row.

        Rows without a name are skipped and rows that fail validation are
        reported by row number. Each batch is written in its own
        transaction; a batch the database rejects is reported and the
        following batches still go in.
        """
        self.companies.require_owned(company_id)
        customers, result = map_customer_records(records)
        batch_size = self.config.import_batch_size

        for start in range(0, len(customers), batch_size):
            batch = customers[start:start + batch_size]
            try:
                with self.postgres.transaction() as tx:
                    for data in batch:
                        self._insert(tx, company_id, data)
            except PersistenceError as e:
                logger.warning(f"Customer import batch at {start + 1} failed: {e}")
                result.errors.append(f"Customers {start + 1}-{start + len(batch)}: {e}")
                continue
            result.imported += len(batch)

        logger.info(
            f"Customer import for company {company_id}: {result.imported} imported, "
            f"{result.skipped} skipped, {len(result.errors)} errors"
        )
        return result

    def list_all(
        self,
        company_id: UUID,
        limit: int = 50,
        offset: int = 0
    ) -> list[Customer]:
        """
        List customers with pagination.

        Returns:
            Customers ordered by name, at most config.max_page_size
        """
        self.companies.require_owned(company_id)

        rows = self.postgres.execute(
            """
            SELECT * FROM customers
            WHERE company_id = %s
            ORDER BY lower(name), created_at
            LIMIT %s OFFSET %s
            """,
            (company_id, min(limit, self.config.max_page_size), offset)
        )

        return [Customer.model_validate(row) for row in rows]

    def search(self, company_id: UUID, query: str, limit: int = 20) -> list[Customer]:
        """
        Search customers by name, NTN/CNIC, phone, email or city.

        Uses ILIKE for case-insensitive partial matching.
        """
        self.companies.require_owned(company_id)
        pattern = f"%{escape_like(query.strip())}%"

        rows = self.postgres.execute(
            """
            SELECT * FROM customers
            WHERE company_id = %s
              AND (name ILIKE %s
               OR ntn_cnic ILIKE %s
               OR phone ILIKE %s
               OR email ILIKE %s
               OR city ILIKE %s)
            ORDER BY lower(name)
            LIMIT %s
            """,
            (company_id, pattern, pattern, pattern, pattern, pattern, min(limit, self.config.max_page_size))
        )

        return [Customer.model_validate(row) for row in rows]
