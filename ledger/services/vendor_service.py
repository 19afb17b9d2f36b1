"""Vendor (supplier) service. Vendors are the counterparties of purchase invoices."""

import logging
from collections.abc import Iterable, Mapping
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, Transaction
from ledger.audit import AuditLogger, AuditAction, compute_changes
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.csv_mapping import map_vendor_records
from ledger.exceptions import InvalidStateError, NotFoundError, PersistenceError
from ledger.models import RowImportResult, Vendor, VendorCreate, VendorUpdate
from ledger.services.company_service import CompanyService
from ledger.services.customer_service import escape_like
from utils.timezone import now_utc

logger = logging.getLogger(__name__)

# Valid columns that can be updated
_UPDATABLE_COLUMNS = {"name", "ntn_cnic", "address", "city", "province", "phone", "email"}


class VendorService:
    """Service for vendor operations."""

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

    def _insert(self, tx: Transaction, company_id: UUID, data: VendorCreate) -> Vendor:
        now = now_utc()

        row = tx.execute_returning(
            """
            INSERT INTO vendors (
                id, company_id, name, ntn_cnic,
                address, city, province, phone, email,
                created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                uuid4(), company_id, data.name, data.ntn_cnic,
                data.address, data.city, data.province, data.phone, data.email,
                now, now
            )
        )[0]

        vendor = Vendor.model_validate(row)

        self.audit.log_change(
            entity_type="vendor",
            entity_id=vendor.id,
            action=AuditAction.CREATE,
            changes={"created": data.model_dump(mode="json", exclude_none=True)},
            company_id=company_id,
            tx=tx,
        )

        return vendor

    def create(self, company_id: UUID, data: VendorCreate) -> Vendor:
        """Create a new vendor in the company."""
        self.companies.require_owned(company_id)

        with self.postgres.transaction() as tx:
            return self._insert(tx, company_id, data)

    def get_by_id(self, company_id: UUID, vendor_id: UUID) -> Vendor | None:
        self.companies.require_owned(company_id)

        row = self.postgres.execute_single(
            "SELECT * FROM vendors WHERE id = %s AND company_id = %s",
            (vendor_id, company_id)
        )

        return Vendor.model_validate(row) if row else None

    def require(self, company_id: UUID, vendor_id: UUID) -> Vendor:
        """Like get_by_id, but raises NotFoundError when missing."""
        vendor = self.get_by_id(company_id, vendor_id)
        if vendor is None:
            raise NotFoundError(f"Vendor {vendor_id} not found")
        return vendor

    def find_by_name(self, company_id: UUID, name: str) -> Vendor | None:
        """Find a vendor by exact name, ignoring case. Oldest wins on duplicates."""
        name = (name or "").strip()
        if not name:
            return None

        row = self.postgres.execute_single(
            """
            SELECT * FROM vendors
            WHERE company_id = %s AND name ILIKE %s
            ORDER BY created_at
            LIMIT 1
            """,
            (company_id, escape_like(name))
        )

        return Vendor.model_validate(row) if row else None

    def update(self, company_id: UUID, vendor_id: UUID, data: VendorUpdate) -> Vendor:
        """
        Update vendor fields (only non-None fields are changed).

        Raises:
            NotFoundError: If vendor not found
        """
        current = self.require(company_id, vendor_id)

        updates = data.model_dump(mode="json", exclude_none=True)
        for field in updates:
            if field not in _UPDATABLE_COLUMNS:
                logger.warning(
                    f"Attempted to update unknown field '{field}' on vendor {vendor_id}"
                )

        valid_updates = {k: v for k, v in updates.items() if k in _UPDATABLE_COLUMNS}
        if not valid_updates:
            return current

        set_clause = ", ".join(f"{field} = %s" for field in valid_updates)
        params = (*valid_updates.values(), now_utc(), vendor_id, company_id)

        with self.postgres.transaction() as tx:
            row = tx.execute_returning(
                f"""
                UPDATE vendors
                SET {set_clause}, updated_at = %s
                WHERE id = %s AND company_id = %s
                RETURNING *
                """,
                params
            )[0]

            updated = Vendor.model_validate(row)

            changes = compute_changes(
                current.model_dump(mode="json"),
                updated.model_dump(mode="json")
            )
            if changes:
                self.audit.log_change(
                    entity_type="vendor",
                    entity_id=vendor_id,
                    action=AuditAction.UPDATE,
                    changes=changes,
                    company_id=company_id,
                    tx=tx,
                )

        return updated

    def delete(self, company_id: UUID, vendor_id: UUID) -> bool:
        """
        Delete a vendor.

        Returns:
            True if deleted, False if not found

        Raises:
            InvalidStateError: If purchase invoices still reference the vendor
        """
        current = self.get_by_id(company_id, vendor_id)
        if current is None:
            return False

        try:
            with self.postgres.transaction() as tx:
                tx.execute(
                    "DELETE FROM vendors WHERE id = %s AND company_id = %s",
                    (vendor_id, company_id)
                )
                self.audit.log_change(
                    entity_type="vendor",
                    entity_id=vendor_id,
                    action=AuditAction.DELETE,
                    changes={"deleted": current.model_dump(mode="json")},
                    company_id=company_id,
                    tx=tx,
                )
        except PersistenceError as e:
            if e.is_foreign_key_violation:
                raise InvalidStateError(
                    f"Vendor '{current.name}' has purchase invoices and cannot be deleted."
                ) from e
            raise

        return True

    def delete_many(self, company_id: UUID, vendor_ids: list[UUID]) -> int:
        """
        Delete several vendors in one transaction, a chunk of ids per statement.

        When any of them still has purchase invoices, none are deleted.

        Raises:
            InvalidStateError: If a selected vendor is still referenced
        """
        self.companies.require_owned(company_id)
        ids = list(dict.fromkeys(vendor_ids))
        chunk_size = self.config.delete_chunk_size
        deleted = 0

        try:
            with self.postgres.transaction() as tx:
                for start in range(0, len(ids), chunk_size):
                    rows = tx.execute_returning(
                        """
                        DELETE FROM vendors
                        WHERE company_id = %s AND id = ANY(%s::uuid[])
                        RETURNING id, name
                        """,
                        (company_id, ids[start:start + chunk_size])
                    )
                    for row in rows:
                        self.audit.log_change(
                            entity_type="vendor",
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
                    "Some of the selected vendors have purchase invoices and cannot be deleted."
                ) from e
            raise

        logger.info(f"Deleted {deleted} of {len(ids)} vendors for company {company_id}")
        return deleted

    def import_vendors(self, company_id: UUID, records: Iterable[Mapping]) -> RowImportResult:
        """Create vendors from CSV records, batch by batch, like CustomerService.import_customers()."""
        self.companies.require_owned(company_id)
        vendors, result = map_vendor_records(records)
        batch_size = self.config.import_batch_size

        for start in range(0, len(vendors), batch_size):
            batch = vendors[start:start + batch_size]
            try:
                with self.postgres.transaction() as tx:
                    for data in batch:
                        self._insert(tx, company_id, data)
            except PersistenceError as e:
                logger.warning(f"Vendor import batch at {start + 1} failed: {e}")
                result.errors.append(f"Vendors {start + 1}-{start + len(batch)}: {e}")
                continue
            result.imported += len(batch)

        logger.info(
            f"Vendor import for company {company_id}: {result.imported} imported, "
            f"{result.skipped} skipped, {len(result.errors)} errors"
        )
        return result

    def list_all(self, company_id: UUID, limit: int = 50, offset: int = 0) -> list[Vendor]:
        """List vendors ordered by name, at most config.max_page_size."""
        self.companies.require_owned(company_id)

        rows = self.postgres.execute(
            """
            SELECT * FROM vendors
            WHERE company_id = %s
            ORDER BY lower(name), created_at
            LIMIT %s OFFSET %s
            """,
            (company_id, min(limit, self.config.max_page_size), offset)
        )

        return [Vendor.model_validate(row) for row in rows]

    def search(self, company_id: UUID, query: str, limit: int = 20) -> list[Vendor]:
        """Search vendors by name, NTN/CNIC or phone."""
        self.companies.require_owned(company_id)
        pattern = f"%{escape_like(query.strip())}%"

        rows = self.postgres.execute(
            """
            SELECT * FROM vendors
            WHERE company_id = %s
              AND (name ILIKE %s OR ntn_cnic ILIKE %s OR phone ILIKE %s)
            ORDER BY lower(name)
            LIMIT %s
            """,
            (company_id, pattern, pattern, pattern, min(limit, self.config.max_page_size))
        )

        return [Vendor.model_validate(row) for row in rows]
