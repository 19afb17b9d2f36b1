"""
Company (tenant) service.

Every tenant-scoped operation starts with require_owned(), which resolves
the company only when it belongs to the signed-in user.
"""

import logging
from decimal import Decimal
from uuid import UUID, uuid4

from clients.postgres_client import PostgresClient, Transaction
from ledger.audit import AuditLogger, AuditAction, compute_changes
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.exceptions import AuthorizationError, NotFoundError
from ledger.models import (
    Company, CompanyCreate, CompanyUpdate, SalesTaxRate, SalesTaxRateCreate,
    WithholdingTaxRate, WithholdingTaxRateCreate,
)
from utils.timezone import now_utc
from utils.user_context import get_current_user_id

logger = logging.getLogger(__name__)

# Valid columns that can be updated
_UPDATABLE_COLUMNS = {
    "name", "ntn", "cnic", "gst_number", "registration_type",
    "address", "city", "province", "phone", "email", "logo_url",
    "estimate_prefix", "sales_invoice_prefix", "purchase_invoice_prefix", "payment_prefix",
}

# audit entity type -> (table, model)
_RATE_TABLES = {
    "sales_tax_rate": ("company_sales_tax_rates", SalesTaxRate),
    "withholding_tax_rate": ("company_withholding_tax_rates", WithholdingTaxRate),
}


class CompanyService:
    """Service for company operations."""

    def __init__(self, postgres: PostgresClient, audit: AuditLogger, config: LedgerConfig = DEFAULT_CONFIG):
        self.postgres = postgres
        self.audit = audit
        self.config = config

    def require_owned(self, company_id: UUID) -> Company:
        """
        Resolve a company owned by the current user.

        Args:
            company_id: Company UUID

        Returns:
            The company

        Raises:
            NotAuthenticatedError: If no user is signed in
            AuthorizationError: If the company does not exist or is not the caller's
        """
        user_id = get_current_user_id()

        row = self.postgres.execute_single(
            "SELECT * FROM companies WHERE id = %s AND user_id = %s",
            (company_id, user_id)
        )
        if row is None:
            raise AuthorizationError("Company not found or access denied.")

        return Company.model_validate(row)

    def create(self, data: CompanyCreate) -> Company:
        """
        Create a company owned by the current user.

        Prefixes left blank fall back to the configured defaults; every
        counter starts at 1.
        """
        user_id = get_current_user_id()
        company_id = uuid4()
        now = now_utc()

        with self.postgres.transaction() as tx:
            row = tx.execute_returning(
                """
                INSERT INTO companies (
                    id, user_id, name, ntn, cnic, gst_number, registration_type,
                    address, city, province, phone, email, logo_url,
                    estimate_prefix, sales_invoice_prefix, purchase_invoice_prefix, payment_prefix,
                    created_at, updated_at
                ) VALUES (
                    %s, %s, %s, %s, %s, %s, %s,
                    %s, %s, %s, %s, %s, %s,
                    %s, %s, %s, %s,
                    %s, %s
                )
                RETURNING *
                """,
                (
                    company_id, user_id, data.name, data.ntn, data.cnic, data.gst_number,
                    data.registration_type.value if data.registration_type else None,
                    data.address, data.city, data.province, data.phone, data.email, data.logo_url,
                    data.estimate_prefix or self.config.estimate_prefix,
                    data.sales_invoice_prefix or self.config.sales_invoice_prefix,
                    data.purchase_invoice_prefix or self.config.purchase_invoice_prefix,
                    data.payment_prefix or self.config.payment_prefix,
                    now, now
                )
            )[0]

            company = Company.model_validate(row)

            self.audit.log_change(
                entity_type="company",
                entity_id=company.id,
                action=AuditAction.CREATE,
                changes={"created": data.model_dump(mode="json", exclude_none=True)},
                company_id=company.id,
                tx=tx,
            )

        logger.info(f"Company {company.id} created")
        return company

    def list_for_user(self) -> list[Company]:
        """Companies owned by the current user, oldest first."""
        user_id = get_current_user_id()

        rows = self.postgres.execute(
            "SELECT * FROM companies WHERE user_id = %s ORDER BY created_at",
            (user_id,)
        )

        return [Company.model_validate(row) for row in rows]

    def update(self, company_id: UUID, data: CompanyUpdate) -> Company:
        """
        Update company fields.

        Args:
            company_id: Company UUID
            data: Fields to update (only non-None fields are changed)

        Returns:
            Updated company

        Raises:
            AuthorizationError: If the company is not the caller's
        """
        current = self.require_owned(company_id)

        updates = data.model_dump(mode="json", exclude_none=True)
        if not updates:
            return current

        for field in updates:
            if field not in _UPDATABLE_COLUMNS:
                logger.warning(
                    f"Attempted to update unknown field '{field}' on company {company_id}"
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
        params.append(company_id)

        with self.postgres.transaction() as tx:
            row = tx.execute_returning(
                f"""
                UPDATE companies
                SET {', '.join(set_parts)}
                WHERE id = %s
                RETURNING *
                """,
                tuple(params)
            )[0]

            updated = Company.model_validate(row)

            changes = compute_changes(
                current.model_dump(mode="json"),
                updated.model_dump(mode="json")
            )
            if changes:
                self.audit.log_change(
                    entity_type="company",
                    entity_id=company_id,
                    action=AuditAction.UPDATE,
                    changes=changes,
                    company_id=company_id,
                    tx=tx,
                )

        return updated

    # -------------------------------------------------------------------------
    # Tax rates
    # -------------------------------------------------------------------------

    def _create_rate(self, entity_type: str, company_id: UUID, data: SalesTaxRateCreate):
        table, model = _RATE_TABLES[entity_type]
        self.require_owned(company_id)

        with self.postgres.transaction() as tx:
            row = tx.execute_returning(
                f"""
                INSERT INTO {table} (id, company_id, name, rate, description, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (uuid4(), company_id, data.name, data.rate, data.description, now_utc())
            )[0]

            rate = model.model_validate(row)

            self.audit.log_change(
                entity_type=entity_type,
                entity_id=rate.id,
                action=AuditAction.CREATE,
                changes={"created": data.model_dump(mode="json", exclude_none=True)},
                company_id=company_id,
                tx=tx,
            )

        return rate

    def _list_rates(self, entity_type: str, company_id: UUID) -> list:
        table, model = _RATE_TABLES[entity_type]
        self.require_owned(company_id)

        rows = self.postgres.execute(
            f"SELECT * FROM {table} WHERE company_id = %s ORDER BY name, created_at",
            (company_id,)
        )

        return [model.model_validate(row) for row in rows]

    def _delete_rate(self, entity_type: str, company_id: UUID, rate_id: UUID) -> bool:
        table, _ = _RATE_TABLES[entity_type]
        self.require_owned(company_id)

        with self.postgres.transaction() as tx:
            rows = tx.execute_returning(
                f"DELETE FROM {table} WHERE id = %s AND company_id = %s RETURNING name, rate",
                (rate_id, company_id)
            )
            if not rows:
                return False

            self.audit.log_change(
                entity_type=entity_type,
                entity_id=rate_id,
                action=AuditAction.DELETE,
                changes={"deleted": {"name": rows[0]["name"], "rate": str(rows[0]["rate"])}},
                company_id=company_id,
                tx=tx,
            )

        return True

    def create_tax_rate(self, company_id: UUID, data: SalesTaxRateCreate) -> SalesTaxRate:
        """Add a sales tax rate to the company."""
        return self._create_rate("sales_tax_rate", company_id, data)

    def list_tax_rates(self, company_id: UUID) -> list[SalesTaxRate]:
        """Tax rates of the company, by name."""
        return self._list_rates("sales_tax_rate", company_id)

    def delete_tax_rate(self, company_id: UUID, rate_id: UUID) -> bool:
        """
        Remove a sales tax rate.

        Documents and items that pointed at it keep their stored totals and
        lose the reference.

        Returns:
            True if deleted, False if not found in the company
        """
        return self._delete_rate("sales_tax_rate", company_id, rate_id)

    def create_withholding_rate(self, company_id: UUID, data: WithholdingTaxRateCreate) -> WithholdingTaxRate:
        """Add a withholding tax rate to the company."""
        return self._create_rate("withholding_tax_rate", company_id, data)

    def list_withholding_rates(self, company_id: UUID) -> list[WithholdingTaxRate]:
        """Withholding tax rates of the company, by name."""
        return self._list_rates("withholding_tax_rate", company_id)

    def delete_withholding_rate(self, company_id: UUID, rate_id: UUID) -> bool:
        """Remove a withholding tax rate. Returns False if not found in the company."""
        return self._delete_rate("withholding_tax_rate", company_id, rate_id)

    def get_tax_rate_percent(
        self,
        company_id: UUID,
        rate_id: UUID | None,
        tx: Transaction | None = None,
    ) -> Decimal | None:
        """
        Look up the percent of a company tax rate.

        Args:
            company_id: Company the rate must belong to
            rate_id: Rate UUID, or None for no tax
            tx: Open transaction to read through

        Returns:
            Rate in percent, or None when rate_id is None

        Raises:
            NotFoundError: If the rate is not one of the company's
        """
        if rate_id is None:
            return None

        executor = tx if tx is not None else self.postgres
        row = executor.execute_single(
            "SELECT rate FROM company_sales_tax_rates WHERE id = %s AND company_id = %s",
            (rate_id, company_id)
        )
        if row is None:
            raise NotFoundError(f"Sales tax rate {rate_id} not found")

        return Decimal(row["rate"])
