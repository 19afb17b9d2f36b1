"""
Per-company document numbering.

Each company keeps a prefix and a next number for every document type on
its own row. A number is issued inside the transaction that creates the
document: the company row is locked, the number formatted, and the counter
advanced. If the document insert fails the transaction rolls back and the
counter is left where it was, so numbers are only consumed by documents
that actually exist.
"""

import logging
from uuid import UUID

from pydantic import BaseModel

from clients.postgres_client import PostgresClient, Transaction
from ledger.config import DEFAULT_CONFIG, LedgerConfig
from ledger.exceptions import NotFoundError
from ledger.models import DocumentType

logger = logging.getLogger(__name__)

# (prefix column, counter column, document table, number column)
_SEQUENCES = {
    DocumentType.ESTIMATE: (
        "estimate_prefix", "estimate_next_number", "estimates", "estimate_number",
    ),
    DocumentType.SALES_INVOICE: (
        "sales_invoice_prefix", "sales_invoice_next_number", "sales_invoices", "invoice_number",
    ),
    DocumentType.PURCHASE_INVOICE: (
        "purchase_invoice_prefix", "purchase_invoice_next_number", "purchase_invoices", "invoice_number",
    ),
    DocumentType.PAYMENT: (
        "payment_prefix", "payment_next_number", "customer_payments", "payment_number",
    ),
}


def format_document_number(prefix: str, sequence: int, digits: int = 3) -> str:
    """
    Format a document number as PREFIX-NNN.

    Sequences wider than `digits` are not truncated: ("EST", 1234) -> "EST-1234".
    """
    return f"{prefix}-{sequence:0{digits}d}"


class IssuedNumber(BaseModel):
    """A document number and the sequence value it was built from."""

    number: str
    prefix: str
    sequence: int


class NumberingService:
    """Service for issuing per-company document numbers."""

    def __init__(self, postgres: PostgresClient, config: LedgerConfig = DEFAULT_CONFIG):
        self.postgres = postgres
        self.config = config

    def _default_prefix(self, doc_type: DocumentType) -> str:
        return {
            DocumentType.ESTIMATE: self.config.estimate_prefix,
            DocumentType.SALES_INVOICE: self.config.sales_invoice_prefix,
            DocumentType.PURCHASE_INVOICE: self.config.purchase_invoice_prefix,
            DocumentType.PAYMENT: self.config.payment_prefix,
        }[doc_type]

    def _digits(self, doc_type: DocumentType) -> int:
        if doc_type == DocumentType.PAYMENT:
            return self.config.payment_number_digits
        return self.config.document_number_digits

    def _next_free(
        self,
        executor: PostgresClient | Transaction,
        company_id: UUID,
        doc_type: DocumentType,
        prefix: str,
        sequence: int,
    ) -> IssuedNumber:
        """
        First number at or after `sequence` not already used by a document.

        Imported documents keep their own numbers, which may sit ahead of
        the counter.
        """
        _, _, table, number_column = _SEQUENCES[doc_type]
        digits = self._digits(doc_type)

        while True:
            number = format_document_number(prefix, sequence, digits)
            taken = executor.execute_single(
                f"SELECT 1 AS taken FROM {table} WHERE company_id = %s AND {number_column} = %s",
                (company_id, number)
            )
            if taken is None:
                return IssuedNumber(number=number, prefix=prefix, sequence=sequence)
            sequence += 1

    def issue(self, tx: Transaction, company_id: UUID, doc_type: DocumentType) -> IssuedNumber:
        """
        Issue the next number for a document type and advance the counter.

        Must run inside the transaction that inserts the document. The
        company row stays locked until that transaction ends, so concurrent
        creations are serialized and never receive the same number.

        Args:
            tx: Open transaction of the document creation
            company_id: Owning company
            doc_type: Which sequence to draw from

        Returns:
            IssuedNumber with the formatted number

        Raises:
            NotFoundError: If the company does not exist
        """
        doc_type = DocumentType(doc_type)
        prefix_column, counter_column, _, _ = _SEQUENCES[doc_type]

        row = tx.execute_single(
            f"""
            SELECT {prefix_column} AS prefix, {counter_column} AS next_number
            FROM companies
            WHERE id = %s
            FOR UPDATE
            """,
            (company_id,)
        )
        if row is None:
            raise NotFoundError(f"Company {company_id} not found")

        prefix = (row["prefix"] or "").strip() or self._default_prefix(doc_type)
        issued = self._next_free(tx, company_id, doc_type, prefix, max(1, row["next_number"] or 1))

        tx.execute(
            f"UPDATE companies SET {counter_column} = %s, updated_at = now() WHERE id = %s",
            (issued.sequence + 1, company_id)
        )

        logger.info(f"Issued {doc_type.value} number {issued.number} for company {company_id}")
        return issued

    def peek(self, company_id: UUID, doc_type: DocumentType) -> str:
        """
        Number the next document of this type would receive.

        For display only; nothing is reserved.
        """
        doc_type = DocumentType(doc_type)
        prefix_column, counter_column, _, _ = _SEQUENCES[doc_type]

        row = self.postgres.execute_single(
            f"SELECT {prefix_column} AS prefix, {counter_column} AS next_number FROM companies WHERE id = %s",
            (company_id,)
        )
        if row is None:
            raise NotFoundError(f"Company {company_id} not found")

        prefix = (row["prefix"] or "").strip() or self._default_prefix(doc_type)
        return self._next_free(
            self.postgres, company_id, doc_type, prefix, max(1, row["next_number"] or 1)
        ).number
