"""Shared test fixtures for the ledger test suite."""

import os
import pytest
from uuid import UUID
from pathlib import Path
from unittest.mock import MagicMock

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might use env vars
# override=True ensures .env takes precedence over shell env vars
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

# Drop any Vault login or secrets cached before the env was loaded
from clients.vault_client import clear_secret_cache
clear_secret_cache()

from clients.postgres_client import PostgresClient, Transaction
from utils.user_context import user_context, clear_current_user_id


SCHEMA_PATH = Path(__file__).parent.parent / "schema.sql"


# =============================================================================
# TEST USER CONSTANTS
# =============================================================================

# Primary test user - use for single-user tests
TEST_USER_ID = UUID("00000000-0000-0000-0000-000000000001")

# Secondary test user - use for tenant isolation tests
TEST_USER_B_ID = UUID("00000000-0000-0000-0000-000000000002")


# =============================================================================
# USER CONTEXT FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def reset_user_context():
    """Ensure clean user context before and after each test."""
    clear_current_user_id()
    yield
    clear_current_user_id()


@pytest.fixture
def test_user_id() -> UUID:
    """The primary test user's ID."""
    return TEST_USER_ID


@pytest.fixture
def test_user_b_id() -> UUID:
    """The secondary test user's ID (for isolation tests)."""
    return TEST_USER_B_ID


@pytest.fixture
def as_test_user(test_user_id):
    """Context manager that sets primary test user context."""
    with user_context(test_user_id):
        yield test_user_id


@pytest.fixture
def as_test_user_b(test_user_b_id):
    """Context manager that sets secondary test user context."""
    with user_context(test_user_b_id):
        yield test_user_b_id


# =============================================================================
# DATABASE FIXTURES
# =============================================================================


@pytest.fixture(scope="session")
def db_client():
    """
    Session-scoped PostgresClient for TEST_DATABASE_URL with schema.sql applied.

    Database-backed tests are skipped when TEST_DATABASE_URL is not set.
    """
    url = os.getenv("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL not set")

    client = PostgresClient(url)
    client.execute(SCHEMA_PATH.read_text())
    yield client
    client.close()


@pytest.fixture
def db(db_client):
    """Database client with every ledger table emptied before the test."""
    # CASCADE handles foreign keys
    db_client.execute("""
        TRUNCATE
            companies, company_sales_tax_rates, company_withholding_tax_rates,
            customers, vendors, items,
            estimates, estimate_items, sales_invoices, sales_invoice_items,
            purchase_invoices, purchase_invoice_items,
            customer_payments, customer_payment_allocations, audit_log
        CASCADE
    """)
    yield db_client


# =============================================================================
# MOCK DATABASE FIXTURES
# =============================================================================


@pytest.fixture
def mock_tx():
    """Transaction double; configure execute_single/execute_scalar per test."""
    return MagicMock(spec=Transaction)


@pytest.fixture
def mock_db(mock_tx):
    """PostgresClient double whose transaction() yields mock_tx."""
    postgres = MagicMock(spec=PostgresClient)
    postgres.transaction.return_value.__enter__.return_value = mock_tx
    postgres.transaction.return_value.__exit__.return_value = False
    return postgres
