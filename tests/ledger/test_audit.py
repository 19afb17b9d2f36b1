"""Tests for the ledger audit trail."""

import time

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from ledger.audit import AuditAction, AuditLogger, compute_changes


class TestAuditAction:

    def test_values(self):
        assert [a.value for a in AuditAction] == [
            "create", "update", "delete", "convert", "allocate", "deallocate",
        ]


class TestComputeChanges:
    """Tests for compute_changes utility function."""

    def test_detects_changed_fields(self):
        old = {"status": "Draft", "total_amount": "100.00"}
        new = {"status": "Sent", "total_amount": "100.00"}

        changes = compute_changes(old, new)

        assert changes == {"status": {"old": "Draft", "new": "Sent"}}

    def test_detects_added_and_removed_fields(self):
        changes = compute_changes({"notes": "rush"}, {"valid_until": "2026-02-01"})

        assert changes["notes"] == {"old": "rush", "new": None}
        assert changes["valid_until"] == {"old": None, "new": "2026-02-01"}

    def test_excludes_updated_at_by_default(self):
        changes = compute_changes(
            {"status": "Draft", "updated_at": "2026-01-01T00:00:00Z"},
            {"status": "Draft", "updated_at": "2026-01-02T00:00:00Z"},
        )

        assert changes == {}

    def test_custom_exclude_fields(self):
        changes = compute_changes(
            {"status": "Draft", "total_amount": Decimal("1")},
            {"status": "Final", "total_amount": Decimal("2")},
            exclude_fields={"total_amount"},
        )

        assert set(changes) == {"status"}

    def test_equal_decimals_unchanged(self):
        """15.000 and 15.00 are the same amount."""
        assert compute_changes({"rate": Decimal("15.000")}, {"rate": Decimal("15.00")}) == {}

    def test_dates_compared_by_value(self):
        assert compute_changes({"d": date(2026, 1, 5)}, {"d": date(2026, 1, 5)}) == {}


class TestAuditLogger:
    """Tests for AuditLogger against the database."""

    def test_log_change_creates_entry(self, db, as_test_user):
        logger = AuditLogger(db)
        entity_id = uuid4()
        company_id = uuid4()

        logger.log_change(
            entity_type="estimate",
            entity_id=entity_id,
            action=AuditAction.CREATE,
            changes={"created": {"estimate_number": "EST-001"}},
            company_id=company_id,
        )

        entries = db.execute("SELECT * FROM audit_log WHERE entity_id = %s", (entity_id,))
        assert len(entries) == 1
        assert entries[0]["entity_type"] == "estimate"
        assert entries[0]["action"] == "create"
        assert entries[0]["company_id"] == company_id
        assert entries[0]["changes"] == {"created": {"estimate_number": "EST-001"}}

    def test_log_change_uses_context_user(self, db, as_test_user, test_user_id):
        logger = AuditLogger(db)
        entity_id = uuid4()

        logger.log_change("payment", entity_id, AuditAction.ALLOCATE, {"amount": "80.00"})

        entries = db.execute("SELECT user_id FROM audit_log WHERE entity_id = %s", (entity_id,))
        assert entries[0]["user_id"] == test_user_id

    def test_log_change_explicit_user_overrides(self, db, as_test_user, test_user_b_id):
        logger = AuditLogger(db)
        entity_id = uuid4()

        logger.log_change(
            "customer", entity_id, AuditAction.UPDATE,
            {"name": {"old": "A", "new": "B"}}, user_id=test_user_b_id,
        )

        entries = db.execute("SELECT user_id FROM audit_log WHERE entity_id = %s", (entity_id,))
        assert entries[0]["user_id"] == test_user_b_id

    def test_entry_rolls_back_with_transaction(self, db, as_test_user):
        logger = AuditLogger(db)
        entity_id = uuid4()

        with pytest.raises(RuntimeError):
            with db.transaction() as tx:
                logger.log_change("estimate", entity_id, AuditAction.CONVERT, {}, tx=tx)
                raise RuntimeError("abort")

        assert logger.get_entity_history("estimate", entity_id) == []

    def test_entity_history_newest_first(self, db, as_test_user):
        logger = AuditLogger(db)
        entity_id = uuid4()

        logger.log_change("estimate", entity_id, AuditAction.CREATE, {"created": {}})
        time.sleep(0.01)  # distinct timestamps
        logger.log_change("estimate", entity_id, AuditAction.UPDATE, {"status": {"old": "Draft", "new": "Sent"}})
        logger.log_change("estimate", uuid4(), AuditAction.CREATE, {"created": {}})

        history = logger.get_entity_history("estimate", entity_id)

        assert [h["action"] for h in history] == ["update", "create"]

    def test_entity_history_scoped_to_company(self, db, as_test_user):
        logger = AuditLogger(db)
        entity_id = uuid4()
        company_id = uuid4()

        logger.log_change("item", entity_id, AuditAction.CREATE, {"created": {}}, company_id=company_id)

        assert len(logger.get_entity_history("item", entity_id, company_id)) == 1
        assert logger.get_entity_history("item", entity_id, uuid4()) == []

    def test_company_activity_scoped_and_limited(self, db, as_test_user):
        logger = AuditLogger(db)
        company_id = uuid4()

        for i in range(5):
            logger.log_change("customer", uuid4(), AuditAction.CREATE, {"created": {"index": i}}, company_id=company_id)
        logger.log_change("customer", uuid4(), AuditAction.CREATE, {"created": {}}, company_id=uuid4())

        assert len(logger.get_company_activity(company_id)) == 5
        assert len(logger.get_company_activity(company_id, limit=3)) == 3
