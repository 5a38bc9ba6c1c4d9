"""
Test suite for audit module

Tests hash-chained audit trail, tamper detection and integrity verification.
"""

import pytest
from datetime import datetime, timezone, date

from fund_ledger.storage import InMemoryStorage
from fund_ledger.audit import AuditTrail, AuditEvent, AuditEventType


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def test_metadata_serialization(self):
        """Test that dates, enums and tuples become JSON-friendly values"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="EVT001",
            created_at=now,
            updated_at=now,
            event_type=AuditEventType.TRANSACTION_POSTED,
            entity_type="transaction",
            entity_id="TXN001",
            previous_hash="",
            current_hash="",
            metadata={
                "entry_date": date(2024, 1, 15),
                "event": AuditEventType.TRANSACTION_VOIDED,
                "line_ids": ("a", "b"),
                "nested": {"when": now},
            }
        )

        assert event.metadata["entry_date"] == "2024-01-15"
        assert event.metadata["event"] == "transaction_voided"
        assert event.metadata["line_ids"] == ["a", "b"]
        assert event.metadata["nested"]["when"] == now.isoformat()

    def test_hash_round_trip(self):
        """Test hash survives storage serialization"""
        now = datetime.now(timezone.utc)
        event = AuditEvent(
            id="EVT002", created_at=now, updated_at=now,
            event_type=AuditEventType.FUND_CREATED, entity_type="fund",
            entity_id="general", previous_hash="", current_hash="",
            metadata={"name": "Unrestricted"}
        )
        event.current_hash = event.calculate_hash()

        restored = AuditEvent.from_dict(event.to_dict())
        assert restored.verify_hash()


class TestAuditTrail:
    """Test the hash chain"""

    @pytest.fixture
    def trail(self):
        return AuditTrail(InMemoryStorage())

    def test_chain_links(self, trail):
        """Test each event points at its predecessor"""
        first = trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "checking",
                                {"account_number": 1010}, user_id="admin-1")
        second = trail.log_event(AuditEventType.ACCOUNT_UPDATED, "account", "checking",
                                 {"name": "Operating Checking"}, user_id="admin-1")

        assert first.previous_hash == ""
        assert first.sequence == 1
        assert second.previous_hash == first.current_hash
        assert second.sequence == 2
        assert trail.count_events() == 2

    def test_verify_integrity(self, trail):
        """Test hash chain verification and tamper detection"""
        for i in range(5):
            trail.log_event(AuditEventType.TRANSACTION_POSTED, "transaction", f"T{i}")

        result = trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_tampering_detected(self, trail):
        """Test that editing a stored event breaks its hash"""
        event = trail.log_event(AuditEventType.TRANSACTION_VOIDED, "transaction", "T1",
                                {"reason": "duplicate"})
        trail.log_event(AuditEventType.TRANSACTION_POSTED, "transaction", "T2")

        data = trail.storage.load(trail.table_name, event.id)
        data["metadata"]["reason"] = "edited"
        trail.storage.save(trail.table_name, event.id, data)

        result = trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"][0]["event_id"] == event.id

    def test_queries(self, trail):
        """Test event lookups by entity and type"""
        trail.log_event(AuditEventType.TRANSACTION_POSTED, "transaction", "T1")
        trail.log_event(AuditEventType.TRANSACTION_LINES_MOVED, "transaction", "T1")
        trail.log_event(AuditEventType.TRANSACTION_POSTED, "transaction", "T2")

        events = trail.get_events_for_entity("transaction", "T1")
        assert [e.event_type for e in events] == [
            AuditEventType.TRANSACTION_POSTED, AuditEventType.TRANSACTION_LINES_MOVED
        ]
        assert len(trail.get_events_by_type(AuditEventType.TRANSACTION_POSTED)) == 2
        assert len(trail.get_events_by_type(AuditEventType.TRANSACTION_POSTED, limit=1)) == 1

    def test_disabled_trail(self):
        """Test that a disabled trail records nothing"""
        trail = AuditTrail(InMemoryStorage(), enabled=False)
        assert trail.log_event(AuditEventType.FUND_CREATED, "fund", "f") is None
        assert trail.count_events() == 0

    def test_rolled_back_with_enclosing_block(self, trail):
        """Test an event logged inside a failed atomic block is discarded"""
        with pytest.raises(RuntimeError):
            with trail.storage.atomic():
                trail.log_event(AuditEventType.BUDGET_SAVED, "budget", "budget-2025")
                raise RuntimeError("write failed")
        assert trail.count_events() == 0
