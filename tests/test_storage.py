"""
Test suite for storage backends

Both backends must behave the same: CRUD, write-once inserts, counters and
atomic blocks that roll back every write on failure.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from loan_engine.currency import Money, Currency
from loan_engine.loans import ScheduleItem, ScheduleItemStatus
from loan_engine.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "engine.db")
    yield backend
    backend.close()


class TestCrud:
    """Test basic record operations"""

    def test_save_and_load(self, storage):
        """Saved records come back unchanged"""
        storage.save("loans", "L1", {"id": "L1", "status": "pending", "amount": "100.00"})

        assert storage.load("loans", "L1") == {"id": "L1", "status": "pending", "amount": "100.00"}
        assert storage.exists("loans", "L1")
        assert storage.load("loans", "missing") is None
        assert storage.count("loans") == 1

    def test_save_overwrites(self, storage):
        """A second save replaces the record"""
        storage.save("loans", "L1", {"id": "L1", "status": "pending"})
        storage.save("loans", "L1", {"id": "L1", "status": "active"})
        assert storage.load("loans", "L1")["status"] == "active"
        assert storage.count("loans") == 1

    def test_save_if_absent(self, storage):
        """Write-once inserts refuse an existing id"""
        assert storage.save_if_absent("register", "R1", {"serial": "LH/2026/001"})
        assert not storage.save_if_absent("register", "R1", {"serial": "LH/2026/002"})
        assert storage.load("register", "R1")["serial"] == "LH/2026/001"

    def test_find_with_filters(self, storage):
        """Filters match exact values; a list matches any member"""
        storage.save("loans", "L1", {"id": "L1", "status": "active", "member_id": "M1"})
        storage.save("loans", "L2", {"id": "L2", "status": "closed", "member_id": "M1"})
        storage.save("loans", "L3", {"id": "L3", "status": "disbursed", "member_id": "M2"})

        assert {r["id"] for r in storage.find("loans", {"member_id": "M1"})} == {"L1", "L2"}
        open_loans = storage.find("loans", {"status": ["active", "disbursed"]})
        assert {r["id"] for r in open_loans} == {"L1", "L3"}
        assert storage.find("loans", {"missing_field": 1}) == []

    def test_delete_and_clear(self, storage):
        """Deletes report whether anything was removed"""
        storage.save("loans", "L1", {"id": "L1"})
        storage.save("loans", "L2", {"id": "L2"})

        assert storage.delete("loans", "L1")
        assert not storage.delete("loans", "L1")
        storage.clear_table("loans")
        assert storage.load_all("loans") == []

    def test_loaded_records_are_copies(self, storage):
        """Mutating a loaded record does not change storage"""
        storage.save("loans", "L1", {"id": "L1", "tags": ["a"]})
        record = storage.load("loans", "L1")
        record["tags"].append("b")
        assert storage.load("loans", "L1")["tags"] == ["a"]


class TestCounters:
    """Test named counters"""

    def test_counter_increments(self, storage):
        """Counters start at one and are independent per key"""
        assert storage.increment_counter("serial", "2026") == 1
        assert storage.increment_counter("serial", "2026") == 2
        assert storage.increment_counter("serial", "2027") == 1

    def test_counter_floor(self, storage):
        """The floor lifts a counter that lags behind existing data"""
        assert storage.increment_counter("serial", "2026", floor=5) == 6
        assert storage.increment_counter("serial", "2026", floor=2) == 7


class TestAtomic:
    """Test transactions"""

    def test_commit(self, storage):
        """Writes inside a successful block persist"""
        with storage.atomic():
            storage.save("loans", "L1", {"id": "L1"})
            storage.save("schedule", "S1", {"id": "S1"})
        assert storage.exists("loans", "L1")
        assert storage.exists("schedule", "S1")

    def test_rollback_on_error(self, storage):
        """An exception discards every write in the block, counters included"""
        storage.save("loans", "L1", {"id": "L1", "status": "pending"})
        storage.increment_counter("serial", "2026")

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("loans", "L1", {"id": "L1", "status": "disbursed"})
                storage.save("schedule", "S1", {"id": "S1"})
                storage.increment_counter("serial", "2026")
                raise RuntimeError("boom")

        assert storage.load("loans", "L1")["status"] == "pending"
        assert not storage.exists("schedule", "S1")
        assert storage.increment_counter("serial", "2026") == 2

    def test_nested_blocks_join(self, storage):
        """An inner failure rolls back the whole outer block"""
        with pytest.raises(ValueError):
            with storage.atomic():
                storage.save("loans", "L1", {"id": "L1"})
                with storage.atomic():
                    storage.save("loans", "L2", {"id": "L2"})
                raise ValueError("outer fails after inner succeeded")

        assert not storage.exists("loans", "L1")
        assert not storage.exists("loans", "L2")


class TestRecords:
    """Test StorageRecord serialization"""

    def test_schedule_item_round_trip(self):
        """Money, enums and dates survive to_dict/from_dict"""
        now = datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)
        item = ScheduleItem(
            id="L1:001", created_at=now, updated_at=now, loan_id="L1", currency=Currency.NGN,
            installment_number=1, due_date=date(2026, 2, 15),
            principal_amount=Money(Decimal("7884.88"), Currency.NGN),
            interest_amount=Money(Decimal("1000.00"), Currency.NGN),
            total_amount=Money(Decimal("8884.88"), Currency.NGN),
            paid_amount=Money.zero(Currency.NGN),
            status=ScheduleItemStatus.PENDING,
        )

        data = item.to_dict()
        assert data["principal_amount"] == "7884.88"
        assert data["currency"] == "NGN"
        assert data["status"] == "pending"
        assert data["due_date"] == "2026-02-15"
        assert ScheduleItem.from_dict(data) == item

    def test_sqlite_persists_across_connections(self, tmp_path):
        """Data written by one connection is visible to the next"""
        path = tmp_path / "persist.db"
        first = SQLiteStorage(path)
        first.save("loans", "L1", {"id": "L1"})
        first.increment_counter("serial", "2026")
        first.close()

        second = SQLiteStorage(path)
        assert second.load("loans", "L1") == {"id": "L1"}
        assert second.increment_counter("serial", "2026") == 2
        second.close()
