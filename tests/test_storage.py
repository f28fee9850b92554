"""
Tests for storage backends

Both the in-memory and the SQLite backends must honor strict inserts, undo
a failed unit of work completely, and hold record locks across a unit.
"""

import pytest
import threading
import time
from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass

from loan_servicing.status import LoanStatus
from loan_servicing.storage import (
    DuplicateKeyError, InMemoryStorage, SQLiteStorage, StorageRecord, create_storage
)


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "storage.db")
    yield backend
    backend.close()


class TestBasicOperations:

    def test_save_and_load(self, storage):
        storage.save("loans", "L-1", {"id": "L-1", "balance": "100.00"})

        assert storage.load("loans", "L-1") == {"id": "L-1", "balance": "100.00"}
        assert storage.exists("loans", "L-1")
        assert storage.load("loans", "missing") is None

    def test_save_overwrites(self, storage):
        storage.save("loans", "L-1", {"balance": "100.00"})
        storage.save("loans", "L-1", {"balance": "50.00"})

        assert storage.load("loans", "L-1") == {"balance": "50.00"}
        assert storage.count("loans") == 1

    def test_insert_is_strict(self, storage):
        storage.insert("refs", "SLIP-1", {"transaction_id": "T-1"})

        with pytest.raises(DuplicateKeyError) as exc_info:
            storage.insert("refs", "SLIP-1", {"transaction_id": "T-2"})

        assert exc_info.value.record_id == "SLIP-1"
        assert storage.load("refs", "SLIP-1") == {"transaction_id": "T-1"}

    def test_find_and_load_all(self, storage):
        storage.save("loans", "L-1", {"client_id": "C-1", "status": "Active"})
        storage.save("loans", "L-2", {"client_id": "C-2", "status": "Active"})
        storage.save("loans", "L-3", {"client_id": "C-1", "status": "Closed"})

        assert len(storage.load_all("loans")) == 3
        assert storage.find("loans", {"client_id": "C-1", "status": "Active"}) == [
            {"client_id": "C-1", "status": "Active"}
        ]
        assert storage.find("loans", {"missing_field": "x"}) == []

    def test_returned_records_are_copies(self, storage):
        storage.save("loans", "L-1", {"meta": {"a": 1}})
        loaded = storage.load("loans", "L-1")
        loaded["meta"]["a"] = 2

        assert storage.load("loans", "L-1") == {"meta": {"a": 1}}


class TestUnitOfWork:

    def test_commit_keeps_writes(self, storage):
        with storage.atomic():
            storage.insert("refs", "R-1", {"v": 1})
            storage.save("loans", "L-1", {"v": 1})

        assert storage.load("refs", "R-1") == {"v": 1}
        assert storage.load("loans", "L-1") == {"v": 1}

    def test_rollback_undoes_everything(self, storage):
        storage.save("loans", "L-1", {"v": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("loans", "L-1", {"v": 2})
                storage.insert("loans", "L-2", {"v": 3})
                raise RuntimeError("boom")

        assert storage.load("loans", "L-1") == {"v": 1}
        assert storage.load("loans", "L-2") is None
        assert not storage.in_transaction()

    def test_nested_block_joins_outer(self, storage):
        storage.save("loans", "L-1", {"v": 1})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("loans", "L-1", {"v": 2})
                assert storage.in_transaction()
                raise RuntimeError("outer fails after inner finished")

        assert storage.load("loans", "L-1") == {"v": 1}

    def test_duplicate_insert_inside_unit_rolls_back(self, storage):
        storage.insert("refs", "R-1", {"v": 1})

        with pytest.raises(DuplicateKeyError):
            with storage.atomic():
                storage.save("loans", "L-1", {"v": 1})
                storage.insert("refs", "R-1", {"v": 2})

        assert storage.load("loans", "L-1") is None

    def test_load_for_update_requires_unit(self, storage):
        storage.save("loans", "L-1", {"v": 1})

        with pytest.raises(RuntimeError):
            storage.load_for_update("loans", "L-1")

    def test_locked_record_blocks_second_writer(self, storage):
        storage.save("loans", "L-1", {"v": 0})
        first_locked = threading.Event()
        release_first = threading.Event()
        order = []

        def first():
            with storage.atomic():
                storage.load_for_update("loans", "L-1")
                first_locked.set()
                release_first.wait(5)
                storage.save("loans", "L-1", {"v": 1})
                order.append("first")

        def second():
            first_locked.wait(5)
            with storage.atomic():
                data = storage.load_for_update("loans", "L-1")
                order.append(("second", data["v"]))

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for thread in threads:
            thread.start()

        time.sleep(0.2)
        assert order == []

        release_first.set()
        for thread in threads:
            thread.join(5)

        assert order == ["first", ("second", 1)]


class TestInMemoryIsolation:

    def run_unit_in_thread(self, storage, body, finish):
        written = threading.Event()
        release = threading.Event()

        def unit():
            try:
                with storage.atomic():
                    body()
                    written.set()
                    release.wait(5)
                    if not finish:
                        raise RuntimeError("roll back")
            except RuntimeError:
                pass

        thread = threading.Thread(target=unit)
        thread.start()
        assert written.wait(5)
        return thread, release

    def test_uncommitted_writes_hidden_from_other_threads(self):
        storage = InMemoryStorage()
        storage.save("loans", "L-1", {"v": 0})

        def body():
            storage.save("loans", "L-1", {"v": 1})
            storage.insert("refs", "SLIP-001", {"loan_id": "L-1"})

        thread, release = self.run_unit_in_thread(storage, body, finish=True)

        assert storage.load("loans", "L-1") == {"v": 0}
        assert storage.load("refs", "SLIP-001") is None
        assert not storage.exists("refs", "SLIP-001")
        assert storage.find("refs", {"loan_id": "L-1"}) == []
        assert storage.count("refs") == 0

        release.set()
        thread.join(5)

        assert storage.load("loans", "L-1") == {"v": 1}
        assert storage.load("refs", "SLIP-001") == {"loan_id": "L-1"}

    def test_competing_insert_waits_for_commit(self):
        storage = InMemoryStorage()
        thread, release = self.run_unit_in_thread(
            storage, lambda: storage.insert("refs", "SLIP-001", {"owner": "first"}), finish=True
        )
        errors = []

        def second():
            try:
                storage.insert("refs", "SLIP-001", {"owner": "second"})
            except DuplicateKeyError as e:
                errors.append(e)

        competitor = threading.Thread(target=second)
        competitor.start()
        time.sleep(0.2)
        assert errors == []

        release.set()
        thread.join(5)
        competitor.join(5)

        assert len(errors) == 1
        assert storage.load("refs", "SLIP-001") == {"owner": "first"}

    def test_competing_insert_succeeds_after_rollback(self):
        storage = InMemoryStorage()
        thread, release = self.run_unit_in_thread(
            storage, lambda: storage.insert("refs", "SLIP-001", {"owner": "first"}), finish=False
        )
        competitor = threading.Thread(
            target=lambda: storage.insert("refs", "SLIP-001", {"owner": "second"})
        )
        competitor.start()

        release.set()
        thread.join(5)
        competitor.join(5)

        assert storage.load("refs", "SLIP-001") == {"owner": "second"}


class TestStorageRecord:

    def test_to_dict_converts_values(self):
        @dataclass
        class Sample(StorageRecord):
            amount: Decimal
            due: date
            status: LoanStatus

        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        record = Sample(id="S-1", created_at=now, updated_at=now,
                        amount=Decimal("10.50"), due=date(2024, 2, 1), status=LoanStatus.OVERDUE)

        assert record.to_dict() == {
            "id": "S-1",
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
            "amount": "10.50",
            "due": "2024-02-01",
            "status": "Overdue",
        }


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        path = tmp_path / "loans.db"
        storage = create_storage(f"sqlite:///{path}")

        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == str(path)
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("mysql://localhost/loans")
