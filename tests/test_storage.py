"""
Tests for storage backends and atomic blocks
"""

import pytest
from datetime import datetime, timezone

from loan_servicing.storage import InMemoryStorage, SQLiteStorage, create_storage


record = {
    "id": "inst-1",
    "loan_id": "loan-1",
    "due_principal": "80000",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        storage = InMemoryStorage()
    else:
        storage = SQLiteStorage(tmp_path / "servicing.db")
    yield storage
    storage.close()


class TestStorageBackends:
    """Behaviour shared by both backends"""

    def test_basic_operations(self, backend):
        backend.save("installments", "inst-1", record)
        assert backend.load("installments", "inst-1") == record
        assert backend.exists("installments", "inst-1")
        assert backend.count("installments") == 1
        assert backend.find("installments", {"loan_id": "loan-1"}) == [record]
        assert backend.find("installments", {"loan_id": "loan-2"}) == []

        assert backend.delete("installments", "inst-1") is True
        assert backend.delete("installments", "inst-1") is False
        assert backend.load("installments", "inst-1") is None

    def test_loaded_records_are_copies(self, backend):
        backend.save("installments", "inst-1", record)
        loaded = backend.load("installments", "inst-1")
        loaded["due_principal"] = "0"
        assert backend.load("installments", "inst-1")["due_principal"] == "80000"

    def test_atomic_commits_on_success(self, backend):
        with backend.atomic():
            backend.save("installments", "inst-1", record)
            backend.save("loans", "loan-1", {"id": "loan-1"})
        assert backend.exists("installments", "inst-1")
        assert backend.exists("loans", "loan-1")

    def test_atomic_rolls_back_everything_on_error(self, backend):
        backend.save("installments", "inst-1", record)

        with pytest.raises(RuntimeError):
            with backend.atomic():
                backend.save("installments", "inst-1", dict(record, due_principal="0"))
                backend.save("installments", "inst-2", dict(record, id="inst-2"))
                raise RuntimeError("boom")

        assert backend.load("installments", "inst-1")["due_principal"] == "80000"
        assert not backend.exists("installments", "inst-2")

    def test_nested_atomic_joins_outer_block(self, backend):
        with pytest.raises(RuntimeError):
            with backend.atomic():
                with backend.atomic():
                    backend.save("installments", "inst-1", record)
                raise RuntimeError("outer failure")

        assert not backend.exists("installments", "inst-1")

    def test_clear_table(self, backend):
        backend.save("installments", "inst-1", record)
        backend.clear_table("installments")
        assert backend.count("installments") == 0


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        storage = create_storage(f"sqlite:///{tmp_path / 'loans.db'}")
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("postgresql://localhost/loans")
