"""
Tests for the local transactional store.
"""

import pytest

from scholartrack.client.local_store import (
    LocalStore, ConstraintError, SchemaError, StoreError, StoreNotOpenError,
    REQUIRED_COLLECTIONS, LATEST_VERSION,
    STUDENTS, CLASSES, TRANSACTIONS, STYLE_SETTINGS, CUSTOM_STATUS_TYPES
)
from conftest import make_student, make_transaction


class TestOpenAndUpgrade:
    """Schema versions are applied additively."""

    @pytest.mark.asyncio
    async def test_open_creates_every_collection(self, local_store):
        assert local_store.version == LATEST_VERSION
        assert set(local_store.collection_names()) == set(REQUIRED_COLLECTIONS)

    @pytest.mark.asyncio
    async def test_unique_indexes_exist(self, local_store):
        assert "code" in local_store.index_names(STUDENTS)
        assert "labelEmoji" in local_store.index_names(STUDENTS)
        assert "name" in local_store.index_names(CLASSES)
        assert "studentCode" in local_store.index_names(TRANSACTIONS)

    @pytest.mark.asyncio
    async def test_operations_require_open_store(self, tmp_path):
        store = LocalStore(str(tmp_path / "closed.db"))
        with pytest.raises(StoreNotOpenError):
            await store.get_all(STUDENTS)

    @pytest.mark.asyncio
    async def test_upgrade_keeps_existing_records(self, tmp_path):
        store = LocalStore(str(tmp_path / "upgrade.db"))
        await store.open(1)
        assert set(store.collection_names()) == {STUDENTS, CLASSES, TRANSACTIONS}
        await store.add(STUDENTS, make_student())
        await store.add(TRANSACTIONS, make_transaction())
        await store.close()

        await store.open(LATEST_VERSION)
        assert set(store.collection_names()) == set(REQUIRED_COLLECTIONS)
        students = await store.get_all(STUDENTS)
        assert students[0]["classes"] == ["Period 1"]
        # Index columns added later are backfilled from the stored documents
        by_code = await store.get_all_by_index(TRANSACTIONS, "studentCode", "1001")
        assert len(by_code) == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_reopen_at_same_version_is_harmless(self, tmp_path):
        store = LocalStore(str(tmp_path / "again.db"))
        await store.open()
        await store.add(STUDENTS, make_student())
        await store.close()
        await store.open()
        assert await store.count(STUDENTS) == 1
        await store.close()

    @pytest.mark.asyncio
    async def test_cannot_open_at_older_version(self, tmp_path):
        store = LocalStore(str(tmp_path / "newer.db"))
        await store.open(LATEST_VERSION)
        await store.close()
        with pytest.raises(SchemaError):
            await store.open(2)
        await store.close()

    @pytest.mark.asyncio
    async def test_label_emoji_index_skipped_when_duplicates_exist(self, tmp_path):
        store = LocalStore(str(tmp_path / "dupes.db"))
        await store.open(3)
        await store.add(STUDENTS, make_student("s1", code="1001"))
        await store.add(STUDENTS, make_student("s2", code="1002"))
        await store.close()

        await store.open(LATEST_VERSION)
        assert "labelEmoji" not in store.index_names(STUDENTS)
        assert CUSTOM_STATUS_TYPES in store.collection_names()
        assert await store.count(STUDENTS) == 2
        await store.close()

    @pytest.mark.asyncio
    async def test_missing_unique_indexes(self, local_store):
        assert local_store.missing_unique_indexes() == []

        await local_store.drop_index(STUDENTS, "labelEmoji")

        assert local_store.missing_unique_indexes() == [(STUDENTS, "labelEmoji")]
        await local_store.add(STUDENTS, make_student("s1", code="1001"))
        await local_store.add(STUDENTS, make_student("s2", code="1002"))
        assert await local_store.count(STUDENTS) == 2


class TestRecordOperations:
    """Reads, writes and constraint failures."""

    @pytest.mark.asyncio
    async def test_add_and_get_round_trip(self, local_store):
        student = make_student(classes=["Period 2", "Period 1"])
        key = await local_store.add(STUDENTS, student)
        assert key == "s1"
        assert await local_store.get(STUDENTS, "s1") == student

    @pytest.mark.asyncio
    async def test_auto_increment_keys(self, local_store):
        first = await local_store.add(TRANSACTIONS, make_transaction())
        second = await local_store.add(TRANSACTIONS, make_transaction(timestamp="2024-09-01T10:00:00+00:00"))
        assert second > first
        stored = await local_store.get(TRANSACTIONS, first)
        assert stored["id"] == first
        assert stored["status"] == "RESTROOM"

    @pytest.mark.asyncio
    async def test_duplicate_code_raises_constraint_error(self, local_store):
        await local_store.add(STUDENTS, make_student("s1", label="ALEX", code="1001"))
        with pytest.raises(ConstraintError) as exc_info:
            await local_store.add(STUDENTS, make_student("s2", label="SAM", emoji="🐱", code="1001"))
        assert exc_info.value.collection == STUDENTS
        assert exc_info.value.index == "code"

    @pytest.mark.asyncio
    async def test_duplicate_label_emoji_raises_constraint_error(self, local_store):
        await local_store.add(STUDENTS, make_student("s1", code="1001"))
        with pytest.raises(ConstraintError) as exc_info:
            await local_store.add(STUDENTS, make_student("s2", code="1002"))
        assert exc_info.value.index == "labelEmoji"

    @pytest.mark.asyncio
    async def test_duplicate_key_on_add(self, local_store):
        await local_store.add(CLASSES, {"id": "c1", "name": "Period 1"})
        with pytest.raises(ConstraintError):
            await local_store.add(CLASSES, {"id": "c1", "name": "Period 2"})

    @pytest.mark.asyncio
    async def test_put_inserts_then_replaces(self, local_store):
        await local_store.put(STYLE_SETTINGS, {"id": "default", "schoolName": "A"})
        await local_store.put(STYLE_SETTINGS, {"id": "default", "schoolName": "B"})
        records = await local_store.get_all(STYLE_SETTINGS)
        assert records == [{"id": "default", "schoolName": "B"}]

    @pytest.mark.asyncio
    async def test_put_drops_fields_missing_from_new_record(self, local_store):
        key = await local_store.add(TRANSACTIONS, make_transaction(memo="note"))
        stored = await local_store.get(TRANSACTIONS, key)
        del stored["memo"]
        await local_store.put(TRANSACTIONS, stored)
        assert "memo" not in await local_store.get(TRANSACTIONS, key)

    @pytest.mark.asyncio
    async def test_put_violating_unique_index(self, local_store):
        await local_store.add(CLASSES, {"id": "c1", "name": "Period 1"})
        await local_store.add(CLASSES, {"id": "c2", "name": "Period 2"})
        with pytest.raises(ConstraintError):
            await local_store.put(CLASSES, {"id": "c2", "name": "Period 1"})

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, local_store):
        await local_store.add(CLASSES, {"id": "c1", "name": "Period 1"})
        await local_store.add(CLASSES, {"id": "c2", "name": "Period 2"})
        await local_store.delete(CLASSES, "c1")
        assert [c["id"] for c in await local_store.get_all(CLASSES)] == ["c2"]
        await local_store.clear(CLASSES)
        assert await local_store.count(CLASSES) == 0

    @pytest.mark.asyncio
    async def test_get_all_by_index(self, local_store):
        await local_store.add(TRANSACTIONS, make_transaction(code="1001"))
        await local_store.add(TRANSACTIONS, make_transaction(code="1002", label="SAM"))
        matches = await local_store.get_all_by_index(TRANSACTIONS, "studentCode", "1002")
        assert [t["studentLabel"] for t in matches] == ["SAM"]
        # Fields without an index column are filtered in memory
        matches = await local_store.get_all_by_index(TRANSACTIONS, "studentIdentifier", "ALEX-dog face")
        assert len(matches) == 1

    @pytest.mark.asyncio
    async def test_unknown_collection(self, local_store):
        with pytest.raises(StoreError):
            await local_store.get_all("nonexistent")

    @pytest.mark.asyncio
    async def test_delete_database_removes_file(self, tmp_path):
        path = tmp_path / "gone.db"
        store = LocalStore(str(path))
        await store.open()
        await store.delete_database()
        assert not path.exists()
        assert not store.is_open
