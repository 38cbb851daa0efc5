"""
Tests for the sync server endpoints
"""

import pytest

from conftest import make_student, make_transaction


def dataset(**overrides):
    data = {
        "students": [make_student()],
        "classes": [{"id": "c1", "name": "Period 1", "createdAt": "2024-09-01T07:00:00+00:00"}],
        "transactions": [make_transaction()],
        "styleSettings": {
            "id": "default",
            "primaryColor": "#1976D2",
            "secondaryColor": "#424242",
            "schoolName": "Lincoln High",
        },
        "customStatusTypes": [
            {"id": "t1", "name": "LUNCH", "color": "#00FF00", "includeMemo": True,
             "createdAt": "2024-09-01T07:00:00+00:00"}
        ],
        "customTeacherEventTypes": [],
    }
    data.update(overrides)
    return data


async def down(api_client):
    response = await api_client.get("/api/sync/down")
    assert response.status_code == 200
    return response.json()["data"]


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, api_client):
        response = await api_client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


class TestSyncUp:

    @pytest.mark.asyncio
    async def test_up_then_down_round_trip(self, api_client):
        pushed = dataset()
        response = await api_client.post("/api/sync/up", json=pushed)

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Data synced successfully"
        assert body["synced"]["students"] == 1
        assert body["synced"]["transactions"] == 1
        assert body["synced"]["styleSettings"] == 1

        data = await down(api_client)
        assert data["students"] == pushed["students"]
        assert data["classes"] == pushed["classes"]
        assert data["customStatusTypes"] == pushed["customStatusTypes"]
        assert data["styleSettings"]["schoolName"] == "Lincoln High"

        transaction = data["transactions"][0]
        assert isinstance(transaction.pop("id"), int)
        assert transaction == pushed["transactions"][0]

    @pytest.mark.asyncio
    async def test_same_id_is_an_update(self, api_client):
        await api_client.post("/api/sync/up", json=dataset())
        renamed = make_student(label="ALEXANDER", classes=["Period 1", "Period 2"])

        response = await api_client.post("/api/sync/up", json=dataset(students=[renamed]))

        assert response.status_code == 200
        students = (await down(api_client))["students"]
        assert len(students) == 1
        assert students[0]["label"] == "ALEXANDER"
        assert students[0]["classes"] == ["Period 1", "Period 2"]

    @pytest.mark.asyncio
    async def test_code_held_by_another_student_conflicts(self, api_client):
        await api_client.post("/api/sync/up", json=dataset())
        impostor = make_student(student_id="s2", label="SAM", emoji="🐱")
        newcomer = make_student(student_id="s3", label="JO", code="2002", emoji="🦊")

        response = await api_client.post("/api/sync/up", json=dataset(students=[newcomer, impostor]))

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["conflicts"][0]["field"] == "student_code"
        assert detail["conflicts"][0]["value"] == "1001"
        # Nothing from a conflicting push is written
        codes = [s["code"] for s in (await down(api_client))["students"]]
        assert codes == ["1001"]

    @pytest.mark.asyncio
    async def test_label_emoji_pair_conflicts(self, api_client):
        await api_client.post("/api/sync/up", json=dataset())
        twin = make_student(student_id="s2", code="2002")

        response = await api_client.post("/api/sync/up", json=dataset(students=[twin]))

        assert response.status_code == 409
        assert response.json()["detail"]["conflicts"][0]["field"] == "student_label_emoji"

    @pytest.mark.asyncio
    async def test_status_and_event_type_names_share_a_namespace(self, api_client):
        await api_client.post("/api/sync/up", json=dataset())
        event = {"id": "e1", "name": "LUNCH", "includeMemo": False, "createdAt": "2024-09-01T07:00:00+00:00"}

        response = await api_client.post(
            "/api/sync/up", json=dataset(customStatusTypes=[], customTeacherEventTypes=[event])
        )

        assert response.status_code == 409
        assert response.json()["detail"]["conflicts"][0]["field"] == "type_name"

    @pytest.mark.asyncio
    async def test_missing_required_field_is_rejected(self, api_client):
        student = make_student()
        del student["code"]
        response = await api_client.post("/api/sync/up", json=dataset(students=[student]))
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_transactions_upsert_by_natural_key(self, api_client):
        await api_client.post("/api/sync/up", json=dataset())
        edited = make_transaction(status="NURSE", memo="fever")
        later = make_transaction(timestamp="2024-09-01T10:00:00+00:00")

        response = await api_client.post("/api/sync/up", json=dataset(transactions=[edited, later]))

        assert response.status_code == 200
        transactions = (await down(api_client))["transactions"]
        assert len(transactions) == 2
        assert transactions[0]["status"] == "NURSE"
        assert transactions[0]["memo"] == "fever"

    @pytest.mark.asyncio
    async def test_existing_class_name_keeps_existing_row(self, api_client):
        await api_client.post("/api/sync/up", json=dataset())
        duplicate = {"id": "c-other", "name": "Period 1", "createdAt": "2024-09-02T07:00:00+00:00"}

        response = await api_client.post("/api/sync/up", json=dataset(classes=[duplicate]))

        assert response.status_code == 200
        classes = (await down(api_client))["classes"]
        assert [c["id"] for c in classes] == ["c1"]

    @pytest.mark.asyncio
    async def test_records_absent_from_push_are_retained(self, api_client):
        await api_client.post("/api/sync/up", json=dataset())
        sam = make_student(student_id="s2", label="SAM", code="2002", emoji="🐱")

        await api_client.post("/api/sync/up", json=dataset(students=[sam], transactions=[]))

        data = await down(api_client)
        assert sorted(s["code"] for s in data["students"]) == ["1001", "2002"]
        assert len(data["transactions"]) == 1


class TestSyncDownAndFull:

    @pytest.mark.asyncio
    async def test_down_on_empty_server(self, api_client):
        data = await down(api_client)
        assert data["students"] == []
        assert data["transactions"] == []
        assert "styleSettings" not in data

    @pytest.mark.asyncio
    async def test_full_sync_returns_server_state(self, api_client):
        await api_client.post("/api/sync/up", json=dataset())
        sam = make_student(student_id="s2", label="SAM", code="2002", emoji="🐱")

        response = await api_client.post(
            "/api/sync/full", json={"students": [sam], "classes": [], "transactions": []}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["synced"]["students"] == 1
        assert sorted(s["code"] for s in body["data"]["students"]) == ["1001", "2002"]
        assert body["data"]["customStatusTypes"][0]["name"] == "LUNCH"

    @pytest.mark.asyncio
    async def test_full_sync_conflict(self, api_client):
        await api_client.post("/api/sync/up", json=dataset())
        impostor = make_student(student_id="s2", label="SAM", emoji="🐱")

        response = await api_client.post("/api/sync/full", json=dataset(students=[impostor]))

        assert response.status_code == 409
        assert response.json()["status_code"] == 409
