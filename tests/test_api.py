"""HTTP tests for the FastAPI app using TestClient."""
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from cardbook import models, storage
from cardbook.api import app, get_ingestion_runner, get_query_interpreter
from cardbook.config import settings
from cardbook.criteria import Contains, CriteriaField, SearchCriteria

ALICE = {"X-User-Id": "user_alice"}
BOB = {"X-User-Id": "user_bob"}


class RecordingRunner:
    def __init__(self):
        self.submitted = []

    def submit(self, card_id, file_path, user_id):
        self.submitted.append((card_id, file_path, user_id))


class StaticInterpreter:
    def __init__(self, criteria=None):
        self.criteria = criteria or SearchCriteria()
        self.queries = []

    async def interpret(self, query):
        self.queries.append(query)
        return self.criteria


@pytest.fixture
def runner():
    return RecordingRunner()


@pytest.fixture
def interpreter():
    return StaticInterpreter()


@pytest.fixture
def client(runner, interpreter):
    app.dependency_overrides[get_ingestion_runner] = lambda: runner
    app.dependency_overrides[get_query_interpreter] = lambda: interpreter
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_contact(client, name, headers=ALICE, **fields):
    response = client.post("/api/contacts", json={"name": name, **fields}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestServiceEndpoints:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_root_needs_no_identity(self, client):
        assert client.get("/").status_code == 200

    def test_missing_identity_is_unauthenticated(self, client):
        response = client.get("/api/contacts")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"

    def test_proxy_secret_is_enforced_when_configured(self, client, monkeypatch):
        monkeypatch.setattr(settings.auth, "proxy_secret", "s3cret")

        assert client.get("/api/contacts", headers=ALICE).status_code == 401
        ok = client.get("/api/contacts", headers={**ALICE, "X-Auth-Proxy-Secret": "s3cret"})
        assert ok.status_code == 200

    def test_lifespan_wires_runner(self):
        with TestClient(app) as client:
            assert client.app.state.ingestion_runner.active_count == 0
            assert client.app.state.query_interpreter is not None


class TestContactRoutes:
    def test_create_and_get(self, client):
        created = create_contact(
            client,
            "Jane Roe",
            email="jane@acme.test",
            industry="Technology",
            tags=["conference"],
        )

        assert created["name"] == "Jane Roe"
        assert created["industry"] == "Technology"
        assert "createdAt" in created

        response = client.get(f"/api/contacts/{created['id']}", headers=ALICE)
        assert response.status_code == 200
        assert response.json()["tags"] == ["conference"]

    def test_other_users_contact_is_not_found(self, client):
        created = create_contact(client, "Jane Roe")

        assert client.get(f"/api/contacts/{created['id']}", headers=BOB).status_code == 404
        assert client.put(f"/api/contacts/{created['id']}", json={"title": "CEO"}, headers=BOB).status_code == 404
        assert client.delete(f"/api/contacts/{created['id']}", headers=BOB).status_code == 404
        assert client.get(f"/api/contacts/{created['id']}", headers=ALICE).status_code == 200

    def test_missing_name_is_rejected(self, client):
        response = client.post("/api/contacts", json={"email": "x@y.test"}, headers=ALICE)

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "validation_error"
        assert body["errors"][0]["field"] == "name"

    def test_unknown_industry_is_rejected(self, client):
        response = client.post("/api/contacts", json={"name": "Jane", "industry": "Piracy"}, headers=ALICE)

        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "industry"

    def test_foreign_event_is_rejected(self, client):
        event = client.post("/api/events", json={"name": "Expo"}, headers=BOB).json()

        response = client.post("/api/contacts", json={"name": "Jane", "eventId": event["id"]}, headers=ALICE)

        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "eventId"

    def test_partial_update(self, client):
        created = create_contact(client, "Jane Roe", company="Acme")

        response = client.put(f"/api/contacts/{created['id']}", json={"title": "CTO"}, headers=ALICE)

        assert response.status_code == 200
        assert response.json()["title"] == "CTO"
        assert response.json()["company"] == "Acme"

    def test_update_cannot_clear_name(self, client):
        created = create_contact(client, "Jane Roe")

        response = client.put(f"/api/contacts/{created['id']}", json={"name": None}, headers=ALICE)

        assert response.status_code == 400

    def test_delete(self, client):
        created = create_contact(client, "Jane Roe")

        response = client.delete(f"/api/contacts/{created['id']}", headers=ALICE)

        assert response.status_code == 200
        assert client.get(f"/api/contacts/{created['id']}", headers=ALICE).status_code == 404

    def test_list_pagination(self, client):
        for i in range(3):
            create_contact(client, f"Person {i}")
        create_contact(client, "Someone else", headers=BOB)

        response = client.get("/api/contacts?limit=2&offset=0", headers=ALICE)

        body = response.json()
        assert [c["name"] for c in body["contacts"]] == ["Person 2", "Person 1"]
        assert body["totalCount"] == 3
        assert body["hasMore"] is True

        body = client.get("/api/contacts?limit=2&offset=2", headers=ALICE).json()
        assert [c["name"] for c in body["contacts"]] == ["Person 0"]
        assert body["hasMore"] is False

    def test_list_rejects_bad_limit(self, client):
        assert client.get("/api/contacts?limit=0", headers=ALICE).status_code == 400

    def test_by_industry(self, client):
        create_contact(client, "Builder", industry="Construction")
        create_contact(client, "Banker", industry="Finance")

        response = client.get("/api/contacts/industry/Construction", headers=ALICE)

        assert [c["name"] for c in response.json()["contacts"]] == ["Builder"]


class TestSearchRoute:
    def test_search_applies_interpreted_criteria(self, client, interpreter):
        interpreter.criteria = SearchCriteria(where=Contains(CriteriaField.COMPANY, "acme"))
        create_contact(client, "Jane Roe", company="Acme Corp")
        create_contact(client, "John Doe", company="Globex")
        create_contact(client, "Bob Acme", company="Acme", headers=BOB)

        response = client.get("/api/contacts/search", params={"q": "people at acme"}, headers=ALICE)

        assert response.status_code == 200
        assert [c["name"] for c in response.json()["contacts"]] == ["Jane Roe"]
        assert interpreter.queries == ["people at acme"]

    def test_empty_criteria_lists_everything(self, client):
        create_contact(client, "Jane Roe")
        create_contact(client, "John Doe")

        response = client.get("/api/contacts/search", params={"q": "everyone"}, headers=ALICE)

        assert len(response.json()["contacts"]) == 2

    @pytest.mark.parametrize("params", [{}, {"q": "   "}])
    def test_blank_query_is_rejected(self, client, params, interpreter):
        response = client.get("/api/contacts/search", params=params, headers=ALICE)

        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "q"
        assert interpreter.queries == []


class TestBusinessCardRoutes:
    def test_upload_creates_card_and_starts_processing(self, client, runner, db):
        response = client.post(
            "/api/business-cards/upload",
            files={"businessCard": ("card.png", b"\x89PNG image bytes", "image/png")},
            headers=ALICE,
        )

        assert response.status_code == 201, response.text
        body = response.json()
        assert body["status"] == "processing"
        assert body["filename"] == "card.png"

        assert len(runner.submitted) == 1
        card_id, file_path, user_id = runner.submitted[0]
        assert card_id == body["id"]
        assert user_id == "user_alice"
        assert Path(file_path).read_bytes() == b"\x89PNG image bytes"
        assert Path(file_path).suffix == ".png"

        card = db(storage.get_business_card, card_id, "user_alice")
        assert card.processing_status == "processing"

    def test_upload_rejects_unsupported_type(self, client, runner, db):
        response = client.post(
            "/api/business-cards/upload",
            files={"businessCard": ("notes.txt", b"hello", "text/plain")},
            headers=ALICE,
        )

        assert response.status_code == 400
        assert response.json()["errors"][0]["field"] == "businessCard"
        assert runner.submitted == []
        assert db(storage.count_business_cards, "user_alice") == 0

    def test_upload_rejects_oversized_file(self, client, runner, db, monkeypatch):
        monkeypatch.setattr(settings.upload, "max_bytes", 8)

        response = client.post(
            "/api/business-cards/upload",
            files={"businessCard": ("card.jpg", b"0123456789", "image/jpeg")},
            headers=ALICE,
        )

        assert response.status_code == 400
        assert "too large" in response.json()["detail"]
        assert runner.submitted == []
        assert db(storage.count_business_cards, "user_alice") == 0

    def test_upload_removes_file_when_card_insert_fails(self, runner, interpreter, monkeypatch):
        async def broken_insert(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(storage, "create_business_card", broken_insert)
        app.dependency_overrides[get_ingestion_runner] = lambda: runner
        app.dependency_overrides[get_query_interpreter] = lambda: interpreter
        upload_dir = Path(settings.upload.dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        before = set(upload_dir.iterdir())
        try:
            response = TestClient(app, raise_server_exceptions=False).post(
                "/api/business-cards/upload",
                files={"businessCard": ("card.png", b"\x89PNG image bytes", "image/png")},
                headers=ALICE,
            )
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        assert response.json()["error"] == "internal_error"
        assert set(upload_dir.iterdir()) == before
        assert runner.submitted == []

    def test_upload_requires_file(self, client, runner):
        response = client.post("/api/business-cards/upload", headers=ALICE)

        assert response.status_code == 400
        assert runner.submitted == []

    def test_status(self, client, db):
        card = db(storage.create_business_card, "user_alice", filename="a.png", original_path="/tmp/a.png")

        response = client.get(f"/api/business-cards/{card.id}/status", headers=ALICE)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processing"
        assert body["contactId"] is None
        assert "originalPath" not in body
        assert client.get(f"/api/business-cards/{card.id}/status", headers=BOB).status_code == 404

    def test_verify_creates_contact(self, client, db):
        card = db(storage.create_business_card, "user_alice", filename="a.png", original_path="/tmp/a.png")
        db(storage.update_business_card, card.id, "user_alice", {
            "processing_status": models.ProcessingStatus.PENDING_VERIFICATION,
            "processing_error": "Low OCR confidence (42%). Please verify extracted data.",
        })

        response = client.post(
            f"/api/business-cards/{card.id}/verify",
            json={"name": "Jane Roe", "company": "Acme"},
            headers=ALICE,
        )

        assert response.status_code == 200
        contact = response.json()["contact"]
        assert contact["name"] == "Jane Roe"

        status = client.get(f"/api/business-cards/{card.id}/status", headers=ALICE).json()
        assert status["status"] == "completed"
        assert status["contactId"] == contact["id"]
        assert status["processingError"] is None

    def test_verify_other_users_card(self, client, db):
        card = db(storage.create_business_card, "user_alice", filename="a.png", original_path="/tmp/a.png")

        response = client.post(f"/api/business-cards/{card.id}/verify", json={"name": "Jane"}, headers=BOB)

        assert response.status_code == 404
        assert db(storage.count_contacts, "user_bob") == 0

    def test_recent_pagination(self, client, db):
        for i in range(7):
            db(storage.create_business_card, "user_alice", filename=f"{i}.png", original_path=f"/tmp/{i}.png")

        body = client.get("/api/business-cards/recent?page=2&limit=5", headers=ALICE).json()

        assert [c["filename"] for c in body["data"]] == ["1.png", "0.png"]
        assert body["pagination"] == {
            "page": 2,
            "limit": 5,
            "totalCount": 7,
            "totalPages": 2,
            "hasNext": False,
            "hasPrev": True,
        }

    def test_by_status(self, client, db):
        card = db(storage.create_business_card, "user_alice", filename="a.png", original_path="/tmp/a.png")
        db(storage.update_business_card, card.id, "user_alice", {
            "processing_status": models.ProcessingStatus.PENDING_VERIFICATION,
        })
        db(storage.create_business_card, "user_alice", filename="b.png", original_path="/tmp/b.png")

        body = client.get("/api/business-cards?status=pending-verification", headers=ALICE).json()

        assert [c["id"] for c in body["data"]] == [card.id]
        assert client.get("/api/business-cards?status=bogus", headers=ALICE).status_code == 400


class TestStatsRoute:
    def test_stats(self, client, db):
        create_contact(client, "A", industry="Finance")
        create_contact(client, "B", industry="Technology")
        card = db(storage.create_business_card, "user_alice", filename="a.png", original_path="/tmp/a.png")
        db(storage.update_business_card, card.id, "user_alice", {
            "processing_status": models.ProcessingStatus.COMPLETED,
        })

        body = client.get("/api/stats", headers=ALICE).json()

        assert body == {
            "totalContacts": 2,
            "cardsProcessed": 1,
            "categories": 2,
            "accuracy": settings.ingestion.reported_accuracy,
        }


class TestEventRoutes:
    def test_event_crud(self, client):
        created = client.post(
            "/api/events",
            json={"name": "Expo", "location": "Berlin", "date": "2026-03-01T10:00:00Z"},
            headers=ALICE,
        )
        assert created.status_code == 201
        event = created.json()
        assert event["date"].startswith("2026-03-01T10:00:00")

        updated = client.put(f"/api/events/{event['id']}", json={"notes": "Booth 12"}, headers=ALICE).json()
        assert updated["notes"] == "Booth 12"
        assert updated["location"] == "Berlin"

        listing = client.get("/api/events", headers=ALICE).json()
        assert listing["totalCount"] == 1

        assert client.get(f"/api/events/{event['id']}", headers=BOB).status_code == 404
        assert client.delete(f"/api/events/{event['id']}", headers=ALICE).status_code == 200
        assert client.get(f"/api/events/{event['id']}", headers=ALICE).status_code == 404

    def test_event_contacts(self, client):
        event = client.post("/api/events", json={"name": "Expo"}, headers=ALICE).json()
        create_contact(client, "Met there", eventId=event["id"])
        create_contact(client, "Met elsewhere")

        body = client.get(f"/api/events/{event['id']}/contacts", headers=ALICE).json()

        assert [c["name"] for c in body["contacts"]] == ["Met there"]
        assert client.get(f"/api/events/{event['id']}/contacts", headers=BOB).status_code == 404

    def test_deleting_event_keeps_contacts(self, client):
        event = client.post("/api/events", json={"name": "Expo"}, headers=ALICE).json()
        contact = create_contact(client, "Met there", eventId=event["id"])

        client.delete(f"/api/events/{event['id']}", headers=ALICE)

        kept = client.get(f"/api/contacts/{contact['id']}", headers=ALICE).json()
        assert kept["eventId"] is None
