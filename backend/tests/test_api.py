import logging
from dataclasses import replace

import pytest
from flask import Flask

from splitsettle.api.routes import api_bp
from splitsettle.domain.models import SplitStatus

SPLIT_ID = "11111111-1111-1111-1111-111111111111"


@pytest.fixture()
def app():
    app = Flask(__name__)
    app.register_blueprint(api_bp)
    app.config["TESTING"] = True
    return app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def db(monkeypatch, store):
    monkeypatch.setattr("splitsettle.api.routes._repo", lambda: store)
    return store


def test_health(client):
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.get_json() == {"status": "ok"}


def test_create_split_requires_db(client):
    r = client.post("/api/splits", json={"total_cents": 100, "participants": [{"name": "A"}]})
    assert r.status_code == 503
    assert r.get_json()["error"]["code"] == "db_unavailable"


def test_create_equal_split(client, db):
    r = client.post(
        "/api/splits",
        json={
            "name": "Lunch",
            "total_cents": 100000,
            "participants": [
                {"user_id": "u1", "name": "Asha"},
                {"user_id": "u2", "name": "Bikash"},
                {"name": "Chandra", "email": "chandra@example.com"},
            ],
        },
    )

    assert r.status_code == 201
    split = r.get_json()["split"]
    assert split["status"] == "calculated"
    assert split["split_type"] == "equal"
    assert [e["amount_cents"] for e in split["breakdown"]] == [33333, 33333, 33333]
    assert [e["percentage"] for e in split["breakdown"]] == ["33.33", "33.33", "33.33"]
    assert split["total_due_cents"] == 99999
    assert split["id"] in db.splits


def test_create_split_accepts_decimal_total(client, db):
    r = client.post("/api/splits", json={"total": "30.00", "participants": [{"name": "A"}, {"name": "B"}]})
    assert r.status_code == 201
    assert [e["amount_cents"] for e in r.get_json()["split"]["breakdown"]] == [1500, 1500]


def test_create_item_based_split(client, db):
    r = client.post(
        "/api/splits",
        json={
            "split_type": "item_based",
            "participants": [{"name": "A", "ref": "a"}, {"name": "B", "ref": "b"}],
            "items": [
                {"price_cents": 350, "assignees": ["a", "b"]},
                {"price_cents": 825, "assignees": ["a"]},
            ],
        },
    )
    assert r.status_code == 201
    split = r.get_json()["split"]
    assert split["total_cents"] == 1175
    assert [e["amount_cents"] for e in split["breakdown"]] == [1000, 175]


def test_create_split_validates_payload(client, db):
    r = client.post("/api/splits", json={"total_cents": 100, "split_type": "thirds", "participants": [{"name": "A"}]})
    assert r.status_code == 400
    assert "split_type" in r.get_json()["error"]["message"]

    r = client.post("/api/splits", json={"total_cents": -1, "participants": [{"name": "A"}]})
    assert r.status_code == 400

    r = client.post(
        "/api/splits",
        json={
            "total_cents": 100,
            "split_type": "percentage",
            "participants": [{"name": "A", "percentage": 60}, {"name": "B", "percentage": 30}],
        },
    )
    assert r.status_code == 400
    assert r.get_json()["error"]["code"] == "bad_request"


def test_get_split_rejects_bad_uuid(client, db):
    r = client.get("/api/splits/not-a-uuid")
    assert r.status_code == 400
    assert "uuid" in r.get_json()["error"]["message"].lower()


def test_get_unknown_split(client, db):
    r = client.get("/api/splits/22222222-2222-2222-2222-222222222222")
    assert r.status_code == 404
    assert r.get_json()["error"]["code"] == "not_found"


def test_record_payment_returns_reconciled_split(client, db):
    r = client.post(
        f"/api/splits/{SPLIT_ID}/payments",
        json={
            "amount_cents": 70000,
            "paid_by": {"id": "u1", "name": "Asha"},
            "allocations": [{"paid_for": "u1", "amount_cents": 70000}],
            "note": "dinner",
        },
    )

    assert r.status_code == 201
    split = r.get_json()["split"]
    asha, bikash = split["breakdown"]
    assert asha["amount_paid_cents"] == 70000
    assert asha["payment_status"] == "paid"
    assert asha["surplus_forwarded_cents"] == 20000
    assert bikash["amount_paid_cents"] == 20000
    assert bikash["surplus_from"] == ["u1"]
    assert bikash["payment_status"] == "partial"
    assert bikash["due_cents"] == 30000
    assert split["payments"][0]["note"] == "dinner"
    assert split["payments"][0]["id"]


def test_record_payment_validates_payload(client, db):
    r = client.post(f"/api/splits/{SPLIT_ID}/payments", json={"amount_cents": 100, "paid_by": {"name": "Asha"}})
    assert r.status_code == 400

    r = client.post(
        f"/api/splits/{SPLIT_ID}/payments",
        json={"amount_cents": 100, "paid_by": {"name": "Asha"}, "allocations": [{"paid_for": "u1", "amount_cents": 1.5}]},
    )
    assert r.status_code == 400


def test_record_payment_on_finalized_split_conflicts(client, db):
    db.splits[SPLIT_ID] = db.splits[SPLIT_ID].with_status(SplitStatus.FINALIZED)
    r = client.post(
        f"/api/splits/{SPLIT_ID}/payments",
        json={"amount_cents": 100, "paid_by": {"name": "Asha"}, "allocations": [{"paid_for": "u1", "amount_cents": 100}]},
    )
    assert r.status_code == 409
    assert r.get_json()["error"]["code"] == "invalid_state"


def test_members_endpoint_reshares_over_explicit_roster(client, db):
    r = client.post(
        f"/api/splits/{SPLIT_ID}/members",
        json={"members": [{"user_id": "u1"}, {"user_id": "u2"}, {"name": "Chandra"}]},
    )
    assert r.status_code == 200
    breakdown = r.get_json()["split"]["breakdown"]
    assert [e["amount_cents"] for e in breakdown] == [33333, 33333, 33333]
    assert [e["id"] for e in breakdown][:2] == ["bd1", "bd2"]


def test_members_endpoint_uses_group_roster_without_body(client, db):
    r = client.post(f"/api/splits/{SPLIT_ID}/members")
    assert r.status_code == 200
    assert len(r.get_json()["split"]["breakdown"]) == 2
    assert db.splits[SPLIT_ID].version == 0


def test_members_endpoint_reports_persistent_conflicts(client, db):
    db.conflicts = 10
    r = client.post(f"/api/splits/{SPLIT_ID}/members", json={"members": [{"user_id": "u1"}, {"name": "New"}]})
    assert r.status_code == 503
    assert r.get_json()["error"] == {"code": "reconcile_failed", "message": "Could not update split."}


def test_status_transitions(client, db):
    r = client.put(f"/api/splits/{SPLIT_ID}/status", json={"status": "finalized"})
    assert r.status_code == 200
    assert r.get_json()["split"]["status"] == "finalized"
    assert r.get_json()["split"]["finalized_at"]

    r = client.put(f"/api/splits/{SPLIT_ID}/status", json={"status": "calculated"})
    assert r.status_code == 409

    r = client.put(f"/api/splits/{SPLIT_ID}/status", json={"status": "done"})
    assert r.status_code == 400


def test_finalize_with_broken_shares_is_unprocessable(client, db):
    split = db.splits[SPLIT_ID]
    db.splits[SPLIT_ID] = replace(split, breakdown=(replace(split.breakdown[0], amount_cents=100),))
    r = client.put(f"/api/splits/{SPLIT_ID}/status", json={"status": "finalized"})
    assert r.status_code == 422
    assert r.get_json()["error"]["code"] == "invariant_violation"


def test_dues_and_nudges(client, db):
    client.post(
        f"/api/splits/{SPLIT_ID}/payments",
        json={"amount_cents": 70000, "paid_by": {"name": "Asha"}, "allocations": [{"paid_for": "u1", "amount_cents": 70000}]},
    )

    r = client.get(f"/api/splits/{SPLIT_ID}/dues")
    assert r.status_code == 200
    assert r.get_json() == {
        "split_id": SPLIT_ID,
        "dues": [{"id": "bd2", "name": "Bikash", "email": "bikash@example.com", "due_cents": 30000}],
        "total_due_cents": 30000,
    }

    r = client.post(f"/api/splits/{SPLIT_ID}/nudges")
    assert r.status_code == 200
    assert r.get_json() == {"sent": 1, "recipients": [{"email": "bikash@example.com", "due_cents": 30000}]}


def test_summary(client, db):
    r = client.post(f"/api/splits/{SPLIT_ID}/summary")
    assert r.status_code == 200
    assert r.get_json()["sent"] == 2


def test_app_factory_serves_the_blueprint():
    from splitsettle import create_app

    app = create_app()
    r = app.test_client().get("/api/health")
    assert r.status_code == 200
    assert app.config["RECONCILE_MAX_RETRIES"] >= 1
    logging.captureWarnings(False)


def test_database_failure_on_read_is_reported_as_db_error(client, db, monkeypatch):
    import psycopg

    def fail(split_id):
        raise psycopg.OperationalError("connection refused")

    monkeypatch.setattr(db, "get_split", fail)
    r = client.get(f"/api/splits/{SPLIT_ID}")
    assert r.status_code == 500
    assert r.get_json()["error"] == {"code": "db_error", "message": "Database request failed."}


def test_unexpected_failure_on_read_gets_a_neutral_message(client, db, monkeypatch):
    def fail(split_id):
        raise KeyError(split_id)

    monkeypatch.setattr(db, "get_split", fail)
    r = client.get(f"/api/splits/{SPLIT_ID}/dues")
    assert r.status_code == 500
    assert r.get_json()["error"] == {"code": "internal_error", "message": "Unexpected server error."}
