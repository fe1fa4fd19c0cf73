import csv
from io import StringIO

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db
from models import Contact


def make_client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), SessionLocal


def seed_contacts(SessionLocal) -> tuple[int, int]:
    with SessionLocal() as session:
        mine = Contact(user_id=1, name="Grocer")
        theirs = Contact(user_id=2, name="Foreign")
        session.add_all([mine, theirs])
        session.commit()
        return mine.id, theirs.id


def test_create_posting_feeds_time_series() -> None:
    client, SessionLocal = make_client()
    mine, _ = seed_contacts(SessionLocal)

    resp = client.post(
        "/api/postings",
        json={
            "kind": "contact",
            "contact_id": mine,
            "booking_date": "2024-05-03",
            "amount_cents": -1_250,
        },
    )
    assert resp.status_code == 201
    assert resp.json()["valuta_date"] == "2024-05-03"

    series = client.get(f"/api/aggregates/contact/{mine}", params={"period": "month"})
    assert series.status_code == 200
    assert series.json()["points"] == [
        {"period_start": "2024-05-01", "amount_cents": -1_250}
    ]

    totals = client.get("/api/aggregates/contact", params={"period": "year"})
    assert totals.json()["points"] == [
        {"period_start": "2024-01-01", "amount_cents": -1_250}
    ]
    app.dependency_overrides.clear()


def test_foreign_entity_is_not_found() -> None:
    client, SessionLocal = make_client()
    mine, theirs = seed_contacts(SessionLocal)

    assert client.get(f"/api/aggregates/contact/{theirs}").status_code == 404
    assert (
        client.get(
            f"/api/aggregates/contact/{mine}", headers={"X-User-Id": "2"}
        ).status_code
        == 404
    )
    resp = client.post(
        "/api/postings",
        json={
            "kind": "contact",
            "contact_id": theirs,
            "booking_date": "2024-05-03",
            "amount_cents": 10,
        },
    )
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Contact not found"
    app.dependency_overrides.clear()


def test_report_query_and_csv_export() -> None:
    client, SessionLocal = make_client()
    mine, _ = seed_contacts(SessionLocal)
    for booking in ("2024-01-10", "2024-02-10"):
        client.post(
            "/api/postings",
            json={
                "kind": "contact",
                "contact_id": mine,
                "booking_date": booking,
                "amount_cents": -10_000,
            },
        )
    body = {
        "posting_kind": "contact",
        "interval": "month",
        "compare_previous": True,
        "analysis_date": "2024-02-01",
    }

    resp = client.post("/api/reports/query", json=body)
    assert resp.status_code == 200
    points = resp.json()["points"]
    assert [p["group_key"] for p in points] == [f"Contact:{mine}", f"Contact:{mine}"]
    assert points[1]["previous_amount_cents"] == -10_000

    export = client.post("/api/reports/export.csv", json=body)
    assert export.status_code == 200
    assert export.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(StringIO(export.text)))
    assert rows[0][0] == "PeriodStart"
    assert rows[2][5] == "-100.00"
    assert rows[2][6] == "-100.00"
    app.dependency_overrides.clear()


def test_invalid_report_query_is_rejected() -> None:
    client, _ = make_client()

    resp = client.post("/api/reports/query", json={"interval": "weekly"})

    assert resp.status_code == 422
    app.dependency_overrides.clear()


def test_rebuild_request_is_queued() -> None:
    client, _ = make_client()

    resp = client.post("/api/admin/rebuild-aggregates", headers={"X-User-Id": "7"})
    assert resp.status_code == 202
    assert resp.json()["status"] == "queued"

    status = client.get("/api/admin/rebuild-aggregates", headers={"X-User-Id": "7"})
    assert status.status_code == 200
    assert status.json()["user_id"] == 7
    assert client.get(
        "/api/admin/rebuild-aggregates", headers={"X-User-Id": "8"}
    ).status_code == 404
    app.dependency_overrides.clear()


def test_misspelled_report_filter_is_rejected() -> None:
    client, _ = make_client()

    resp = client.post(
        "/api/reports/query",
        json={"posting_kind": "contact", "filters": {"contact_id": [1]}},
    )

    assert resp.status_code == 422
    app.dependency_overrides.clear()
