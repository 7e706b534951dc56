import asyncio
from datetime import date, datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import StaticPool

from database import Base, make_session_factory
import main
from main import app
from models import Cost, MonthlyReport, RequestLog, User
from periods import local_today
from services import ReportService


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    previous = app.state.session_factory
    app.state.session_factory = make_session_factory(engine)
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.state.session_factory = previous
        engine.dispose()


def _add_user(client: TestClient, user_id: int = 123123) -> None:
    resp = client.post(
        "/api/add",
        json={"kind": "user", "id": user_id, "first_name": "Mosh", "last_name": "Israeli"},
    )
    assert resp.status_code == 201


def test_health_and_about(client) -> None:
    assert client.get("/health").json() == {"ok": True}
    about = client.get("/api/about")
    assert about.status_code == 200
    assert all(set(member) == {"first_name", "last_name"} for member in about.json())


def test_add_user_then_duplicate_conflicts(client) -> None:
    resp = client.post(
        "/api/add",
        json={"kind": "user", "id": "150", "first_name": "A", "last_name": "B"},
    )
    assert resp.status_code == 201
    assert resp.json()["id"] == 150

    dup = client.post(
        "/api/add",
        json={"kind": "user", "id": 150, "first_name": "A", "last_name": "B"},
    )
    assert dup.status_code == 409
    assert dup.json() == {"message": "user already exists"}


def test_add_rejects_invalid_bodies(client) -> None:
    fractional = client.post(
        "/api/add",
        json={"kind": "user", "id": 101.5, "first_name": "A", "last_name": "B"},
    )
    assert fractional.status_code == 400
    assert fractional.json()["message"] == "Validation error"

    no_kind = client.post("/api/add", json={"id": 1, "first_name": "A", "last_name": "B"})
    assert no_kind.status_code == 400


def test_add_cost_in_current_month(client) -> None:
    _add_user(client)
    resp = client.post(
        "/api/add",
        json={
            "kind": "cost",
            "userid": 123123,
            "description": "Milk",
            "category": "FOOD",
            "sum": 8.9,
        },
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["category"] == "food"
    assert body["sum"] == 8.9
    assert body["day"] == local_today().day


def test_add_cost_errors(client) -> None:
    _add_user(client)
    base = {"kind": "cost", "userid": 123123, "description": "x", "category": "food", "sum": 1}

    missing_user = client.post("/api/add", json={**base, "userid": 9})
    assert missing_user.status_code == 404

    bad_category = client.post("/api/add", json={**base, "category": "travel"})
    assert bad_category.status_code == 400

    zero = client.post("/api/add", json={**base, "sum": 0})
    assert zero.status_code == 400

    past = client.post("/api/add", json={**base, "created_at": "2001-01-15T10:00:00"})
    assert past.status_code == 400
    assert past.json() == {"message": "past month costs are not allowed"}


def test_current_month_report_is_live(client) -> None:
    _add_user(client)
    today = local_today()
    params = {"id": 123123, "year": today.year, "month": today.month}

    empty = client.get("/api/report", params=params)
    assert empty.status_code == 200
    assert empty.headers["X-Report-Source"] == "live"
    assert [list(entry) for entry in empty.json()["costs"]] == [
        ["food"],
        ["health"],
        ["housing"],
        ["sports"],
        ["education"],
    ]

    client.post(
        "/api/add",
        json={"kind": "cost", "userid": 123123, "description": "Bread", "category": "food", "sum": 2},
    )
    again = client.get("/api/report", params=params)
    assert again.headers["X-Report-Source"] == "live"
    assert again.json()["costs"][0]["food"][0]["description"] == "Bread"

    with app.state.session_factory() as session:
        assert session.execute(select(func.count(MonthlyReport.id))).scalar_one() == 0


def test_past_month_report_is_materialized(client) -> None:
    _add_user(client, 42)
    with app.state.session_factory() as session:
        session.add(
            Cost(
                user_id=42,
                description="groceries",
                category="food",
                amount_cents=1000,
                created_at=datetime(2024, 3, 3, 9, 0),
            )
        )
        session.commit()

    params = {"id": 42, "year": 2024, "month": 3}
    first = client.get("/api/report", params=params)
    second = client.get("/api/report", params=params)

    assert first.headers["X-Report-Source"] == "computed"
    assert second.headers["X-Report-Source"] == "cache"
    assert first.json() == second.json()
    assert first.json()["costs"][0] == {
        "food": [{"sum": 10.0, "description": "groceries", "day": 3}]
    }

    purge = client.post("/admin/purge-reports", params={"user_id": 42})
    assert purge.json() == {"deleted": 1}


def test_report_requires_known_user_and_valid_period(client) -> None:
    missing = client.get("/api/report", params={"id": 5, "year": 2024, "month": 3})
    assert missing.status_code == 404
    assert missing.json() == {"message": "user not found"}

    _add_user(client, 5)
    bad_month = client.get("/api/report", params={"id": 5, "year": 2024, "month": 13})
    assert bad_month.status_code == 400
    assert bad_month.json()["details"][0]["path"] == "month"


def test_users_endpoints(client) -> None:
    _add_user(client, 1)
    _add_user(client, 2)
    client.post(
        "/api/add",
        json={"kind": "cost", "userid": 1, "description": "a", "category": "health", "sum": 4.5},
    )

    listing = client.get("/api/users")
    assert [u["id"] for u in listing.json()] == [1, 2]

    detail = client.get("/api/users/1")
    assert detail.json() == {"id": 1, "first_name": "Mosh", "last_name": "Israeli", "total": 4.5}

    assert client.get("/api/users/3").status_code == 404
    assert client.get("/api/users/abc").status_code == 400


def test_requests_are_audited(client) -> None:
    client.get("/health")
    client.get("/api/about")

    resp = client.get("/api/logs", params={"limit": 2})
    assert resp.status_code == 200
    entries = resp.json()
    assert len(entries) == 2
    assert entries[0]["path"] == "/api/about"
    assert entries[0]["status_code"] == 200


def test_unknown_route_returns_json_404(client) -> None:
    resp = client.get("/api/nope")
    assert resp.status_code == 404
    assert resp.json() == {"message": "Not Found"}


def test_store_failure_maps_to_server_error(client, monkeypatch) -> None:
    _add_user(client, 77)

    def unavailable(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(ReportService, "resolve", unavailable)
    with TestClient(app, raise_server_exceptions=False) as failing:
        resp = failing.get("/api/report", params={"id": 77, "year": 2024, "month": 3})
    assert resp.status_code == 500
    assert resp.json() == {"message": "Internal Error"}


@pytest.mark.parametrize("raw_sum", ["Infinity", "NaN", "1e20"])
def test_add_cost_rejects_non_finite_and_oversized_sums(client, raw_sum) -> None:
    _add_user(client)
    body = (
        '{"kind": "cost", "userid": 123123, "description": "x", '
        f'"category": "food", "sum": {raw_sum}}}'
    )
    resp = client.post(
        "/api/add", content=body, headers={"content-type": "application/json"}
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Validation error"
    assert resp.json()["details"][0]["path"] == "cost.sum"


def test_add_cost_in_future_month_explains_the_cache_policy(client) -> None:
    _add_user(client)
    today = local_today()
    if today.month == 12:
        next_month = date(today.year + 1, 1, 1)
    else:
        next_month = date(today.year, today.month + 1, 1)

    resp = client.post(
        "/api/add",
        json={
            "kind": "cost",
            "userid": 123123,
            "description": "x",
            "category": "food",
            "sum": 1,
            "created_at": f"{next_month.isoformat()}T10:00:00",
        },
    )
    assert resp.status_code == 400
    assert resp.json() == {
        "message": "future month costs are not allowed: reports for months "
        "other than the current one are cached once generated"
    }


def test_request_log_is_written_off_the_event_loop(client, monkeypatch) -> None:
    contexts = []
    write = main._write_request_log

    def recording(session_factory, **fields):
        try:
            asyncio.get_running_loop()
            contexts.append("event_loop")
        except RuntimeError:
            contexts.append("worker")
        write(session_factory, **fields)

    monkeypatch.setattr(main, "_write_request_log", recording)
    client.get("/health")
    assert contexts == ["worker"]

    entries = client.get("/api/logs").json()
    assert [entry["path"] for entry in entries] == ["/health"]


def test_reset_keeps_a_single_seeded_user(client) -> None:
    _add_user(client, 1)
    _add_user(client, 2)
    client.post(
        "/api/add",
        json={"kind": "cost", "userid": 1, "description": "a", "category": "food", "sum": 3},
    )

    preview = client.post("/admin/reset", params={"dry_run": True})
    assert preview.status_code == 200
    assert preview.json() == {
        "user_id": 123123,
        "created_user": True,
        "users": 2,
        "costs": 1,
        "reports": 0,
        "logs": 3,
        "dry_run": True,
    }
    assert [u["id"] for u in client.get("/api/users").json()] == [1, 2]

    applied = client.post("/admin/reset", params={"id": 2})
    assert applied.json()["created_user"] is False
    assert applied.json()["users"] == 1

    with app.state.session_factory() as session:
        assert session.scalars(select(User.id)).all() == [2]
        assert session.execute(select(func.count(Cost.id))).scalar_one() == 0
        # only the audit row of the reset request itself remains
        assert session.scalars(select(RequestLog.path)).all() == ["/admin/reset"]
