from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from demand_engine.core.config import get_settings
from demand_engine.db.dependencies import get_session_factory
from demand_engine.models.entities import Client, RecurrenceType, RecurringTask, Skill, StaffMember

WINDOW = {"start_month": "2026-01-01", "months": 3}


@pytest.fixture()
def seeded(db_session: Session) -> dict[str, str]:
    now = datetime.utcnow()
    acme = Client(legal_name="Acme Corp", active=True, created_at=now)
    beta = Client(legal_name="Beta LLC", active=True, created_at=now)
    alice = StaffMember(full_name="Alice Smith", role_title="Senior Accountant", active=True)
    tax = Skill(name="Tax", active=True, fee_rate=Decimal("100.00"))
    audit = Skill(name="Audit", active=True)
    db_session.add_all([acme, beta, alice, tax, audit])
    db_session.flush()

    db_session.add_all(
        [
            RecurringTask(
                client_id=acme.id,
                name="Monthly close",
                required_skill="Tax",
                estimated_hours=Decimal("4.00"),
                recurrence_type=RecurrenceType.MONTHLY,
                recurrence_interval=1,
                due_date=date(2026, 1, 15),
                is_active=True,
                preferred_staff_id=alice.id,
            ),
            RecurringTask(
                client_id=beta.id,
                name="Quarterly audit",
                required_skill=str(audit.id),
                estimated_hours=Decimal("10.00"),
                recurrence_type=RecurrenceType.QUARTERLY,
                recurrence_interval=1,
                due_date=date(2026, 1, 10),
                is_active=True,
            ),
            RecurringTask(
                client_id=acme.id,
                name="Ledger cleanup",
                required_skill="Bookkeeping",
                estimated_hours=Decimal("2.00"),
                recurrence_type=RecurrenceType.MONTHLY,
                recurrence_interval=1,
                is_active=True,
            ),
        ]
    )
    db_session.commit()
    return {"acme": str(acme.id), "beta": str(beta.id), "alice": str(alice.id)}


def test_skill_matrix_with_validation_issues(client: TestClient, seeded: dict[str, str]) -> None:
    response = client.get("/api/v1/demand-matrix", params=WINDOW)

    assert response.status_code == 200
    body = response.json()
    assert body["strategy"] == "skill-based"
    matrix = body["matrix"]
    assert matrix["skills"] == ["Audit", "Tax"]
    assert [month["key"] for month in matrix["months"]] == ["2026-01", "2026-02", "2026-03"]
    assert matrix["total_demand"] == "22.00"
    assert matrix["total_tasks"] == 2
    assert matrix["total_clients"] == 2
    assert {row["label"]: row["total_hours"] for row in matrix["summary"]} == {"Audit": "10.00", "Tax": "12.00"}
    assert matrix["total_suggested_revenue"] == "1950.00"
    assert matrix["skill_fee_rates"] == {"Audit": "75.00", "Tax": "100.00"}
    assert matrix["client_totals"] == {seeded["acme"]: "12.00", seeded["beta"]: "10.00"}
    assert len(body["validation_issues"]) == 1
    assert "unknown skill 'Bookkeeping'" in body["validation_issues"][0]


def test_specific_staff_selection_switches_to_staff_matrix(client: TestClient, seeded: dict[str, str]) -> None:
    response = client.get(
        "/api/v1/demand-matrix",
        params={**WINDOW, "preferred_staff": [seeded["alice"].upper()], "staff_mode": "specific"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["strategy"] == "staff-based"
    assert body["matrix"]["skills"] == ["Alice Smith"]
    assert body["matrix"]["total_demand"] == "12.00"
    assert body["unfiltered_totals"]["total_demand"] == "22.00"
    point = body["matrix"]["data_points"][0]
    assert point["is_staff_specific"] is True
    assert point["actual_staff_id"] == seeded["alice"]


def test_none_mode_keeps_unassigned_work(client: TestClient, seeded: dict[str, str]) -> None:
    response = client.get("/api/v1/demand-matrix", params={**WINDOW, "staff_mode": "none"})

    assert response.status_code == 200
    assert response.json()["matrix"]["total_demand"] == "10.00"


def test_skill_client_and_month_filters(client: TestClient, seeded: dict[str, str]) -> None:
    by_skill = client.get("/api/v1/demand-matrix", params={**WINDOW, "skill": ["Audit"]})
    by_client = client.get("/api/v1/demand-matrix", params={**WINDOW, "client": [seeded["acme"]]})
    by_months = client.get("/api/v1/demand-matrix", params={**WINDOW, "month_start": 1, "month_end": 2})

    assert by_skill.json()["matrix"]["total_demand"] == "10.00"
    assert by_client.json()["matrix"]["total_demand"] == "12.00"
    months_body = by_months.json()["matrix"]
    assert [month["key"] for month in months_body["months"]] == ["2026-02", "2026-03"]
    assert months_body["total_demand"] == "8.00"


def test_client_grouping(client: TestClient, seeded: dict[str, str]) -> None:
    response = client.get("/api/v1/demand-matrix", params={**WINDOW, "grouping": "client"})

    assert response.status_code == 200
    matrix = response.json()["matrix"]
    assert matrix["grouping"] == "client"
    assert matrix["skills"] == ["Acme Corp", "Beta LLC"]
    assert matrix["total_demand"] == "22.00"


def test_cell_drill_down(client: TestClient, seeded: dict[str, str]) -> None:
    response = client.get("/api/v1/demand-matrix/cells", params={**WINDOW, "key": "Tax", "month": "2026-02"})
    missing = client.get("/api/v1/demand-matrix/cells", params={**WINDOW, "key": "Audit", "month": "2026-02"})

    assert response.status_code == 200
    cell = response.json()
    assert cell["demand_hours"] == "4.00"
    assert cell["task_count"] == 1
    entry = cell["task_breakdown"][0]
    assert entry["task_name"] == "Monthly close"
    assert entry["recurrence_pattern"] == "Every month"
    assert (entry["fee_rate"], entry["suggested_revenue"]) == ("100.00", "400.00")
    assert cell["suggested_revenue"] == "400.00"
    assert entry["preferred_staff"] == {"kind": "staff", "staff_id": seeded["alice"], "staff_name": "Alice Smith"}
    assert missing.status_code == 404


def test_invalid_query_values_are_rejected(client: TestClient, seeded: dict[str, str]) -> None:
    assert client.get("/api/v1/demand-matrix", params={"staff_mode": "everyone"}).status_code == 422
    assert client.get("/api/v1/demand-matrix", params={"months": 0}).status_code == 422
    assert client.get("/api/v1/demand-matrix", params={"month_start": 3, "month_end": 1}).status_code == 422
    assert client.get("/api/v1/demand-matrix/cells", params={"key": "Tax", "month": "Feb"}).status_code == 422


def test_filter_options(client: TestClient, seeded: dict[str, str]) -> None:
    response = client.get("/api/v1/demand-matrix/filter-options")

    assert response.status_code == 200
    body = response.json()
    assert body["skills"] == ["Audit", "Tax"]
    assert [row["name"] for row in body["clients"]] == ["Acme Corp", "Beta LLC"]
    assert body["preferred_staff"] == [
        {"id": seeded["alice"], "name": "Alice Smith", "role_title": "Senior Accountant"}
    ]


def test_cache_stats_and_reset(client: TestClient, seeded: dict[str, str]) -> None:
    client.get("/api/v1/demand-matrix", params=WINDOW)
    client.get("/api/v1/demand-matrix", params=WINDOW)

    stats = client.get("/api/v1/demand-matrix/cache/stats").json()
    reset = client.post("/api/v1/demand-matrix/cache/reset")

    assert stats["skill"]["hits"] == 1
    assert stats["skill"]["misses"] == 1
    assert stats["client"]["size"] == 0
    assert reset.status_code == 200
    assert reset.json() == {"status": "reset", "views": ["skill", "client"]}
    assert client.get("/api/v1/demand-matrix/cache/stats").json()["skill"]["size"] == 0


def test_directory_failure_maps_to_service_unavailable(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    settings = get_settings()
    monkeypatch.setattr(settings, "demand_retry_base_seconds", 0.0)
    monkeypatch.setattr(settings, "demand_retry_max_attempts", 2)
    empty_engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    client.app.dependency_overrides[get_session_factory] = lambda: sessionmaker(bind=empty_engine, future=True)

    response = client.get("/api/v1/demand-matrix", params=WINDOW)

    assert response.status_code == 503
    assert "recurring tasks" in response.json()["detail"]
