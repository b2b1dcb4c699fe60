"""
Unit tests for the status reporter.
"""

import json

import pytest

from service_orchestrator.core.orchestrator import Phase
from service_orchestrator.monitoring.status import StatusReporter, render_rows
from tests.fixtures.orchestrator_fixtures import FakeSupervisor


def test_snapshot_before_start_is_all_pending(make_orchestrator, db_backend_frontend):
    orch = make_orchestrator(db_backend_frontend, topology="shop")

    snapshot = StatusReporter(orch).snapshot()

    assert snapshot.topology == "shop"
    assert [u.name for u in snapshot.units] == ["db", "backend", "frontend"]
    assert {u.phase for u in snapshot.units} == {Phase.PENDING}
    assert snapshot.all_ready is False


def test_snapshot_after_startup(make_orchestrator, db_backend_frontend):
    orch = make_orchestrator(db_backend_frontend)
    orch.up(timeout=5)

    snapshot = StatusReporter(orch).snapshot()

    assert snapshot.all_ready is True
    db = snapshot.unit("db")
    assert db.last_health.healthy
    assert db.restart_count == 0
    with pytest.raises(KeyError):
        snapshot.unit("ghost")


def test_snapshot_serializes_to_json(make_orchestrator):
    orch = make_orchestrator({
        "db": {"image": "postgres"},
        "api": {"image": "x", "depends_on": ["db"]},
    }, supervisor=FakeSupervisor(failures={"db": -1}))
    orch.up(timeout=5)

    body = json.loads(json.dumps(StatusReporter(orch).snapshot().as_dict()))

    units = {u["name"]: u for u in body["units"]}
    assert body["all_ready"] is False
    assert units["db"]["phase"] == "failed"
    assert units["api"]["phase"] == "stopped"
    assert "dependency 'db'" in units["api"]["error"]


def test_snapshot_does_not_change_state(make_orchestrator):
    orch = make_orchestrator({"a": {"image": "x"}})
    orch.up(timeout=5)
    events = len(orch.events())

    for _ in range(3):
        StatusReporter(orch).snapshot()

    assert len(orch.events()) == events


def test_render_rows_table():
    text = render_rows([
        {"name": "db", "phase": "ready", "restart_count": 0, "last_health": {"outcome": "healthy"}},
        {"name": "backend", "phase": "failed", "restart_count": 2, "last_health": None, "error": "boom"},
    ])
    lines = text.splitlines()

    assert lines[0].split() == ["UNIT", "PHASE", "HEALTH", "RESTARTS", "ERROR"]
    assert lines[1].split() == ["db", "ready", "healthy", "0"]
    assert lines[2].split() == ["backend", "failed", "-", "2", "boom"]
