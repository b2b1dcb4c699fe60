"""
Unit tests for the lifecycle orchestrator, driven by an in-memory supervisor
and scripted health probes.
"""

import threading

import pytest

from service_orchestrator.core.errors import OrchestratorError
from service_orchestrator.core.orchestrator import VALID_TRANSITIONS, Phase
from tests.fixtures.orchestrator_fixtures import (
    HEALTHY,
    UNHEALTHY,
    FakeSupervisor,
    ScriptedProber,
    fast_check,
    wait_until,
)


def _phases(orch):
    return {s.name: s.phase for s in orch.states()}


def _visited(orch, name):
    return [e.to_phase for e in orch.events(name)]


def test_units_without_health_checks_start_in_order(make_orchestrator, supervisor):
    orch = make_orchestrator({
        "c": {"image": "x", "depends_on": ["b"]},
        "b": {"image": "x", "depends_on": ["a"]},
        "a": {"image": "x"},
    })

    assert orch.up(timeout=5) is True
    assert supervisor.units("launch") == ["a", "b", "c"]
    assert set(_phases(orch).values()) == {Phase.READY}


def test_health_gated_chain_becomes_ready(make_orchestrator, supervisor, prober, db_backend_frontend):
    orch = make_orchestrator(db_backend_frontend)

    assert orch.up(timeout=5) is True
    assert supervisor.units("launch") == ["db", "backend", "frontend"]
    for name in ("db", "backend", "frontend"):
        assert _visited(orch, name) == [Phase.STARTING, Phase.AWAITING_HEALTH, Phase.READY]
        assert prober.count(name) >= 1
        assert orch.state(name).last_health.healthy


def test_dependent_waits_until_dependency_is_ready(make_orchestrator, supervisor):
    prober = ScriptedProber({"db": [HEALTHY] * 4 + [UNHEALTHY]})
    orch = make_orchestrator({
        "db": {"image": "postgres", "healthcheck": fast_check(retries=5)},
        "backend": {"image": "api", "depends_on": ["db"], "healthcheck": fast_check()},
        "frontend": {"image": "web", "depends_on": ["backend"], "healthcheck": fast_check()},
    }, prober=prober)

    assert orch.up(timeout=5) is False

    # four healthy probes are one short of ready; the unhealthy streak then fails db
    assert prober.count("db") >= 5
    assert orch.phase("db") is Phase.FAILED
    assert Phase.READY not in _visited(orch, "db")
    for name in ("backend", "frontend"):
        assert orch.phase(name) is Phase.STOPPED
        assert Phase.STARTING not in _visited(orch, name)
        assert "dependency 'db'" in orch.state(name).error
    assert supervisor.units("launch") == ["db"]


def test_three_unhealthy_probes_fail_the_unit(make_orchestrator):
    prober = ScriptedProber({"db": [UNHEALTHY]})
    orch = make_orchestrator({"db": {"image": "postgres", "healthcheck": fast_check(retries=3)}}, prober=prober)

    assert orch.up(timeout=5) is False

    state = orch.state("db")
    assert state.phase is Phase.FAILED
    assert prober.count("db") == 3
    assert "health check failed" in state.error
    assert state.process_id is None


def test_launch_failure_never_starts_dependents(make_orchestrator):
    supervisor = FakeSupervisor(failures={"a": -1})
    orch = make_orchestrator({
        "a": {"image": "x"},
        "b": {"image": "x", "depends_on": ["a"]},
        "c": {"image": "x", "depends_on": ["b"]},
        "solo": {"image": "x"},
    }, supervisor=supervisor)

    assert orch.up(timeout=5) is False

    assert orch.phase("a") is Phase.FAILED
    assert "simulated launch failure" in orch.state("a").error
    for name in ("b", "c"):
        assert orch.phase(name) is Phase.STOPPED
        assert Phase.STARTING not in _visited(orch, name)
    assert orch.phase("solo") is Phase.READY
    assert supervisor.units("launch").count("b") == 0


def test_on_failure_restarts_until_launch_succeeds(make_orchestrator):
    supervisor = FakeSupervisor(failures={"a": 2})
    orch = make_orchestrator({
        "a": {"image": "x", "restart": "on-failure"},
        "b": {"image": "x", "depends_on": ["a"]},
    }, supervisor=supervisor)

    assert orch.up(timeout=5) is True

    assert orch.state("a").restart_count == 2
    assert supervisor.count("launch", "a") == 3
    assert _visited(orch, "a").count(Phase.FAILED) == 2
    assert orch.phase("b") is Phase.READY


def test_on_failure_limit_is_respected(make_orchestrator):
    supervisor = FakeSupervisor(failures={"a": -1})
    orch = make_orchestrator({
        "a": {"image": "x", "restart": "on-failure:2"},
        "b": {"image": "x", "depends_on": ["a"]},
    }, supervisor=supervisor)

    assert orch.up(timeout=5) is False

    assert orch.phase("a") is Phase.FAILED
    assert orch.state("a").restart_count == 2
    assert supervisor.count("launch", "a") == 3
    assert orch.phase("b") is Phase.STOPPED


def test_always_restarts_unit_that_turns_unhealthy(make_orchestrator, supervisor):
    prober = ScriptedProber({"a": [HEALTHY, UNHEALTHY, HEALTHY]})
    orch = make_orchestrator({"a": {"image": "x", "restart": "always", "healthcheck": fast_check(retries=1)}},
                             prober=prober)

    orch.up(wait=False)
    wait_until(lambda: orch.state("a").restart_count == 1 and orch.phase("a") is Phase.READY)

    assert supervisor.count("launch", "a") == 2
    # the failed process was released before the replacement started
    assert supervisor.count("stop", "a") == 1
    assert _visited(orch, "a") == [
        Phase.STARTING, Phase.AWAITING_HEALTH, Phase.READY, Phase.FAILED,
        Phase.PENDING, Phase.STARTING, Phase.AWAITING_HEALTH, Phase.READY,
    ]


def test_backoff_grows_and_is_capped(make_orchestrator):
    orch = make_orchestrator({"a": {"image": "x"}}, backoff_base=1.0, backoff_max=5.0)

    assert [orch.backoff(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_independent_branches_launch_concurrently(make_orchestrator):
    barrier = threading.Barrier(2, timeout=5)
    supervisor = FakeSupervisor(barrier=(barrier, ("left", "right")))
    orch = make_orchestrator({
        "left": {"image": "x"},
        "right": {"image": "x"},
    }, supervisor=supervisor)

    # each launch blocks until the other one has started too
    assert orch.up(timeout=10) is True


def test_teardown_stops_dependents_first(make_orchestrator, supervisor):
    orch = make_orchestrator({
        "db": {"image": "postgres"},
        "cache": {"image": "redis"},
        "api": {"image": "acme/api", "depends_on": ["db", "cache"]},
        "worker": {"image": "acme/worker", "depends_on": ["db"]},
        "web": {"image": "nginx", "depends_on": ["api"]},
    })
    assert orch.up(timeout=5) is True

    assert orch.down() is True

    stops = supervisor.units("stop")
    assert sorted(stops) == sorted(["db", "cache", "api", "worker", "web"])
    for name in orch.graph.start_order:
        for child in orch.graph.dependents(name):
            assert stops.index(child) < stops.index(name), f"{child} must stop before {name}"
    assert set(_phases(orch).values()) == {Phase.STOPPED}


def test_teardown_twice_is_a_no_op(make_orchestrator, supervisor, db_backend_frontend):
    orch = make_orchestrator(db_backend_frontend)
    orch.up(timeout=5)

    assert orch.down() is True
    calls = list(supervisor.calls)
    events = len(orch.events())

    assert orch.down() is True
    assert supervisor.calls == calls
    assert len(orch.events()) == events


def test_teardown_mid_startup(make_orchestrator, supervisor):
    prober = ScriptedProber({"db": [UNHEALTHY]})
    orch = make_orchestrator({
        "db": {"image": "postgres", "healthcheck": fast_check(retries=1, start_delay=30, startup_timeout=60)},
        "api": {"image": "acme/api", "depends_on": ["db"]},
    }, prober=prober)

    orch.up(wait=False)
    wait_until(lambda: orch.phase("db") is Phase.AWAITING_HEALTH and prober.count("db") >= 2)

    assert orch.down() is True

    assert orch.phase("db") is Phase.STOPPED
    assert orch.phase("api") is Phase.STOPPED
    assert Phase.STARTING not in _visited(orch, "api")
    assert supervisor.units("launch") == ["db"]
    assert supervisor.units("stop") == ["db"]


def test_teardown_waits_for_inflight_launch(make_orchestrator):
    gate = threading.Event()
    supervisor = FakeSupervisor(gates={"db": gate})
    orch = make_orchestrator({"db": {"image": "postgres"}}, supervisor=supervisor)

    orch.up(wait=False)
    wait_until(lambda: orch.phase("db") is Phase.STARTING)

    result = {}
    teardown = threading.Thread(target=lambda: result.setdefault("clean", orch.down(timeout=5)))
    teardown.start()
    gate.set()
    teardown.join(10)

    assert result["clean"] is True
    assert orch.phase("db") is Phase.STOPPED
    # the process launched during teardown is still released
    assert supervisor.running == {}


def test_shutdown_timeout_forces_stop(make_orchestrator):
    release = threading.Event()
    supervisor = FakeSupervisor(stop_gate=release)
    orch = make_orchestrator({"db": {"image": "postgres"}, "api": {"image": "x", "depends_on": ["db"]}},
                             supervisor=supervisor)
    orch.up(timeout=5)

    try:
        assert orch.down(timeout=0.2) is False
        assert set(_phases(orch).values()) == {Phase.STOPPED}
    finally:
        release.set()


def test_failed_dependency_state_reflected_in_error(make_orchestrator):
    supervisor = FakeSupervisor(failures={"db": -1})
    orch = make_orchestrator({
        "db": {"image": "postgres"},
        "api": {"image": "x", "depends_on": ["db"]},
    }, supervisor=supervisor)

    orch.up(timeout=5)

    assert orch.state("api").error == "Unit 'api' stopped: dependency 'db' failed permanently"


def test_up_only_once(make_orchestrator):
    orch = make_orchestrator({"a": {"image": "x"}})
    orch.up(timeout=5)

    with pytest.raises(OrchestratorError):
        orch.up()

    orch.down()
    with pytest.raises(OrchestratorError):
        orch.up()


def test_every_recorded_transition_is_legal(make_orchestrator, db_backend_frontend):
    orch = make_orchestrator(db_backend_frontend)
    orch.up(timeout=5)
    orch.down()

    for event in orch.events():
        assert event.to_phase in VALID_TRANSITIONS[event.from_phase]


def test_state_is_a_copy(make_orchestrator):
    orch = make_orchestrator({"a": {"image": "x"}})
    orch.up(timeout=5)

    state = orch.state("a")
    state.phase = Phase.FAILED

    assert orch.phase("a") is Phase.READY


def test_store_receives_events_and_health(make_orchestrator):
    class RecordingStore:
        enabled = True

        def __init__(self):
            self.events = []
            self.health = []

        def record_event(self, doc):
            self.events.append(doc)

        def record_health(self, doc):
            self.health.append(doc)

    store = RecordingStore()
    orch = make_orchestrator({"db": {"image": "postgres", "healthcheck": fast_check()}},
                             store=store, topology="demo")
    orch.up(timeout=5)

    assert [e["to_phase"] for e in store.events] == ["starting", "awaiting_health", "ready"]
    assert all(e["topology"] == "demo" and e["unit"] == "db" for e in store.events)
    assert store.health and store.health[0]["outcome"] == "healthy"


def test_store_errors_do_not_break_transitions(make_orchestrator):
    class BrokenStore:
        enabled = True

        def record_event(self, doc):
            raise RuntimeError("database gone")

        def record_health(self, doc):
            raise RuntimeError("database gone")

    orch = make_orchestrator({"db": {"image": "postgres", "healthcheck": fast_check()}}, store=BrokenStore())

    assert orch.up(timeout=5) is True


def test_event_history_is_bounded_across_restarts(make_orchestrator, supervisor):
    prober = ScriptedProber({"a": [HEALTHY, UNHEALTHY] * 30 + [HEALTHY]})
    orch = make_orchestrator({"a": {"image": "x", "restart": "always", "healthcheck": fast_check(retries=1)}},
                             prober=prober, backoff_base=0.001, backoff_max=0.001, event_history=20)

    orch.up(wait=False)
    wait_until(lambda: orch.state("a").restart_count == 30 and orch.phase("a") is Phase.READY, timeout=20)

    events = orch.events()
    # 30 restart cycles produce well over 100 transitions
    assert len(events) == 20
    assert events[-1].to_phase is Phase.READY
    assert supervisor.count("launch", "a") == 31
