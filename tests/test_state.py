import json

import pytest

from fracta.errors import InstanceNotFound, LedgerConflict, StateError
from fracta.state import (
    BrowserSession,
    Instance,
    PortForward,
    ProxyForward,
    State,
    migrate_v1,
    state_file_path,
)


def _instance(name, path="/tmp/x", **kwargs):
    return Instance(name=name, path=path, branch=name, lima_instance=f"fracta-{name}", **kwargs)


def _state(*names):
    state = State()
    for name in names:
        state.add_instance(_instance(name, path=f"/tmp/{name}"))
    return state


def _ledger_matches_records(state):
    for port, owner in state.port_allocations.items():
        assert state.get_instance(owner).holds(port)
    for inst in state.instances:
        for port in inst.held_ports():
            assert state.lookup_owner(port) == inst.name
    assert state.check_consistency() == []


# ── Ledger ───────────────────────────────────────────────────────────────


class TestLedger:
    def test_register_then_conflict(self):
        state = _state("a", "b")
        state.register("a", 9080)
        with pytest.raises(LedgerConflict) as exc:
            state.register("b", 9080)
        assert exc.value.owner == "a"
        assert state.lookup_owner(9080) == "a"

    def test_register_after_release(self):
        state = _state("a", "b")
        state.register("a", 9080)
        state.unregister("a", 9080)
        state.register("b", 9080)
        assert state.lookup_owner(9080) == "b"

    def test_register_idempotent_for_owner(self):
        state = _state("a")
        state.register("a", 9080)
        state.register("a", 9080)
        assert state.get_instance("a").reserved_ports == [9080]

    def test_unregister_other_owner_conflicts(self):
        state = _state("a", "b")
        state.register("a", 9080)
        with pytest.raises(LedgerConflict):
            state.unregister("b", 9080)

    def test_register_unknown_instance(self):
        with pytest.raises(InstanceNotFound):
            _state().register("ghost", 1)

    def test_invariant_after_sequence(self):
        state = _state("a", "b")
        state.register("a", 1)
        state.register("a", 2)
        state.register("b", 3)
        state.add_forward("b", PortForward(4, 80, 111))
        state.set_proxy("a", ProxyForward(1080, 222))
        state.unregister("a", 1)
        state.unregister("b", 4)
        _ledger_matches_records(state)
        assert state.port_allocations == {2: "a", 3: "b", 1080: "a"}

    def test_unregister_all(self):
        state = _state("a", "b")
        state.register("a", 9080)
        state.add_forward("a", PortForward(3000, 3000, 1))
        state.set_proxy("a", ProxyForward(1080, 2))
        state.register("b", 9081)
        assert state.unregister_all("a") == [1080, 3000, 9080]
        assert state.port_allocations == {9081: "b"}
        inst = state.get_instance("a")
        assert inst.active_forwards == [] and inst.active_proxy is None
        _ledger_matches_records(state)

    def test_set_reserved_ports_replaces(self):
        state = _state("a")
        state.set_reserved_ports("a", [9080, 9443])
        state.set_reserved_ports("a", [9443, 9500])
        assert state.get_instance("a").reserved_ports == [9443, 9500]
        assert state.port_allocations == {9443: "a", 9500: "a"}

    def test_set_reserved_ports_conflict_changes_nothing(self):
        state = _state("a", "b")
        state.register("b", 9500)
        state.set_reserved_ports("a", [9080])
        with pytest.raises(LedgerConflict):
            state.set_reserved_ports("a", [9081, 9500])
        assert state.get_instance("a").reserved_ports == [9080]
        assert state.port_allocations == {9080: "a", 9500: "b"}


class TestForwards:
    def test_add_and_remove(self):
        state = _state("a")
        state.add_forward("a", PortForward(3000, 80, 42))
        assert state.lookup_owner(3000) == "a"
        fwd = state.remove_forward("a", 3000)
        assert fwd == PortForward(3000, 80, 42)
        assert state.lookup_owner(3000) is None

    def test_remove_missing(self):
        assert _state("a").remove_forward("a", 1) is None

    def test_duplicate_local_port(self):
        state = _state("a")
        state.add_forward("a", PortForward(3000, 80, 42))
        with pytest.raises(LedgerConflict):
            state.add_forward("a", PortForward(3000, 81, 43))

    def test_forward_on_other_instance_port(self):
        state = _state("a", "b")
        state.register("b", 3000)
        with pytest.raises(LedgerConflict):
            state.add_forward("a", PortForward(3000, 80, 42))
        assert state.get_instance("a").active_forwards == []

    def test_second_proxy_rejected(self):
        state = _state("a")
        state.set_proxy("a", ProxyForward(1080, 1))
        with pytest.raises(StateError):
            state.set_proxy("a", ProxyForward(1081, 2))

    def test_clear_forwards(self):
        state = _state("a")
        state.add_forward("a", PortForward(1, 1, 1))
        state.add_forward("a", PortForward(2, 2, 2))
        assert len(state.clear_forwards("a")) == 2
        assert state.port_allocations == {}


class TestReconcile:
    def test_dead_records_purged(self):
        state = _state("a")
        state.add_forward("a", PortForward(3000, 80, 100))
        state.add_forward("a", PortForward(3001, 81, 101))
        state.set_proxy("a", ProxyForward(1080, 102))
        state.set_browser("a", BrowserSession("chrome", "http://x", 103))

        running = {101}
        purged = state.reconcile("a", alive=lambda pid: pid in running)

        inst = state.get_instance("a")
        assert [f.local_port for f in inst.active_forwards] == [3001]
        assert inst.active_proxy is None
        assert inst.active_browser is None
        assert len(purged) == 3
        assert state.port_allocations == {3001: "a"}

    def test_all_alive_is_noop(self):
        state = _state("a")
        state.add_forward("a", PortForward(3000, 80, 100))
        assert state.reconcile("a", alive=lambda pid: True) == []
        assert state.lookup_owner(3000) == "a"

    def test_reconcile_all(self):
        state = _state("a", "b")
        state.add_forward("a", PortForward(1, 1, 1))
        state.add_forward("b", PortForward(2, 2, 2))
        purged = state.reconcile_all(alive=lambda pid: False)
        assert len(purged) == 2
        assert purged[0].startswith("a: ")


class TestInstances:
    def test_duplicate_name(self):
        state = _state("a")
        with pytest.raises(StateError):
            state.add_instance(_instance("a"))

    def test_remove_releases_ports(self):
        state = _state("a")
        state.register("a", 9080)
        state.remove_instance("a")
        assert state.instances == []
        assert state.port_allocations == {}

    def test_resolve_by_cwd(self, tmp_path):
        wt = tmp_path / "wt"
        (wt / "src").mkdir(parents=True)
        state = State()
        state.add_instance(_instance("a", path=str(wt)))
        assert state.resolve_instance(None, wt / "src").name == "a"

    def test_resolve_by_cwd_outside(self, tmp_path):
        state = _state("a")
        with pytest.raises(InstanceNotFound, match="current directory"):
            state.resolve_instance(None, tmp_path)

    def test_used_offsets(self):
        state = State()
        state.add_instance(_instance("a", port_offset=1000))
        state.add_instance(_instance("b", port_offset=3000))
        state.add_instance(_instance("main"))
        assert state.used_offsets() == {1000, 3000}
        assert state.used_offsets(exclude="a") == {3000}


# ── Persistence ──────────────────────────────────────────────────────────


class TestPersistence:
    def test_missing_file_is_empty(self, tmp_path):
        state = State.load(tmp_path)
        assert state.instances == [] and state.port_allocations == {}

    def test_round_trip(self, tmp_path):
        state = _state("a")
        state.add_forward("a", PortForward(3000, 80, 42))
        state.set_proxy("a", ProxyForward(1080, 43))
        state.register("a", 9080)
        state.set_browser("a", BrowserSession("firefox", "http://x", 44))
        state.save(tmp_path)

        loaded = State.load(tmp_path)
        assert loaded.to_dict() == state.to_dict()
        assert loaded.port_allocations == {1080: "a", 3000: "a", 9080: "a"}

    def test_file_shape(self, tmp_path):
        state = _state("a")
        state.register("a", 9080)
        state.save(tmp_path)
        raw = json.loads(state_file_path(tmp_path).read_text())
        assert raw["version"] == 2
        assert raw["port_allocations"] == {"9080": "a"}
        assert raw["instances"][0]["reserved_ports"] == [9080]
        assert not list(state_file_path(tmp_path).parent.glob("*.tmp"))

    def test_corrupt_json(self, tmp_path):
        path = state_file_path(tmp_path)
        path.parent.mkdir()
        path.write_text("{not json")
        with pytest.raises(StateError):
            State.load(tmp_path)

    def test_unknown_shape(self):
        with pytest.raises(StateError, match="unsupported format"):
            State.from_dict({"something": []})

    def test_newer_version(self):
        with pytest.raises(StateError, match="newer"):
            State.from_dict({"version": 3, "instances": []})

    def test_repair_on_load(self, tmp_path, caplog):
        raw = {
            "version": 2,
            "instances": [
                {
                    "name": "a",
                    "path": "/tmp/a",
                    "branch": "a",
                    "lima_instance": "fracta-a",
                    "port_offset": 0,
                    "active_forwards": [{"local_port": 3000, "remote_port": 80, "pid": 1}],
                    "reserved_ports": [],
                    "active_proxy": None,
                    "active_browser": None,
                }
            ],
            "port_allocations": {"9999": "ghost"},
        }
        path = state_file_path(tmp_path)
        path.parent.mkdir()
        path.write_text(json.dumps(raw))

        with caplog.at_level("WARNING", logger="fracta"):
            state = State.load(tmp_path)
        assert state.port_allocations == {3000: "a"}
        assert "State repair" in caplog.text


class TestMigration:
    V1 = {
        "worktrees": [
            {"name": "feature/x", "path": "/tmp/app-feature-x", "branch": "feature/x", "port_offset": 3000},
            {"name": "bug", "path": "/tmp/app-bug", "port_offset": 5000},
        ]
    }

    def test_upconverts(self):
        state = migrate_v1(self.V1)
        inst = state.get_instance("feature/x")
        assert inst.lima_instance == "fracta-feature-x"
        assert inst.port_offset == 3000
        assert inst.active_forwards == []
        assert state.get_instance("bug").branch == "bug"
        assert state.port_allocations == {}

    def test_load_then_save_writes_new_shape(self, tmp_path):
        path = state_file_path(tmp_path)
        path.parent.mkdir()
        path.write_text(json.dumps(self.V1))

        State.load(tmp_path).save(tmp_path)
        raw = json.loads(path.read_text())
        assert "worktrees" not in raw
        assert raw["version"] == 2
        assert [i["name"] for i in raw["instances"]] == ["feature/x", "bug"]

    def test_malformed_entry(self):
        with pytest.raises(StateError):
            migrate_v1({"worktrees": [{"path": "/x"}]})
