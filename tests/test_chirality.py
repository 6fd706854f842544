"""
Tests for the chirality controller.
"""

import signal

import pytest

from waterlight.chirality import ChiralityController
from waterlight.models.mode import Mode
from waterlight.models.vertex import (
    Vertex,
    VertexState,
    all_vertices,
    development_vertices,
    production_vertices,
)
from waterlight.services import ServiceCatalog, ServiceDeclaration
from waterlight.store import MemoryStateStore


def booted_table():
    """Vertex table as a production boot leaves it."""
    return {
        info.vertex: VertexState.INACTIVE if info.is_development else VertexState.ACTIVE
        for info in all_vertices()
    }


@pytest.fixture
def booted(store):
    store.write_vertex_states(booted_table())
    store.set_mode(Mode.PRODUCTION)
    return store


@pytest.fixture
def chirality(booted, membranes, catalog, paths):
    return ChiralityController(booted, membranes, catalog=catalog, paths=paths)


class TestStatus:

    def test_four_pairs(self, chirality):
        status = chirality.status()
        assert status.mode == Mode.PRODUCTION
        assert [(p.production.id, p.development.id) for p in status.pairs] == [
            ("V000", "V001"), ("V010", "V011"), ("V100", "V101"), ("V110", "V111"),
        ]
        assert all(p.production_state == VertexState.ACTIVE for p in status.pairs)
        assert all(p.development_state == VertexState.INACTIVE for p in status.pairs)

    def test_to_dict(self, chirality):
        data = chirality.status().to_dict()
        assert data["mode"] == "production"
        assert data["sigma"] == 0
        assert data["pairs"][2]["development"]["name"] == "Antiphoton"


class TestFlip:
    """Mode flips between production and development."""

    def test_flip_to_development(self, chirality, booted):
        report = chirality.flip("development")

        assert report.changed
        assert sorted(report.activated) == ["V001", "V011", "V101", "V111"]
        assert booted.get_mode() == Mode.DEVELOPMENT
        states = booted.get_vertex_states()
        for info in development_vertices():
            assert states[info.vertex] == VertexState.ACTIVE
        for info in production_vertices():
            assert states[info.vertex] == VertexState.ACTIVE

    def test_toggle_twice_restores(self, chirality, booted):
        before = booted.get_vertex_states()
        chirality.flip()
        chirality.flip()
        assert booted.get_vertex_states() == before
        assert booted.get_mode() == Mode.PRODUCTION

    def test_numeric_target(self, chirality, booted):
        chirality.flip(1)
        assert booted.get_mode() == Mode.DEVELOPMENT

    def test_already_in_mode_is_noop(self, chirality, booted):
        before = booted.get_vertex_states()
        report = chirality.flip("production")
        assert not report.changed
        assert report.changes == ["Already in production mode"]
        assert booted.get_vertex_states() == before

    def test_bad_target(self, chirality):
        with pytest.raises(ValueError):
            chirality.flip("sideways")

    def test_pending_vertices_are_activated(self, chirality, booted):
        booted.set_vertex_state(Vertex.V101, VertexState.PENDING)
        report = chirality.flip("development")
        assert "V101" in report.activated

    def test_mode_written_last(self, membranes, catalog, paths):
        class FailingModeStore(MemoryStateStore):
            fail = True

            def set_mode(self, mode):
                if self.fail:
                    raise OSError("read-only file system")
                super().set_mode(mode)

        store = FailingModeStore()
        store.write_vertex_states(booted_table())
        controller = ChiralityController(store, membranes, catalog=catalog, paths=paths)

        with pytest.raises(OSError):
            controller.flip("development")
        # Interrupted: vertices moved, mode bit still production.
        assert store.get_mode() == Mode.PRODUCTION
        assert store.get_vertex_state(Vertex.V111) == VertexState.ACTIVE

        # A retry only redoes what is missing.
        store.fail = False
        report = controller.flip("development")
        assert report.activated == []
        assert len(report.skipped) == 4
        assert store.get_mode() == Mode.DEVELOPMENT


class TestDevelopmentServices:
    """Services declared on development vertices follow the mode."""

    @pytest.fixture
    def catalog(self):
        return ServiceCatalog([
            ServiceDeclaration(name="gdbserver", vertex="V111", command="/bin/true"),
            ServiceDeclaration(name="tracer", vertex="V101"),
            ServiceDeclaration(name="kprobe", vertex="V011", command="/usr/bin/kprobe"),
            ServiceDeclaration(name="nginx", vertex="V110", command="/usr/sbin/nginx"),
        ])

    def test_flip_starts_development_services(self, chirality, booted, launcher):
        report = chirality.flip("development")

        assert report.started == ["gdbserver"]
        record = booted.get_runtime("gdbserver")
        assert record.vertex == "V111"
        assert launcher.launched[0]["argv"] == ["/bin/true"]
        # Production services are not chirality's business.
        assert booted.get_runtime("nginx") is None

    def test_missing_command_prepares_membrane(self, chirality, booted):
        report = chirality.flip("development")

        assert "tracer" in report.degraded
        assert booted.get_descriptor("tracer").vertex == "V101"
        assert booted.get_runtime("tracer") is None
        assert any("membrane prepared but not started" in w for w in report.warnings)

    def test_kernel_vertex_skipped(self, chirality, booted):
        report = chirality.flip("development")
        assert booted.get_runtime("kprobe") is None
        assert any(line.startswith("kprobe:") for line in report.skipped)

    def test_running_service_not_restarted(self, chirality, launcher):
        chirality.flip("development")
        chirality.store.set_mode(Mode.PRODUCTION)
        report = chirality.flip("development")
        assert "gdbserver already running" in report.skipped
        assert len(launcher.launched) == 1

    def test_flip_to_production_stops_only_development(self, chirality, booted, membranes, launcher):
        nginx = membranes.run("nginx", "V110", "/usr/sbin/nginx").record.pid
        chirality.flip("development")
        gdb = booted.get_runtime("gdbserver").pid

        report = chirality.flip("production")

        assert report.stopped == ["gdbserver"]
        assert (gdb, signal.SIGTERM) in launcher.signals
        assert booted.get_runtime("gdbserver") is None
        assert booted.get_runtime("nginx").pid == nginx
        assert launcher.alive(nginx)
        for info in development_vertices():
            assert booted.get_vertex_state(info.vertex) == VertexState.INACTIVE

    def test_stubborn_service_is_killed(self, chirality, booted, launcher):
        chirality.flip("development")
        gdb = booted.get_runtime("gdbserver").pid
        launcher.stubborn.add(gdb)

        chirality.flip("production")

        assert (gdb, signal.SIGKILL) in launcher.signals
        assert not launcher.alive(gdb)

    def test_diff(self, chirality):
        diff = chirality.diff()
        assert diff.target == Mode.DEVELOPMENT
        # kprobe sits on a kernel vertex and is never started by a flip.
        assert sorted(d.name for d in diff.start) == ["gdbserver", "tracer"]
        assert diff.stop == []

        chirality.flip("development")
        diff = chirality.diff()
        assert diff.target == Mode.PRODUCTION
        assert diff.stop == ["gdbserver"]
        assert diff.start == []


class TestSelective:
    """Single-pair changes."""

    def test_activate_partner(self, chirality, booted):
        report = chirality.selective("V100", "activate")

        assert report.activated == ["V101"]
        assert report.changes == ["Activated V101 Antiphoton (partner of V100)"]
        assert booted.get_vertex_state(Vertex.V101) == VertexState.ACTIVE
        assert booted.get_vertex_state(Vertex.V100) == VertexState.ACTIVE
        assert booted.get_vertex_state(Vertex.V111) == VertexState.INACTIVE
        assert booted.get_mode() == Mode.PRODUCTION

    def test_development_vertex_directly(self, chirality, booted):
        chirality.selective("V111", "activate")
        report = chirality.selective("V111", "deactivate")
        assert report.deactivated == ["V111"]
        assert report.changes == ["Deactivated V111 Positron"]
        assert booted.get_vertex_state(Vertex.V111) == VertexState.INACTIVE

    def test_deactivate_inactive_is_skipped(self, chirality):
        report = chirality.selective("V110", "deactivate")
        assert not report.changed
        assert report.skipped == ["V111 is inactive"]

    def test_invalid_action(self, chirality):
        with pytest.raises(ValueError):
            chirality.selective("V100", "explode")
