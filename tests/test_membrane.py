"""
Tests for the membrane controller.
"""

import time

import pytest

from waterlight.cgroup import CgroupTree
from waterlight.errors import Busy, InvalidVertex, NotFound, UnsupportedVertex
from waterlight.membrane import MembraneController
from waterlight.models.membrane import Enforcement, MembraneState, check_service_name
from waterlight.models.vertex import MiB, lookup

from conftest import FakeLauncher


class TestCreate:
    """Creating and updating membranes."""

    def test_dns_in_photon(self, membranes, cgroups):
        result = membranes.create("dns", "V100")
        assert result.enforcement == Enforcement.APPLIED
        assert not result.degraded

        report = membranes.inspect("dns")
        d = report.descriptor
        assert d.vertex == "V100"
        assert d.slice == "photon"
        assert d.limits.memory_hard == 128 * MiB
        assert d.limits.memory_soft == 64 * MiB
        assert d.limits.cpu_weight == 25
        assert d.limits.pids_max == 256
        assert d.capabilities == ["cap_net_bind_service"]
        assert d.state == MembraneState.CREATED

        group = cgroups.service_path("photon", "dns")
        assert (group / "memory.max").read_text() == f"{128 * MiB}\n"
        assert (group / "memory.high").read_text() == f"{64 * MiB}\n"
        assert (group / "cpu.weight").read_text() == "25\n"
        assert (group / "pids.max").read_text() == "256\n"

    def test_overrides_round_trip(self, membranes):
        membranes.create("api", "V110", memory_hard="512M", cpu_weight="300", capabilities=["cap_setuid"])
        d = membranes.inspect("api").descriptor
        assert d.limits.memory_hard == 512 * MiB
        assert d.limits.cpu_weight == 300
        # Omitted overrides come from the electron envelope.
        assert d.limits.memory_soft == 1024 * MiB
        assert d.limits.pids_max == 4096
        assert d.capabilities == ["cap_setuid"]

    def test_unlimited_written_as_max(self, membranes, cgroups):
        membranes.create("web", "V110")
        assert (cgroups.service_path("electron", "web") / "memory.max").read_text() == "max\n"

    def test_second_create_updates(self, membranes):
        membranes.create("dns", "V100")
        result = membranes.create("dns", "V100", pids_max=64)
        assert result.changes[0].startswith("Updated")
        d = membranes.inspect("dns").descriptor
        assert d.limits.pids_max == 64
        assert d.limits.memory_hard == 128 * MiB

    def test_vertex_change_rederives_defaults(self, membranes):
        membranes.create("dns", "V100", pids_max=64)
        membranes.create("dns", "V101")
        d = membranes.inspect("dns").descriptor
        assert d.vertex == "V101"
        assert d.slice == "antiphoton"
        assert d.limits.pids_max == 256

    def test_kernel_vertex_rejected(self, membranes, store):
        with pytest.raises(UnsupportedVertex):
            membranes.create("sched", "V010")
        assert store.get_descriptor("sched") is None

    def test_unknown_vertex_rejected(self, membranes):
        with pytest.raises(InvalidVertex):
            membranes.create("x", "V9")

    def test_soft_create_without_cgroups(self, store, tmp_path):
        controller = MembraneController(store, CgroupTree(tmp_path / "no-cgroup"), FakeLauncher())
        result = controller.create("dns", "V100")
        assert result.enforcement == Enforcement.RECORDED
        assert result.degraded
        assert any("not enforced" in w for w in result.warnings)
        assert store.get_descriptor("dns").limits.memory_hard == 128 * MiB

    def test_blocked_service_path_is_soft_create(self, membranes, cgroups, store):
        cgroups.service_path("photon", "dns").write_text("")
        result = membranes.create("dns", "V100")
        assert result.enforcement == Enforcement.RECORDED
        assert any("cannot create" in w for w in result.warnings)
        assert store.get_descriptor("dns").vertex == "V100"

    @pytest.mark.parametrize("name", ["..", ".", "../../escape", "a/b", "", "-x", "dns\n"])
    def test_unsafe_names_rejected(self, membranes, cgroups, store, name):
        parent = cgroups.slice_path("photon") / "memory.max"
        before = parent.read_text() if parent.exists() else None

        with pytest.raises(ValueError):
            membranes.create(name, "V100")
        with pytest.raises(ValueError):
            membranes.run(name, "V100", "/bin/true")

        assert store.list_descriptors() == []
        assert (parent.read_text() if parent.exists() else None) == before
        assert sorted(p.name for p in cgroups.slice_path("photon").iterdir() if p.is_dir()) == []

    @pytest.mark.parametrize("name", ["dns", "getty@tty1", "nginx.web", "a_b-c"])
    def test_usual_names_accepted(self, name):
        assert check_service_name(name) == name


class TestStretch:
    """Stretch and contract."""

    def test_stretch_then_contract(self, membranes, cgroups):
        membranes.create("dns", "V100")
        result = membranes.stretch("dns", memory="512M", cpu=100)
        assert result.enforcement == Enforcement.APPLIED

        d = membranes.inspect("dns").descriptor
        assert d.state == MembraneState.STRETCHED
        assert d.limits.memory_hard == 512 * MiB
        assert d.limits.cpu_weight == 100
        group = cgroups.service_path("photon", "dns")
        assert (group / "memory.max").read_text() == f"{512 * MiB}\n"

        membranes.contract("dns")
        d = membranes.inspect("dns").descriptor
        assert d.state == MembraneState.CREATED
        assert d.limits.memory_hard == 128 * MiB
        assert d.limits.cpu_weight == 25
        assert not d.is_stretched
        assert (group / "memory.max").read_text() == f"{128 * MiB}\n"

    def test_first_stretch_wins(self, membranes):
        membranes.create("dns", "V100")
        membranes.stretch("dns", memory="256M")
        membranes.stretch("dns", memory="1G")
        assert membranes.inspect("dns").descriptor.limits.memory_hard == 1024 * MiB

        membranes.contract("dns")
        assert membranes.inspect("dns").descriptor.limits.memory_hard == 128 * MiB

    def test_contract_unstretched_is_noop(self, membranes):
        membranes.create("dns", "V100")
        result = membranes.contract("dns")
        assert "nothing to contract" in result.changes[0]
        assert membranes.inspect("dns").descriptor.limits.memory_hard == 128 * MiB

    def test_stretch_nothing(self, membranes):
        membranes.create("dns", "V100")
        result = membranes.stretch("dns")
        assert result.warnings
        assert membranes.inspect("dns").descriptor.state == MembraneState.CREATED

    def test_stretch_unknown(self, membranes):
        with pytest.raises(NotFound):
            membranes.stretch("ghost", memory="1G")
        with pytest.raises(NotFound):
            membranes.contract("ghost")

    def test_duration_sets_expiry(self, membranes):
        membranes.create("dns", "V100")
        before = time.time()
        membranes.stretch("dns", memory="1G", duration="10m")
        d = membranes.inspect("dns").descriptor
        assert d.stretch_expires_at >= before + 600
        assert membranes.expired_stretches(now=before) == []
        assert membranes.expired_stretches(now=before + 601) == ["dns"]

    def test_stretch_without_group_is_recorded(self, membranes, cgroups):
        import shutil
        membranes.create("dns", "V100")
        shutil.rmtree(cgroups.service_path("photon", "dns"))
        result = membranes.stretch("dns", memory="1G")
        assert result.enforcement == Enforcement.RECORDED
        assert membranes.inspect("dns").descriptor.limits.memory_hard == 1024 * MiB


class TestDestroy:
    """Destroying membranes."""

    def test_destroy_unknown(self, membranes):
        with pytest.raises(NotFound):
            membranes.destroy("ghost")

    def test_destroy_busy_keeps_descriptor(self, membranes, cgroups, store):
        membranes.create("dns", "V100")
        (cgroups.service_path("photon", "dns") / "cgroup.procs").write_text("4242\n")
        with pytest.raises(Busy) as excinfo:
            membranes.destroy("dns")
        assert excinfo.value.pids == [4242]
        assert store.get_descriptor("dns") is not None

    def test_destroy(self, membranes, store):
        membranes.create("dns", "V100")
        result = membranes.destroy("dns")
        assert result.descriptor.state == MembraneState.DESTROYED
        assert store.get_descriptor("dns") is None
        assert membranes.list() == []


class TestRun:
    """Launching processes inside membranes."""

    def test_run_creates_membrane(self, membranes, launcher, store, cgroups):
        result = membranes.run("web", "V110", "/usr/sbin/nginx", ["-g", "daemon off;"])
        assert result.isolated
        assert not result.degraded

        launch = launcher.launched[0]
        assert launch["argv"] == ["/usr/sbin/nginx", "-g", "daemon off;"]
        assert launch["namespaces"] == lookup("V110").namespaces
        assert launch["cgroup_procs"] == cgroups.service_path("electron", "web") / "cgroup.procs"

        record = store.get_runtime("web")
        assert record.pid == result.record.pid
        assert record.vertex == "V110"
        assert store.get_descriptor("web").vertex == "V110"

    def test_run_reuses_existing_membrane(self, membranes):
        membranes.create("dns", "V100", memory_hard="64M")
        membranes.run("dns", "V100", "/usr/sbin/dnsd")
        assert membranes.inspect("dns").descriptor.limits.memory_hard == 64 * MiB

    def test_run_without_unshare_is_degraded(self, store, cgroups):
        launcher = FakeLauncher(has_unshare=False)
        controller = MembraneController(store, cgroups, launcher)
        result = controller.run("tool", "V101", "/usr/bin/linter")
        assert not result.isolated
        assert result.degraded
        assert store.get_runtime("tool") is not None

    def test_running_membrane_is_busy(self, membranes):
        membranes.run("dns", "V100", "/usr/sbin/dnsd")
        with pytest.raises(Busy):
            membranes.destroy("dns")

    def test_inspect_live_process(self, membranes, launcher):
        result = membranes.run("dns", "V100", "/usr/sbin/dnsd")
        report = membranes.inspect("dns")
        assert report.active
        assert report.process_alive
        assert "pid" in report.namespaces

        launcher.exit(result.record.pid)
        assert not membranes.inspect("dns").process_alive

    def test_inspect_without_cgroup_is_inactive(self, store, tmp_path):
        controller = MembraneController(store, CgroupTree(tmp_path / "no-cgroup"), FakeLauncher())
        controller.create("dns", "V100", pids_max=32)

        report = controller.inspect("dns")
        assert report.active is False
        assert report.runtime is None
        assert not report.process_alive
        assert report.descriptor.limits.pids_max == 32
        assert report.to_dict()["usage"]["active"] is False

    def test_inspect_unknown(self, membranes):
        with pytest.raises(NotFound):
            membranes.inspect("ghost")
