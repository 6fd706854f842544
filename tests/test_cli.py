"""
Tests for the waterlight command line, run against a re-rooted layout.
"""

import json

import pytest

from waterlight.cli import main


@pytest.fixture
def cli(tmp_path):
    def _run(*argv):
        return main(["--root", str(tmp_path)] + list(argv))
    return _run


class TestVertexCommands:

    def test_list(self, cli, capsys):
        assert cli("vertex", "list") == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0] == "V000 Neutrino"
        assert lines[-1] == "V111 Positron"
        assert len(lines) == 8

    def test_status_json(self, cli, capsys):
        assert cli("vertex", "status", "--json") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["mode"] == 0
        assert data["membranes"] == []

    def test_inspect_json(self, cli, capsys):
        assert cli("vertex", "inspect", "v101", "--json") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["id"] == "V101"
        assert data["partner"] == "V100"

    def test_cube(self, cli, capsys):
        assert cli("vertex", "cube") == 0
        assert "sigma=1" in capsys.readouterr().out

    def test_unknown_vertex(self, cli, capsys):
        assert cli("vertex", "inspect", "V999") == 1
        assert capsys.readouterr().err.startswith("Error:")


class TestMembraneCommands:

    def test_create_and_inspect(self, cli, capsys):
        assert cli("membrane", "create", "dns", "--vertex", "V100", "--memory-hard", "64M") == 0
        out = capsys.readouterr().out
        assert "Created membrane 'dns' in vertex V100 (photon)" in out
        # No cgroup tree under the test root.
        assert "limits recorded but not enforced" in out

        assert cli("membrane", "inspect", "dns", "--json") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["descriptor"]["vertex"] == "V100"
        assert data["descriptor"]["limits"]["memory_hard"] == 64 * 1024 * 1024
        assert data["runtime"] is None

    def test_list(self, cli, capsys):
        assert cli("membrane", "list") == 0
        assert "No membranes" in capsys.readouterr().out

        cli("membrane", "create", "db", "--vertex", "V110")
        capsys.readouterr()
        assert cli("membrane", "list") == 0
        out = capsys.readouterr().out
        assert "db" in out and "electron" in out

    def test_stretch_and_contract(self, cli, capsys):
        cli("membrane", "create", "dns")
        assert cli("membrane", "stretch", "dns", "--memory", "256M") == 0
        assert "memory_hard stretched to 256M" in capsys.readouterr().out
        assert cli("membrane", "contract", "dns") == 0
        assert "memory_hard restored to 128M" in capsys.readouterr().out

    def test_destroy_missing(self, cli, capsys):
        assert cli("membrane", "destroy", "ghost") == 1
        assert "Error:" in capsys.readouterr().err

    def test_kernel_vertex_rejected(self, cli, capsys):
        assert cli("membrane", "create", "probe", "--vertex", "V010") == 1
        assert "Error:" in capsys.readouterr().err

    def test_path_like_name_rejected(self, cli, capsys, tmp_path):
        assert cli("membrane", "create", "../../escape", "--vertex", "V100") == 1
        assert "Invalid service name" in capsys.readouterr().err
        assert not (tmp_path / "escape").exists()

    def test_run_without_command(self, cli):
        with pytest.raises(SystemExit) as exc:
            cli("membrane", "run", "dns", "--vertex", "V100")
        assert exc.value.code == 2


class TestChiralityCommands:

    def test_flip_and_status(self, cli, capsys):
        assert cli("chirality", "flip", "development") == 0
        assert "Chirality flip: production -> development" in capsys.readouterr().out

        assert cli("chirality", "status", "--json") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["mode"] == "development"
        assert data["sigma"] == 1

    def test_flip_same_mode(self, cli, capsys):
        assert cli("chirality", "flip", "production") == 0
        assert "Already in production mode" in capsys.readouterr().out

    def test_bad_target(self, cli, capsys):
        assert cli("chirality", "flip", "sideways") == 1
        assert "Error:" in capsys.readouterr().err

    def test_diff(self, cli, capsys):
        assert cli("chirality", "diff") == 0
        assert "(no development services defined)" in capsys.readouterr().out


class TestNoCommand:

    def test_help(self, cli, capsys):
        assert cli() == 1
        assert "usage:" in capsys.readouterr().out
