"""Tests for repository cloning."""

from __future__ import annotations

import pytest

from podline.engine import EngineError
from podline.errors import StageError
from podline.model import Repository, Settings
from podline.repos import GIT_IMAGE, checkout_directory, clone_args, clone_repository


class TestCloneArgs:
    def test_plain(self):
        assert clone_args(Repository(name="app", location="https://example.com/app.git")) == [
            "clone", "https://example.com/app.git",
        ]

    def test_shallow_with_directory(self):
        repo = Repository(name="app", location="git@example.com:org/app.git", directory="app", shallow=True)
        assert clone_args(repo) == ["clone", "--depth", "1", "git@example.com:org/app.git", "app"]

    def test_branch_disables_shallow(self):
        repo = Repository(name="app", location="https://example.com/app.git", shallow=True, branch="main")
        assert "--depth" not in clone_args(repo)

    @pytest.mark.parametrize("ref", [{"tag": "v1.0"}, {"commit": "abc123"}])
    def test_any_ref_disables_shallow(self, ref):
        repo = Repository(name="app", location="https://example.com/app.git", shallow=True, **ref)
        assert "--depth" not in clone_args(repo)


class TestRef:
    def test_priority(self):
        assert Repository(name="a", location="x", branch="main", tag="v1", commit="c").ref == "main"
        assert Repository(name="a", location="x", tag="v1", commit="c").ref == "v1"
        assert Repository(name="a", location="x", commit="c").ref == "c"
        assert Repository(name="a", location="x").ref == ""


class TestCheckoutDirectory:
    def test_explicit(self):
        repo = Repository(name="a", location="https://example.com/app.git", directory="code")
        assert checkout_directory(repo, "/src") == "/src/code"

    def test_current_directory(self):
        repo = Repository(name="a", location="https://example.com/app.git", directory=".")
        assert checkout_directory(repo, "/src") == "/src"

    def test_derived_from_location(self):
        assert checkout_directory(Repository(name="a", location="https://example.com/org/app.git"), "/src") == "/src/app"
        assert checkout_directory(Repository(name="a", location="git@example.com:tool"), "/src") == "/src/tool"


class TestCloneRepository:
    def test_clone_only_without_ref(self, engine, console):
        repo = Repository(name="app", location="https://example.com/app.git", directory="app")
        clone_repository(engine, repo, Settings(), console=console, environ={})

        (container,) = engine.containers.values()
        config = container["config"]
        assert config["Image"] == GIT_IMAGE
        assert config["Cmd"] == ["clone", "https://example.com/app.git", "app"]
        assert any(e.startswith("GIT_SSH_COMMAND=ssh -o UserKnownHostsFile=/dev/null") for e in config["Env"])
        assert engine.running == []

    def test_ref_fetches_and_checks_out(self, engine, console):
        repo = Repository(name="app", location="https://example.com/app.git", directory="app", tag="v2.0")
        clone_repository(engine, repo, Settings(), console=console, environ={})

        configs = [c["config"] for c in engine.containers.values()]
        assert [c["Cmd"] for c in configs] == [
            ["clone", "https://example.com/app.git", "app"],
            ["fetch", "--all"],
            ["checkout", "v2.0"],
        ]
        assert configs[1]["WorkingDir"] == "/src/app"
        assert configs[2]["WorkingDir"] == "/src/app"

    def test_ssh_agent_socket_forwarded(self, engine, console):
        repo = Repository(name="app", location="git@example.com:org/app.git")
        clone_repository(engine, repo, Settings(), console=console, environ={"SSH_AUTH_SOCK": "/tmp/agent.sock"})

        (container,) = engine.containers.values()
        config = container["config"]
        assert "SSH_AUTH_SOCK=/tmp/agent.sock" in config["Env"]
        assert {"Type": "bind", "Source": "/tmp/agent.sock", "Target": "/tmp/agent.sock"} in config["HostConfig"]["Mounts"]

    def test_failure_names_repository(self, engine, console):
        engine.exit_codes[GIT_IMAGE] = 128
        repo = Repository(name="app", location="https://example.com/app.git")
        with pytest.raises(StageError) as exc:
            clone_repository(engine, repo, Settings(), console=console, environ={})
        assert "Failed to clone repository <app>" in str(exc.value)

    def test_pull_failure(self, engine, console):
        engine.fail["pull"] = EngineError("denied")
        repo = Repository(name="app", location="https://example.com/app.git")
        with pytest.raises(StageError) as exc:
            clone_repository(engine, repo, Settings(), console=console, environ={})
        assert exc.value.stage == "pull"
