"""Tests for the run's volume and network lifecycle."""

from __future__ import annotations

import pytest

from podline.engine import EngineError
from podline.errors import StageError
from podline.model import Settings
from podline.resources import RunResources


class TestAcquire:
    def test_creates_volume_and_network(self, engine, console):
        RunResources(engine, Settings(), console).acquire()
        assert engine.volumes == {"myvolume"}
        assert engine.networks == {"mynetwork"}

    def test_reuse_creates_nothing(self, engine, console):
        engine.volumes.add("myvolume")
        RunResources(engine, Settings(reuse_volume=True, reuse_network=True), console).acquire()
        assert engine.count("create_volume") == 0
        assert engine.count("create_network") == 0

    def test_remove_deletes_existing_first(self, engine, console):
        engine.volumes.update({"myvolume", "other"})
        RunResources(engine, Settings(remove_volume=True), console).acquire()
        names = [c[0] for c in engine.calls]
        assert names.index("remove_volume") < names.index("create_volume")
        assert engine.volumes == {"myvolume", "other"}

    def test_remove_of_absent_resource_is_fine(self, engine, console):
        RunResources(engine, Settings(remove_volume=True, remove_network=True), console).acquire()
        assert engine.count("remove_volume") == 0
        assert engine.count("remove_network") == 0

    def test_failure_is_a_stage_error(self, engine, console):
        engine.fail["create_network"] = EngineError("pool overlaps")
        resources = RunResources(engine, Settings(), console)
        with pytest.raises(StageError) as exc:
            resources.acquire()
        assert exc.value.stage == "network"
        assert resources.volume_created
        assert not resources.network_created


class TestRelease:
    def test_removes_what_was_created(self, engine, console):
        resources = RunResources(engine, Settings(), console)
        resources.acquire()
        resources.release()
        assert engine.volumes == set()
        assert engine.networks == set()

    def test_retain_keeps_resources(self, engine, console):
        resources = RunResources(engine, Settings(retain_volume=True, retain_network=True), console)
        resources.acquire()
        resources.release()
        assert engine.volumes == {"myvolume"}
        assert engine.networks == {"mynetwork"}

    def test_reused_resources_are_kept(self, engine, console):
        engine.volumes.add("myvolume")
        engine.networks.add("mynetwork")
        resources = RunResources(engine, Settings(reuse_volume=True, reuse_network=True), console)
        resources.acquire()
        resources.release()
        assert engine.volumes == {"myvolume"}
        assert engine.networks == {"mynetwork"}

    def test_volume_removed_even_if_network_removal_fails(self, engine, console):
        resources = RunResources(engine, Settings(), console)
        resources.acquire()
        engine.fail["remove_network"] = EngineError("active endpoints")
        with pytest.raises(StageError) as exc:
            resources.release()
        assert exc.value.stage == "network"
        assert engine.volumes == set()
