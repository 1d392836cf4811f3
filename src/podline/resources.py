# resources.py
from __future__ import annotations

from .engine import EngineError
from .errors import StageError
from .model import Settings
from .ui.console import Console


def remove_volume(engine, name: str) -> None:
    """Remove the volume called `name` if it exists."""
    try:
        for volume in engine.list_volumes():
            if volume == name:
                engine.remove_volume(volume)
    except EngineError as e:
        raise StageError(stage="volume", message=f"Failed to remove volume <{name}>") from e


def create_volume(engine, name: str, driver: str) -> None:
    try:
        engine.create_volume(name, driver)
    except EngineError as e:
        raise StageError(stage="volume", message=f"Failed to create volume <{name}>") from e


def remove_network(engine, name: str) -> None:
    """Remove the network called `name` if it exists."""
    try:
        for network in engine.list_networks():
            if network == name:
                engine.remove_network(network)
    except EngineError as e:
        raise StageError(stage="network", message=f"Failed to remove network <{name}>") from e


def create_network(engine, name: str, driver: str) -> str:
    try:
        return engine.create_network(name, driver)
    except EngineError as e:
        raise StageError(stage="network", message=f"Failed to create network <{name}>") from e


class RunResources:
    """
    The shared volume and network of one run.

      remove_*: delete a pre-existing resource of the same name first
      reuse_*:  use an existing resource, never create or delete it
      retain_*: keep the resource after the run
    """

    def __init__(self, engine, settings: Settings, console: Console):
        self.engine = engine
        self.settings = settings
        self.console = console
        # set once this run has created the resource; only those get released
        self.volume_created = False
        self.network_created = False

    def acquire(self) -> None:
        s = self.settings

        if s.remove_volume:
            self.console.print_stage("Remove volume")
            remove_volume(self.engine, s.volume_name)
            self.console.print_done()

        if s.remove_network:
            self.console.print_stage("Remove network")
            remove_network(self.engine, s.network_name)
            self.console.print_done()

        if not s.reuse_volume:
            self.console.print_stage("Create volume")
            create_volume(self.engine, s.volume_name, s.volume_driver)
            self.volume_created = True
            self.console.print_info(s.volume_name)

        if not s.reuse_network:
            self.console.print_stage("Create network")
            network_id = create_network(self.engine, s.network_name, s.network_driver)
            self.network_created = True
            self.console.print_info(network_id)

    def release(self) -> None:
        """
        Remove the network then the volume, if this run created them and they
        are not retained. Both are attempted; the first failure is raised.
        """
        s = self.settings
        error = None

        if self.network_created and not s.retain_network:
            self.console.print_stage("Remove network")
            try:
                remove_network(self.engine, s.network_name)
                self.console.print_done()
            except StageError as e:
                error = e

        if self.volume_created and not s.retain_volume:
            self.console.print_stage("Remove volume")
            try:
                remove_volume(self.engine, s.volume_name)
                self.console.print_done()
            except StageError as e:
                if error is None:
                    error = e
                else:
                    self.console.print_warning(str(e))

        if error is not None:
            raise error
