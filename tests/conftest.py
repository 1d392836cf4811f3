"""Shared test fixtures and helpers."""

from __future__ import annotations

import io
import struct
import threading
from typing import Dict, List, Optional

import pytest

from podline.engine import MODE_DIR, MODE_SYMLINK, EngineError, PathStat
from podline.model import Pipeline, Settings
from podline.ui.console import Console


def frame(payload: bytes, stream: int = 1) -> bytes:
    """One multiplexed output frame."""
    return bytes([stream, 0, 0, 0]) + struct.pack(">I", len(payload)) + payload


def dir_stat(name: str = "src") -> PathStat:
    return PathStat(name=name, size=4096, mode=MODE_DIR | 0o755)


def file_stat(name: str, size: int = 0) -> PathStat:
    return PathStat(name=name, size=size, mode=0o644)


def link_stat(name: str, target: str) -> PathStat:
    return PathStat(name=name, size=len(target), mode=MODE_SYMLINK | 0o777, link_target=target)


def make_pipeline(**kwargs) -> Pipeline:
    """Build a Pipeline for tests; `settings` may be given as a dict."""
    settings = kwargs.pop("settings", {})
    if isinstance(settings, dict):
        settings = Settings(**settings)
    return Pipeline(settings=settings, **kwargs)


class FakeStream:
    """Stands in for ByteStream: iterable chunks plus close()."""

    def __init__(self, chunks: List[bytes]):
        self.chunks = list(chunks)
        self.closed = False

    def __iter__(self):
        for chunk in self.chunks:
            if self.closed:
                return
            yield chunk

    def close(self) -> None:
        self.closed = True


class FakeStdin:
    def __init__(self):
        self.data = b""
        self.write_closed = False
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    def close_write(self) -> None:
        self.write_closed = True

    def close(self) -> None:
        self.closed = True


class FakeEngine:
    """
    In-memory engine. Containers never run; `exit_codes` and `logs` are
    keyed by image. Put an EngineError into `fail[operation]` to make that
    operation raise.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.containers: Dict[str, dict] = {}
        self.removed: List[str] = []
        self.volumes: set = set()
        self.networks: set = set()
        self.exit_codes: Dict[str, int] = {}
        self.logs: Dict[str, List[bytes]] = {}
        self.fail: Dict[str, EngineError] = {}
        self.fail_images: Dict[str, Dict[str, EngineError]] = {}
        self.stats: Dict[str, PathStat] = {}
        self.archives: Dict[str, bytes] = {}
        self.puts: List[tuple] = []
        self.block_wait = False
        self.closed = False
        self._count = 0
        self._released: Dict[str, threading.Event] = {}

    def _check(self, operation: str, *args, image: Optional[str] = None) -> None:
        self.calls.append((operation,) + args)
        if operation in self.fail:
            raise self.fail[operation]
        if image is not None and operation in self.fail_images.get(image, {}):
            raise self.fail_images[image][operation]

    def _image(self, container_id: str) -> str:
        return self.containers[container_id]["config"]["Image"]

    # ---- images / containers ----

    def pull_image(self, image: str):
        self._check("pull", image, image=image)
        yield {"status": f"Pulling {image}"}

    def create_container(self, config: dict, name: Optional[str] = None) -> str:
        self._check("create", config["Image"], image=config["Image"])
        self._count += 1
        container_id = f"{self._count:064x}"
        self.containers[container_id] = {"config": config, "name": name, "started": False, "stdin": None}
        self._released[container_id] = threading.Event()
        return container_id

    def start_container(self, container_id: str) -> None:
        self._check("start", container_id, image=self._image(container_id))
        self.containers[container_id]["started"] = True

    def attach_stdin(self, container_id: str) -> FakeStdin:
        self._check("attach", container_id, image=self._image(container_id))
        stdin = FakeStdin()
        self.containers[container_id]["stdin"] = stdin
        return stdin

    def container_logs(self, container_id: str, *, follow: bool = False) -> FakeStream:
        self._check("logs", container_id, image=self._image(container_id))
        return FakeStream(self.logs.get(self._image(container_id), []))

    def wait_container(self, container_id: str, condition: str = "not-running") -> int:
        self._check("wait", container_id, image=self._image(container_id))
        if self.block_wait:
            # returns once the container is removed
            self._released[container_id].wait(5)
        return self.exit_codes.get(self._image(container_id), 0)

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        self._check("stop", container_id, image=self._image(container_id))
        self.containers[container_id]["started"] = False

    def remove_container(self, container_id: str, *, force: bool = False) -> None:
        self._check("remove", container_id, image=self._image(container_id))
        self.removed.append(container_id)
        self._released[container_id].set()

    # ---- filesystem ----

    def stat_path(self, container_id: str, path: str) -> PathStat:
        self._check("stat", path)
        if path not in self.stats:
            raise EngineError(f"No such container:path: {path}", status_code=404)
        return self.stats[path]

    def put_archive(self, container_id: str, path: str, data: bytes) -> None:
        self._check("put", path)
        self.puts.append((container_id, path, data))

    def get_archive(self, container_id: str, path: str):
        self._check("get", path)
        if path not in self.archives:
            raise EngineError(f"No such container:path: {path}", status_code=404)
        return FakeStream([self.archives[path]]), self.stats[path]

    # ---- volumes / networks ----

    def list_volumes(self) -> List[str]:
        self._check("list_volumes")
        return sorted(self.volumes)

    def create_volume(self, name: str, driver: str) -> None:
        self._check("create_volume", name)
        self.volumes.add(name)

    def remove_volume(self, name: str) -> None:
        self._check("remove_volume", name)
        self.volumes.discard(name)

    def list_networks(self) -> List[str]:
        self._check("list_networks")
        return sorted(self.networks)

    def create_network(self, name: str, driver: str) -> str:
        self._check("create_network", name)
        self.networks.add(name)
        return f"net-{name}"

    def remove_network(self, name: str) -> None:
        self._check("remove_network", name)
        self.networks.discard(name)

    def close(self) -> None:
        self.closed = True

    # ---- inspection ----

    @property
    def running(self) -> List[str]:
        """Containers created and not yet removed."""
        return [c for c in self.containers if c not in self.removed]

    def created_images(self) -> List[str]:
        return [c["config"]["Image"] for c in self.containers.values()]

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)


class ConsoleCapture:
    """Console wired to in-memory streams."""

    def __init__(self, level: str = "NOTICE"):
        self.out = io.StringIO()
        self.err = io.StringIO()
        self.output = io.BytesIO()
        self.console = Console(level=level, stream=self.out, err_stream=self.err, output=self.output)

    @property
    def text(self) -> str:
        return self.out.getvalue()

    @property
    def errors(self) -> str:
        return self.err.getvalue()

    @property
    def container_output(self) -> bytes:
        return self.output.getvalue()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def capture() -> ConsoleCapture:
    return ConsoleCapture()


@pytest.fixture
def console(capture: ConsoleCapture) -> Console:
    return capture.console
