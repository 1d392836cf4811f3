# container.py
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional

from .archive import extract_files, inject_files
from .engine import EngineError
from .errors import ExitStatusError, StageError, TransferError
from .model import FileSpec
from .stream import OutputPump, demultiplex
from .ui.console import Console

DOCKER_SOCKET = "/var/run/docker.sock"

# how long to wait for the output pump once the stream should be closed
PUMP_JOIN_SECONDS = 10.0

TIMED_OUT = "Request timed out"


@dataclass(frozen=True)
class Mount:
    source: str
    target: str
    type: str = "bind"

    def to_api(self) -> dict:
        return {"Type": self.type, "Source": self.source, "Target": self.target}


@dataclass
class ContainerSpec:
    """Everything needed to run one disposable container. Never persisted."""
    image: str
    shell: List[str]
    commands: List[str]
    working_directory: str
    volume: str
    user: str = ""
    environment: List[str] = field(default_factory=list)
    network: str = ""
    mounts: List[Mount] = field(default_factory=list)
    override_entrypoint: bool = False
    sink: Optional[BinaryIO] = None
    files: List[FileSpec] = field(default_factory=list)
    # process directory when it differs from the volume mount point
    cwd: str = ""


def container_config(spec: ContainerSpec) -> dict:
    """Create-request body: stdin held open for the commands, volume at the working directory."""
    config: dict = {
        "Image": spec.image,
        "AttachStdin": True,
        "OpenStdin": True,
        "StdinOnce": True,
        "WorkingDir": spec.cwd or spec.working_directory,
        "Env": list(spec.environment),
    }
    if spec.override_entrypoint:
        config["Entrypoint"] = list(spec.shell)
    else:
        config["Cmd"] = list(spec.shell)
    if spec.user:
        config["User"] = spec.user

    mounts = [Mount(source=spec.volume, target=spec.working_directory, type="volume")]
    mounts.extend(spec.mounts)
    config["HostConfig"] = {"Mounts": [m.to_api() for m in mounts]}

    endpoints = {spec.network: {}} if spec.network else {}
    config["NetworkingConfig"] = {"EndpointsConfig": endpoints}
    return config


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def _timed_out() -> StageError:
    return StageError(stage="wait", message=TIMED_OUT)


def check_deadline(deadline: Optional[float]) -> None:
    """Raise the timeout error once the run deadline has passed."""
    if deadline is not None and time.monotonic() >= deadline:
        raise _timed_out()


def _bounded(call, deadline: Optional[float], name: str):
    """
    Run `call` on a worker thread and give up when the deadline passes.
    The worker is abandoned on timeout; blocking engine calls return once
    the container they wait on is removed.
    """
    check_deadline(deadline)
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"podline-{name}")
    try:
        future = pool.submit(call)
        try:
            return future.result(timeout=_remaining(deadline))
        except FutureTimeout as e:
            raise _timed_out() from e
    finally:
        pool.shutdown(wait=False)


def pull_image(engine, image: str, console: Console, deadline: Optional[float] = None) -> None:
    """Pull and fully drain the progress stream before the deadline."""
    console.print_debug(f"pulling image <{image}>")

    def drain():
        for _message in engine.pull_image(image):
            pass

    try:
        _bounded(drain, deadline, "pull")
    except EngineError as e:
        raise StageError(stage="pull", message=f"Failed to pull image <{image}>") from e


def _wait(engine, container_id: str, deadline: Optional[float]) -> int:
    try:
        return _bounded(lambda: engine.wait_container(container_id), deadline, "wait")
    except EngineError as e:
        raise StageError(stage="wait", message="Failed to wait for container") from e


def _stalled(error: Optional[BaseException]) -> bool:
    """True when the output stream may still be open: a broken wait or an interrupt."""
    if error is None:
        return False
    return not isinstance(error, StageError) or error.stage == "wait"


def run_container(
    engine,
    spec: ContainerSpec,
    *,
    console: Console,
    deadline: Optional[float] = None,
) -> int:
    """
    Run one container to completion and remove it.

    Stages: pull, create, inject, attach, start, send, wait, extract, remove.
    The first failing stage is what gets raised; a failing removal after an
    earlier failure is only logged. Removal also runs when the run is
    interrupted.

    Returns the exit status (always 0; non-zero raises ExitStatusError).
    """
    pull_image(engine, spec.image, console, deadline)

    check_deadline(deadline)
    try:
        container_id = engine.create_container(container_config(spec))
    except EngineError as e:
        raise StageError(stage="create", message=f"Failed to create container for image <{spec.image}>") from e
    short = container_id[:12]
    console.print_debug(f"created container {short} from <{spec.image}>")

    error: Optional[BaseException] = None
    pump: Optional[OutputPump] = None
    stdin = None
    status = 0

    try:
        if spec.files:
            check_deadline(deadline)
            try:
                inject_files(engine, container_id, spec.files, spec.working_directory)
            except TransferError as e:
                raise StageError(stage="inject", message="Failed to inject files") from e

        try:
            stdin = engine.attach_stdin(container_id)
        except EngineError as e:
            raise StageError(stage="attach", message="Failed to attach to container") from e

        check_deadline(deadline)
        try:
            engine.start_container(container_id)
        except EngineError as e:
            raise StageError(stage="start", message="Failed to start container") from e

        try:
            stdin.write("\n".join(spec.commands).encode("utf-8"))
            stdin.close_write()
        except EngineError as e:
            raise StageError(stage="send", message="Failed to send commands to container") from e

        try:
            output = engine.container_logs(container_id, follow=True)
        except EngineError as e:
            raise StageError(stage="logs", message="Failed to connect to container output") from e
        pump = OutputPump(output, spec.sink, name=short).start()

        status = _wait(engine, container_id, deadline)
        if status != 0:
            raise ExitStatusError(
                stage="exit",
                message=f"Return code not zero for image <{spec.image}>",
                exit_code=status,
            )

        if spec.files:
            check_deadline(deadline)
            try:
                extract_files(engine, container_id, spec.files, spec.working_directory)
            except TransferError as e:
                raise StageError(stage="extract", message="Failed to extract files") from e

    except BaseException as e:
        # removed below, then raised again
        error = e

    finally:
        if pump is not None:
            if _stalled(error):
                pump.cancel()
            if not pump.join(PUMP_JOIN_SECONDS):
                console.print_warning(f"output of container {short} still streaming, detaching")
            elif pump.error is not None:
                console.print_warning(f"output of container {short} interrupted: {pump.error}")
            elif pump.pending:
                console.print_warning(f"output of container {short} ended inside a frame, {pump.pending} bytes dropped")
            else:
                console.print_debug(f"{pump.frames} output frames from container {short}")
        if stdin is not None:
            stdin.close()

    try:
        engine.remove_container(container_id, force=True)
    except EngineError as e:
        removal = StageError(stage="remove", message=f"Failed to remove container for image <{spec.image}>")
        removal.__cause__ = e
        if error is None:
            error = removal
        else:
            console.print_warning(str(removal))

    if error is not None:
        raise error
    return status



# ----------------------------------------------------------------------
# Background containers (services)
# ----------------------------------------------------------------------

def start_background_container(
    engine,
    image: str,
    *,
    name: str,
    environment: List[str],
    network: str,
    privileged: bool,
    console: Console,
    deadline: Optional[float] = None,
) -> str:
    """Create and start a long-running container without attaching to it."""
    pull_image(engine, image, console, deadline)

    host_config: dict = {}
    if privileged:
        console.print_warning(f"Running privileged container <{name}>")
        host_config["Privileged"] = True

    config = {
        "Image": image,
        "Env": list(environment),
        "HostConfig": host_config,
        "NetworkingConfig": {"EndpointsConfig": {network: {}} if network else {}},
    }
    check_deadline(deadline)
    try:
        container_id = engine.create_container(config, name=name)
    except EngineError as e:
        raise StageError(stage="create", message=f"Failed to create container for image <{image}>") from e

    try:
        engine.start_container(container_id)
    except EngineError as e:
        try:
            engine.remove_container(container_id, force=True)
        except EngineError as cleanup:
            console.print_warning(f"Failed to remove container <{container_id[:12]}>: {cleanup}")
        raise StageError(stage="start", message=f"Failed to start container <{name}>") from e

    console.print_info(container_id)
    return container_id


def stop_background_container(engine, container_id: str, sink: Optional[BinaryIO], console: Console) -> None:
    """
    Stop, drain logs into `sink` (None skips them), remove.
    Removal is attempted even when stopping or log draining failed.
    """
    short = container_id[:12]
    error: Optional[StageError] = None
    stopped = False

    try:
        engine.stop_container(container_id)
        stopped = True
    except EngineError as e:
        error = StageError(stage="stop", message=f"Failed to stop container <{short}>")
        error.__cause__ = e

    if stopped and sink is not None:
        try:
            demultiplex(engine.container_logs(container_id, follow=False), sink)
        except EngineError as e:
            error = StageError(stage="logs", message=f"Failed to read logs of container <{short}>")
            error.__cause__ = e

    try:
        engine.remove_container(container_id, force=not stopped)
    except EngineError as e:
        removal = StageError(stage="remove", message=f"Failed to remove container <{short}>")
        removal.__cause__ = e
        if error is None:
            error = removal
        else:
            console.print_warning(str(removal))

    if error is not None:
        raise error
