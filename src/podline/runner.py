# runner.py
from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .container import (
    DOCKER_SOCKET,
    ContainerSpec,
    Mount,
    run_container,
    start_background_container,
    stop_background_container,
)
from .engine import DockerEngine
from .env import expand, merge, process_environment, to_mapping
from .errors import ConfigError, ExitStatusError, PipelineError, StageError
from .model import Pipeline, Settings, Step
from .repos import clone_repository, ssh_agent
from .resources import RunResources
from .ui.console import Console

UTILITY_IMAGE = "alpine"
UTILITY_SHELL = ["sh"]


# ----------------------------------------------------------------------
# Pre-flight
# ----------------------------------------------------------------------

def _duplicates(names: List[str]) -> List[str]:
    return sorted(name for name, count in Counter(names).items() if count > 1)


def validate_pipeline(pipeline: Pipeline, environ: Optional[Mapping[str, str]] = None) -> None:
    """
    Checks that need no engine. Raises ConfigError on the first problem,
    before anything has been created.
    """
    environ = process_environment() if environ is None else environ
    s = pipeline.settings

    dup = _duplicates([step.name for step in pipeline.steps])
    if dup:
        raise ConfigError(f"Step names must be unique (duplicated: {', '.join(dup)})")
    dup = _duplicates([service.name for service in pipeline.services])
    if dup:
        raise ConfigError(f"Service names must be unique (duplicated: {', '.join(dup)})")
    dup = _duplicates([repo.name for repo in pipeline.repos])
    if dup:
        raise ConfigError(f"Repository names must be unique (duplicated: {', '.join(dup)})")

    if len(pipeline.repos) > 1:
        for repo in pipeline.repos:
            if repo.directory in ("", "."):
                raise ConfigError(
                    f"Repository <{repo.name}> needs a directory because more than one repository is declared"
                )

    if s.reuse_volume and s.remove_volume:
        raise ConfigError("Volume cannot be both reused and removed")
    if s.reuse_network and s.remove_network:
        raise ConfigError("Network cannot be both reused and removed")

    for service in pipeline.services:
        if service.privileged and not s.allow_privileged:
            raise ConfigError(f"Service <{service.name}> requests privileged mode but privileged containers are not allowed")

    for step in pipeline.steps:
        if step.mount_docker_sock and not s.allow_docker_sock:
            raise ConfigError(f"Step <{step.name}> requests the Docker socket but mounting it is not allowed")
        if step.forward_ssh_agent:
            if not s.allow_ssh_agent:
                raise ConfigError(f"Step <{step.name}> requests the SSH agent but forwarding it is not allowed")
            if not environ.get("SSH_AUTH_SOCK"):
                raise ConfigError(f"Cannot forward SSH agent to step <{step.name}> because SSH_AUTH_SOCK is not set")


@dataclass
class PreparedEnvironment:
    """Fully qualified `NAME=value` lists, one per scope. Built once per run."""
    global_env: List[str] = field(default_factory=list)
    services: Dict[str, List[str]] = field(default_factory=dict)
    steps: Dict[str, List[str]] = field(default_factory=dict)


def prepare_environment(pipeline: Pipeline, environ: Optional[Mapping[str, str]] = None) -> PreparedEnvironment:
    """
    Resolve bare names in every scope:
      global:  from the process environment
      service: from the global environment, then the process environment
      step:    step entries merged over the global ones, then the process environment

    Raises ResolutionError before any container work.
    """
    environ = process_environment() if environ is None else environ

    prepared = PreparedEnvironment()
    prepared.global_env = expand(pipeline.environment, environ, scope="global environment")
    global_map = to_mapping(prepared.global_env)

    for service in pipeline.services:
        prepared.services[service.name] = expand(
            service.environment, global_map, environ, scope=f"service <{service.name}>"
        )
    for step in pipeline.steps:
        prepared.steps[step.name] = expand(
            merge(prepared.global_env, step.environment), environ, scope=f"build step <{step.name}>"
        )
    return prepared


# ----------------------------------------------------------------------
# Orchestration
# ----------------------------------------------------------------------

def _scoped(error: PipelineError, scope: str) -> PipelineError:
    if isinstance(error, StageError) and error.scope is None:
        error.scope = scope
    return error


class PipelineRunner:
    """
    Runs one pipeline definition end to end:

      volume/network -> clone -> services -> inject -> steps -> extract
                     -> stop services -> remove network/volume

    Execution stops at the first failure; teardown always runs. The first
    error is the one raised, later teardown errors are only printed.
    """

    def __init__(self, engine, console: Console, environ: Optional[Mapping[str, str]] = None):
        self.engine = engine
        self.console = console
        self.environ = process_environment() if environ is None else dict(environ)
        self.services: Dict[str, str] = {}
        self.results: Dict[str, str] = {}
        self._deadline: Optional[float] = None

    # ---- stages ----

    def _clone(self, pipeline: Pipeline) -> None:
        if not pipeline.repos:
            return
        self.console.print_stage("Clone repositories")
        for repo in pipeline.repos:
            self.console.print_item(repo.name)
            try:
                clone_repository(
                    self.engine,
                    repo,
                    pipeline.settings,
                    console=self.console,
                    environ=self.environ,
                    deadline=self._deadline,
                )
            except PipelineError as e:
                raise _scoped(e, f"repository <{repo.name}>")
            self.console.print_done()

    def _start_services(self, pipeline: Pipeline, prepared: PreparedEnvironment) -> None:
        if not pipeline.services:
            return
        self.console.print_stage("Start services")
        for service in pipeline.services:
            self.console.print_item(service.name)
            try:
                self.services[service.name] = start_background_container(
                    self.engine,
                    service.image,
                    name=service.name,
                    environment=prepared.services[service.name],
                    network=pipeline.settings.network_name,
                    privileged=service.privileged,
                    console=self.console,
                    deadline=self._deadline,
                )
            except PipelineError as e:
                raise _scoped(e, f"service <{service.name}>")

    def _transfer(self, pipeline: Pipeline, files, title: str) -> None:
        """Run a utility container carrying `files`; injection or extraction happens around its run."""
        if not files:
            return
        self.console.print_stage(title)
        s = pipeline.settings
        spec = ContainerSpec(
            image=UTILITY_IMAGE,
            shell=list(UTILITY_SHELL),
            commands=[],
            working_directory=s.working_directory,
            volume=s.volume_name,
            sink=self.console.output,
            files=list(files),
        )
        try:
            run_container(self.engine, spec, console=self.console, deadline=self._deadline)
        except PipelineError as e:
            raise _scoped(e, "files")
        self.console.print_done()

    def _step_spec(self, step: Step, settings: Settings, environment: List[str]) -> ContainerSpec:
        mounts: List[Mount] = []
        if step.mount_docker_sock:
            self.console.print_warning(f"Mounting Docker socket in step <{step.name}>")
            mounts.append(Mount(source=DOCKER_SOCKET, target=DOCKER_SOCKET))
        if step.forward_ssh_agent:
            agent_env, agent_mounts = ssh_agent(self.environ)
            environment = merge(agent_env, environment)
            mounts.extend(agent_mounts)

        return ContainerSpec(
            image=step.image,
            shell=list(step.shell or settings.shell),
            commands=list(step.commands),
            working_directory=settings.working_directory,
            volume=settings.volume_name,
            user=step.user,
            environment=environment,
            network=settings.network_name,
            mounts=mounts,
            override_entrypoint=step.override_entrypoint,
            sink=self.console.output,
        )

    def _run_steps(self, pipeline: Pipeline, prepared: PreparedEnvironment) -> None:
        if not pipeline.steps:
            return
        self.console.print_stage("Run steps")
        for step in pipeline.steps:
            self.console.print_item(step.name)
            spec = self._step_spec(step, pipeline.settings, prepared.steps[step.name])
            try:
                run_container(self.engine, spec, console=self.console, deadline=self._deadline)
            except PipelineError as e:
                self.results[step.name] = "failed"
                raise _scoped(e, f"step <{step.name}>")
            self.results[step.name] = "ok"
            self.console.print_done()

    # ---- teardown ----

    def _stop_services(self, pipeline: Pipeline) -> Optional[PipelineError]:
        if not self.services:
            return None
        self.console.print_stage("Stop services")
        first: Optional[PipelineError] = None
        for name in reversed(list(self.services)):
            container_id = self.services.pop(name)
            self.console.print_item(name)
            service = pipeline.service(name)
            sink = None if service is not None and service.suppress_log else self.console.output
            try:
                stop_background_container(self.engine, container_id, sink, self.console)
                self.console.print_done()
            except PipelineError as e:
                e = _scoped(e, f"service <{name}>")
                if first is None:
                    first = e
                else:
                    self.console.print_warning(str(e))
        return first

    def _record(self, error: Optional[PipelineError], failed: Optional[PipelineError]) -> Optional[PipelineError]:
        """Keep the first error; anything after it is only printed."""
        if failed is None:
            return error
        if error is None:
            self.console.print_failure(getattr(failed, "scope", None) or "teardown", str(failed))
            return failed
        self.console.print_warning(str(failed))
        return error

    def _teardown(self, pipeline: Pipeline, resources: RunResources, error: Optional[PipelineError]) -> Optional[PipelineError]:
        error = self._record(error, self._stop_services(pipeline))
        try:
            resources.release()
        except PipelineError as e:
            error = self._record(error, e)
        return error

    # ---- entry point ----

    def run(self, pipeline: Pipeline, name: str = "pipeline") -> Dict[str, str]:
        """
        Execute `pipeline`. Returns per-step results on success and raises
        the first PipelineError otherwise; `services` is empty either way.
        """
        self.services = {}
        self.results = {step.name: "skipped" for step in pipeline.steps}

        try:
            validate_pipeline(pipeline, self.environ)
            prepared = prepare_environment(pipeline, self.environ)
        except PipelineError as e:
            self.console.print_failure("configuration", str(e))
            raise

        self.console.print_run_started(
            pipeline=name,
            steps=len(pipeline.steps),
            services=len(pipeline.services),
            repos=len(pipeline.repos),
        )
        self._deadline = time.monotonic() + pipeline.settings.timeout
        resources = RunResources(self.engine, pipeline.settings, self.console)

        error: Optional[PipelineError] = None
        try:
            try:
                resources.acquire()
                self._clone(pipeline)
                self._start_services(pipeline, prepared)
                self._transfer(pipeline, pipeline.injected_files, "Inject files")
                self._run_steps(pipeline, prepared)
                self._transfer(pipeline, pipeline.extracted_files, "Extract files")
            except PipelineError as e:
                error = e
                exit_code = e.exit_code if isinstance(e, ExitStatusError) else None
                self.console.print_failure(getattr(e, "scope", None) or "run", str(e), exit_code)
        finally:
            error = self._teardown(pipeline, resources, error)

        self.console.print_results(self.results)
        if error is not None:
            raise error
        return self.results


def run(
    pipeline: Pipeline,
    *,
    engine=None,
    console: Optional[Console] = None,
    environ: Optional[Mapping[str, str]] = None,
    name: str = "pipeline",
) -> Dict[str, str]:
    """Run a pipeline against `engine` (default: the Docker engine at DOCKER_HOST)."""
    console = console or Console()
    owned = engine is None
    if owned:
        engine = DockerEngine()
    try:
        return PipelineRunner(engine, console, environ=environ).run(pipeline, name=name)
    finally:
        if owned:
            engine.close()
