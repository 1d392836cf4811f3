# src/podline/dsl.py
from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .model import FileSpec, Pipeline, Repository, Service, Settings, Step

Part = Union[Step, Service, Repository, FileSpec]


def _env_list(env: Optional[Union[Dict[str, Any], Iterable[str]]]) -> List[str]:
    """`{"A": 1}` -> ["A=1"]; lists (bare names allowed) pass through."""
    if env is None:
        return []
    if isinstance(env, dict):
        return [f"{k}={v}" for k, v in env.items()]
    return list(env)


# ---------------------------------------------------------------------
# Part helpers
# ---------------------------------------------------------------------

def step(
    name: str,
    image: str,
    *commands: str,
    shell: Optional[List[str]] = None,
    user: str = "",
    env: Optional[Union[Dict[str, Any], Iterable[str]]] = None,
    override_entrypoint: bool = False,
    mount_docker_sock: bool = False,
    forward_ssh_agent: bool = False,
) -> Step:
    """step("test", "python:3.12", "pip install .", "pytest")"""
    if not commands:
        raise ValueError(f"step({name!r}) must have at least one command")
    return Step(
        name=name,
        image=image,
        commands=list(commands),
        shell=list(shell or []),
        user=user,
        environment=_env_list(env),
        override_entrypoint=override_entrypoint,
        mount_docker_sock=mount_docker_sock,
        forward_ssh_agent=forward_ssh_agent,
    )


def service(
    name: str,
    image: str,
    *,
    env: Optional[Union[Dict[str, Any], Iterable[str]]] = None,
    suppress_log: bool = False,
    privileged: bool = False,
) -> Service:
    return Service(
        name=name,
        image=image,
        environment=_env_list(env),
        suppress_log=suppress_log,
        privileged=privileged,
    )


def repo(
    name: str,
    location: str,
    *,
    directory: str = "",
    shallow: bool = False,
    branch: str = "",
    tag: str = "",
    commit: str = "",
) -> Repository:
    return Repository(
        name=name,
        location=location,
        directory=directory,
        shallow=shallow,
        branch=branch,
        tag=tag,
        commit=commit,
    )


def inject(pattern: str, content: Optional[str] = None) -> FileSpec:
    """Copy host paths matching `pattern` into the volume, or create `pattern` with `content`."""
    return FileSpec(inject=pattern, content=content or "")


def extract(path: str, destination: str = ".") -> FileSpec:
    return FileSpec(extract=path, destination=destination)


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class PipelineBuilder:
    def __init__(self, **settings: Any):
        self._settings: Dict[str, Any] = dict(settings)
        self._repos: List[Repository] = []
        self._files: List[FileSpec] = []
        self._services: List[Service] = []
        self._env: List[str] = []
        self._steps: List[Step] = []

    def clone(self, name: str, location: str, **kwargs: Any):
        self._repos.append(repo(name, location, **kwargs))
        return self

    def inject(self, pattern: str, content: Optional[str] = None):
        self._files.append(inject(pattern, content))
        return self

    def extract(self, path: str, destination: str = "."):
        self._files.append(extract(path, destination))
        return self

    def with_service(self, name: str, image: str, **kwargs: Any):
        self._services.append(service(name, image, **kwargs))
        return self

    def with_env(self, *names: str, **env: Any):
        # bare names are resolved from the caller's environment at run time
        self._env.extend(names)
        self._env.extend(f"{k}={v}" for k, v in env.items())
        return self

    def define_step(self, name: str, image: str, *commands: str, **kwargs: Any):
        self._steps.append(step(name, image, *commands, **kwargs))
        return self

    def build(self) -> Pipeline:
        return Pipeline(
            settings=Settings(**self._settings),
            repos=self._repos,
            files=self._files,
            services=self._services,
            environment=self._env,
            steps=self._steps,
        )


def build(**settings: Any) -> PipelineBuilder:
    """Convenience: build(volume_name="ci").define_step(...).build()"""
    return PipelineBuilder(**settings)


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Minimal matrix expander.

    Example:
        matrix("py", ["3.11", "3.12"]).steps(
            lambda v: step(f"test-py{v}", f"python:{v}", "pytest")
        )
    """
    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def steps(self, builder: Callable[[Any], Step]) -> List[Step]:
        return [builder(v) for v in self.values]


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


# ---------------------------------------------------------------------
# Single-call helper
# ---------------------------------------------------------------------

def define(
    *parts: Union[Part, List[Part]],
    settings: Optional[Union[Settings, Dict[str, Any]]] = None,
    env: Optional[Union[Dict[str, Any], Iterable[str]]] = None,
) -> Pipeline:
    """
    Assemble a Pipeline from parts in any order; each kind keeps its own order.

        from podline import define, repo, step

        def pipeline():
            return define(
                repo("app", "https://github.com/org/app"),
                step("test", "python:3.12", "cd app", "pytest"),
            )

    Named `define` so a workflow file can still call its own function pipeline().
    """
    flat: List[Part] = []
    for p in parts:
        if isinstance(p, list):
            flat.extend(p)
        else:
            flat.append(p)

    if isinstance(settings, dict):
        settings = Settings(**settings)

    return Pipeline(
        settings=settings or Settings(),
        repos=[p for p in flat if isinstance(p, Repository)],
        files=[p for p in flat if isinstance(p, FileSpec)],
        services=[p for p in flat if isinstance(p, Service)],
        environment=_env_list(env),
        steps=[p for p in flat if isinstance(p, Step)],
    )
