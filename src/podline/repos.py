# repos.py
from __future__ import annotations

import posixpath
from typing import List, Mapping, Optional

from .container import ContainerSpec, Mount, run_container
from .errors import StageError
from .model import Repository, Settings
from .ui.console import Console

GIT_IMAGE = "alpine/git"
GIT_SSH_COMMAND = "GIT_SSH_COMMAND=ssh -o UserKnownHostsFile=/dev/null -o StrictHostKeyChecking=no"


def clone_args(repo: Repository) -> List[str]:
    """git arguments for the initial clone. Shallow only applies without a ref."""
    args = ["clone"]
    if repo.shallow and not repo.ref:
        args += ["--depth", "1"]
    args.append(repo.location)
    if repo.directory:
        args.append(repo.directory)
    return args


def fetch_args() -> List[str]:
    return ["fetch", "--all"]


def checkout_args(repo: Repository) -> List[str]:
    return ["checkout", repo.ref]


def checkout_directory(repo: Repository, working_directory: str) -> str:
    """
    Where the clone ends up inside the volume: the explicit directory, or
    the name git derives from the location (`.../foo.git` -> `foo`).
    """
    directory = repo.directory
    if not directory:
        directory = repo.location.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        if directory.endswith(".git"):
            directory = directory[: -len(".git")]
    return posixpath.normpath(posixpath.join(working_directory, directory))


def ssh_agent(environ: Mapping[str, str]) -> tuple[List[str], List[Mount]]:
    """Environment entry and bind mount forwarding the caller's SSH agent, if any."""
    sock = environ.get("SSH_AUTH_SOCK")
    if not sock:
        return [], []
    return [f"SSH_AUTH_SOCK={sock}"], [Mount(source=sock, target=sock)]


def clone_repository(
    engine,
    repo: Repository,
    settings: Settings,
    *,
    console: Console,
    environ: Mapping[str, str],
    deadline: Optional[float] = None,
) -> None:
    """Clone `repo` into the run volume, then fetch and check out its ref if one is set."""
    if repo.shallow and repo.ref:
        console.print_warning(f"Ignoring shallow for repository <{repo.name}> because a ref was specified")

    agent_env, agent_mounts = ssh_agent(environ)

    def git(args: List[str], cwd: str, environment: List[str], what: str) -> None:
        spec = ContainerSpec(
            image=GIT_IMAGE,
            shell=args,
            commands=[],
            working_directory=settings.working_directory,
            cwd=cwd,
            volume=settings.volume_name,
            environment=environment,
            mounts=agent_mounts,
            sink=console.output,
        )
        console.print_debug(f"git {' '.join(args)}")
        try:
            run_container(engine, spec, console=console, deadline=deadline)
        except StageError as e:
            e.message = f"Failed to {what} repository <{repo.name}>: {e.message}"
            raise

    git(clone_args(repo), settings.working_directory, [GIT_SSH_COMMAND] + agent_env, "clone")

    if repo.ref:
        target = checkout_directory(repo, settings.working_directory)
        git(fetch_args(), target, [GIT_SSH_COMMAND] + agent_env, "fetch from")
        git(checkout_args(repo), target, [], "checkout in")
