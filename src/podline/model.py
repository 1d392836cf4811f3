# model.py
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Definition(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Settings(_Definition):
    """Run-wide settings. Flags are usually merged in from the CLI."""
    volume_name: str = "myvolume"
    volume_driver: str = "local"
    working_directory: str = "/src"
    shell: List[str] = Field(default_factory=lambda: ["sh"])
    network_name: str = "mynetwork"
    network_driver: str = "bridge"
    timeout: int = Field(default=60 * 60, gt=0)  # seconds, whole run

    # resource lifecycle
    reuse_volume: bool = False
    remove_volume: bool = False
    retain_volume: bool = False
    reuse_network: bool = False
    remove_network: bool = False
    retain_network: bool = False

    # allowances
    allow_docker_sock: bool = False
    allow_privileged: bool = False
    allow_ssh_agent: bool = False


class Repository(_Definition):
    name: str = Field(min_length=1)
    location: str = Field(min_length=1)
    directory: str = ""
    shallow: bool = False
    branch: str = ""
    tag: str = ""
    commit: str = ""

    @property
    def ref(self) -> str:
        """Branch wins over tag, tag wins over commit."""
        return self.branch or self.tag or self.commit


class Service(_Definition):
    name: str = Field(min_length=1)
    image: str = Field(min_length=1)
    environment: List[str] = Field(default_factory=list)
    suppress_log: bool = False
    privileged: bool = False


class FileSpec(_Definition):
    """
    Either an inject entry (host glob, or a new file with inline `content`)
    or an extract entry (volume path copied back to `destination`).
    """
    inject: str = ""
    content: str = ""
    extract: str = ""
    destination: str = "."

    @model_validator(mode="after")
    def _one_direction(self) -> "FileSpec":
        if self.inject and self.extract:
            raise ValueError("a file entry cannot both inject and extract")
        if not self.inject and not self.extract:
            raise ValueError("a file entry needs either inject or extract")
        if self.content and not self.inject:
            raise ValueError("content is only allowed on inject entries")
        return self

    @property
    def is_inject(self) -> bool:
        return bool(self.inject)

    @property
    def is_extract(self) -> bool:
        return bool(self.extract)


class Step(_Definition):
    """A single build step, run in its own disposable container."""
    name: str = Field(min_length=1)
    image: str = Field(min_length=1)
    shell: List[str] = Field(default_factory=list)
    override_entrypoint: bool = False
    user: str = ""
    commands: List[str] = Field(min_length=1)
    environment: List[str] = Field(default_factory=list)
    mount_docker_sock: bool = False
    forward_ssh_agent: bool = False


class Pipeline(_Definition):
    """
    The full declarative description of a build run.

    Treated as read-only by the runner: resolved environments are kept
    alongside it, never written back into it.
    """
    settings: Settings = Field(default_factory=Settings)
    repos: List[Repository] = Field(default_factory=list)
    files: List[FileSpec] = Field(default_factory=list)
    services: List[Service] = Field(default_factory=list)
    environment: List[str] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)

    @property
    def injected_files(self) -> List[FileSpec]:
        return [f for f in self.files if f.is_inject]

    @property
    def extracted_files(self) -> List[FileSpec]:
        return [f for f in self.files if f.is_extract]

    def service(self, name: str) -> Optional[Service]:
        for s in self.services:
            if s.name == name:
                return s
        return None


def defaults() -> Pipeline:
    """Baseline definition: default settings and nothing to do."""
    return Pipeline(settings=Settings())
