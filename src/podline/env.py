# env.py
from __future__ import annotations

import os
from typing import Dict, Iterable, List, Mapping, Union

from .errors import ResolutionError

EnvSource = Union[Mapping[str, str], Iterable[str]]


def entry_name(entry: str) -> str:
    """`NAME=value` -> `NAME`, bare `NAME` -> `NAME`."""
    return entry.split("=", 1)[0]


def is_qualified(entry: str) -> bool:
    return "=" in entry


def to_mapping(entries: Iterable[str]) -> Dict[str, str]:
    """Qualified entries as a dict. Bare names are skipped."""
    out: Dict[str, str] = {}
    for e in entries:
        if is_qualified(e):
            name, value = e.split("=", 1)
            out[name] = value
    return out


def _as_mapping(source: EnvSource) -> Mapping[str, str]:
    if isinstance(source, Mapping):
        return source
    return to_mapping(source)


def process_environment() -> Dict[str, str]:
    return dict(os.environ)


def expand(entries: Iterable[str], *sources: EnvSource, scope: str = "global environment") -> List[str]:
    """
    Replace every bare `NAME` with `NAME=value` taken from the first source
    that defines it. Qualified entries pass through unchanged.

    Raises ResolutionError on the first name no source knows about.
    """
    lookups = [_as_mapping(s) for s in sources]
    out: List[str] = []
    for entry in entries:
        if is_qualified(entry):
            out.append(entry)
            continue
        for lookup in lookups:
            if entry in lookup:
                out.append(f"{entry}={lookup[entry]}")
                break
        else:
            raise ResolutionError(name=entry, scope=scope)
    return out


def merge(global_entries: Iterable[str], local_entries: Iterable[str]) -> List[str]:
    """
    Merge a wider scope into a narrower one.
    Local entries win on name collision; global entries fill the gaps.
    Order: local entries first, then the remaining global ones.
    """
    local = list(local_entries)
    seen = {entry_name(e) for e in local}
    merged = list(local)
    for e in global_entries:
        name = entry_name(e)
        if name not in seen:
            seen.add(name)
            merged.append(e)
    return merged
