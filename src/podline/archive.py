# archive.py
from __future__ import annotations

import glob
import io
import os
import posixpath
import stat as statmod
import tarfile
import time
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Tuple

from .engine import EngineError
from .errors import TransferError
from .model import FileSpec

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Files move between the host and a container as tar streams, with the
# same path semantics as a `cp` into / out of a container:
#
#   inject:  stat destination -> follow symlink -> re-stat
#            -> must be a dir (add under it) or a regular file (replace it)
#   extract: stat source -> follow symlink (remember the requested name)
#            -> fetch tar -> rename top-level entry -> untar on the host
#
# Container paths are always posix; host paths use os.path.
# ---------------------------------------------------------------------

MAX_SYMLINK_HOPS = 10
CREATED_FILE_MODE = 0o600

Renames = List[Tuple[str, str]]


@dataclass
class CopyInfo:
    path: str
    exists: bool = False
    is_dir: bool = False
    rebase_name: str = ""


# ---------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------

def _base(path: str, sep: str = "/") -> str:
    stripped = path.rstrip(sep)
    if not stripped:
        return sep if path else "."
    return stripped.rsplit(sep, 1)[-1]


def specifies_current_dir(path: str, sep: str = "/") -> bool:
    return _base(path, sep) == "."


def has_trailing_separator(path: str, sep: str = "/") -> bool:
    return path.endswith(sep)


def asserts_directory(path: str, sep: str = "/") -> bool:
    return has_trailing_separator(path, sep) or specifies_current_dir(path, sep)


def preserve_trailing_dot_or_separator(cleaned: str, original: str, sep: str = "/") -> str:
    """Put back the `/.` or `/` a normalisation stripped from `original`."""
    if not specifies_current_dir(cleaned, sep) and specifies_current_dir(original, sep):
        if not has_trailing_separator(cleaned, sep):
            cleaned += sep
        cleaned += "."
    if not has_trailing_separator(cleaned, sep) and has_trailing_separator(original, sep):
        cleaned += sep
    return cleaned


def split_path_dir_entry(path: str, pathmod=posixpath) -> Tuple[str, str]:
    """("/a/b/c/", -> "/a/b", "c"), ("/a/b/." -> "/a/b", ".")"""
    sep = pathmod.sep
    cleaned = pathmod.normpath(path)
    if specifies_current_dir(path, sep):
        cleaned += sep + "."
    return pathmod.dirname(cleaned) or ".", _base(cleaned, sep)


def resolve_link_target(path: str, link_target: str, pathmod=posixpath) -> str:
    """Relative link targets are relative to the link's parent directory."""
    if pathmod.isabs(link_target):
        return link_target
    parent, _ = split_path_dir_entry(path, pathmod)
    return pathmod.normpath(pathmod.join(parent, link_target))


def get_rebase_name(path: str, resolved: str, sep: str = "/") -> Tuple[str, str]:
    """
    Returns (resolved path, rebase name). The rebase name is the basename the
    caller asked for, set only when following the link changed it.
    """
    if specifies_current_dir(path, sep) and not specifies_current_dir(resolved, sep):
        resolved += sep + "."
    if has_trailing_separator(path, sep) and not has_trailing_separator(resolved, sep):
        resolved += sep

    rebase_name = ""
    if _base(path, sep) != _base(resolved, sep):
        rebase_name = _base(path, sep)
    return resolved, rebase_name


# ---------------------------------------------------------------------
# Host side
# ---------------------------------------------------------------------

def validate_output_path(path: str) -> None:
    """The destination must sit in an existing directory, be a dir or regular file, and be writable."""
    directory = os.path.dirname(os.path.normpath(path))
    if directory and directory != "." and not os.path.exists(directory):
        raise TransferError(f"invalid output path: directory <{directory}> does not exist")

    if os.path.exists(path):
        mode = os.stat(path).st_mode
        if not (statmod.S_ISDIR(mode) or statmod.S_ISREG(mode)):
            raise TransferError(f"invalid output path: <{path}> must be a directory or a regular file")
        target = path
    else:
        target = directory or "."

    if not os.access(target, os.W_OK):
        raise TransferError(f"invalid output path: <{target}> is not writable")


def copy_info_destination_path(path: str) -> CopyInfo:
    """Describe a host destination, following symlinks."""
    original = path
    try:
        st: Optional[os.stat_result] = os.lstat(path)
    except FileNotFoundError:
        st = None

    hops = 0
    while st is not None and statmod.S_ISLNK(st.st_mode):
        if hops > MAX_SYMLINK_HOPS:
            raise TransferError(f"too many symlinks in <{original}>")
        path = resolve_link_target(path, os.readlink(path), os.path)
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            st = None
        hops += 1

    if st is None:
        parent, _ = split_path_dir_entry(path, os.path)
        if not os.path.isdir(parent):
            raise TransferError(f"destination directory <{parent}> does not exist")
        return CopyInfo(path=path)

    return CopyInfo(path=path, exists=True, is_dir=statmod.S_ISDIR(st.st_mode))


def prepare_archive_copy(src: CopyInfo, dst: CopyInfo) -> Tuple[str, Optional[Tuple[str, str]]]:
    """
    Decide where an archive of `src` is unpacked on the host and how its
    top-level entry must be renamed. Returns (directory, rename or None).
    """
    _, src_base = split_path_dir_entry(src.path)
    dst_dir, dst_base = split_path_dir_entry(dst.path, os.path)

    if dst.exists and dst.is_dir:
        return dst.path, None
    if dst.exists and src.is_dir:
        raise TransferError(f"cannot copy a directory to the existing file <{dst.path}>")
    if not dst.exists and not src.is_dir and asserts_directory(dst.path, os.sep):
        raise TransferError(f"destination directory <{dst.path}> does not exist")

    if src.rebase_name:
        src_base = src.rebase_name
    return dst_dir, (src_base, dst_base)


# ---------------------------------------------------------------------
# Tar helpers
# ---------------------------------------------------------------------

class _ChunkReader:
    """File-like reader over an iterator of byte chunks, for tarfile stream mode."""

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._buffer = bytearray()
        self._eof = False

    def read(self, n: int = -1) -> bytes:
        while not self._eof and (n < 0 or len(self._buffer) < n):
            try:
                self._buffer.extend(next(self._chunks))
            except StopIteration:
                self._eof = True
        if n < 0:
            n = len(self._buffer)
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        return data


def _rebase(name: str, old: str, new: str) -> str:
    if name == old:
        return new
    if name.startswith(old + "/"):
        return new + name[len(old):]
    return name


def rebase_members(members: Iterable[tarfile.TarInfo], renames: Renames) -> Iterator[tarfile.TarInfo]:
    """Rename top-level entries (and hard link targets) in order."""
    for member in members:
        for old, new in renames:
            if old == new:
                continue
            member.name = _rebase(member.name, old, new)
            if member.islnk():
                member.linkname = _rebase(member.linkname, old, new)
        yield member


def tar_path(src: str, arcname: str) -> bytes:
    """Archive a host file or directory with `arcname` as its top-level entry."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        tar.add(src, arcname=arcname, recursive=True)
    return buf.getvalue()


def tar_content(name: str, content: str) -> bytes:
    """Single-entry archive holding `content` as a new file called `name`."""
    payload = content.encode("utf-8")
    info = tarfile.TarInfo(name=name)
    info.size = len(payload)
    info.mode = CREATED_FILE_MODE
    info.mtime = int(time.time())

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        tar.addfile(info, fileobj=io.BytesIO(payload))
    return buf.getvalue()


def untar(chunks: Iterable[bytes], dst_dir: str, renames: Optional[Renames] = None) -> None:
    """Unpack a streamed archive into `dst_dir`, renaming entries on the way."""
    with tarfile.open(fileobj=_ChunkReader(chunks), mode="r|*") as tar:
        tar.extractall(dst_dir, members=rebase_members(tar, renames or []), filter="tar")


# ---------------------------------------------------------------------
# Into the container
# ---------------------------------------------------------------------

def _stat(engine, container_id: str, path: str, source: str):
    try:
        return engine.stat_path(container_id, path)
    except EngineError as e:
        raise TransferError(f"Failed to stat path <{path}> (source <{source}>): {e}") from e


def _put(engine, container_id: str, directory: str, data: bytes, source: str) -> None:
    try:
        engine.put_archive(container_id, directory, data)
    except EngineError as e:
        raise TransferError(f"Failed to copy to container path <{directory}> (source <{source}>): {e}") from e


def inject_path(engine, container_id: str, src: str, destination: str) -> None:
    """Copy host path `src` into the container, keeping its relative directory under `destination`."""
    src_dir = os.path.dirname(src)
    dst = f"{destination}/{src_dir}" if src_dir else destination
    dst = preserve_trailing_dot_or_separator(posixpath.normpath(dst), dst)

    dst_stat = _stat(engine, container_id, dst, src)
    dst_path = dst
    if dst_stat.is_symlink:
        dst_path = resolve_link_target(dst, dst_stat.link_target)
        dst_stat = _stat(engine, container_id, dst_path, src)

    if not (dst_stat.is_dir or dst_stat.is_regular):
        raise TransferError(f"Destination <{dst}> must be a directory or regular file")

    resolved_src = os.path.realpath(src)
    if not os.path.exists(resolved_src):
        raise TransferError(f"Source <{src}> does not exist")

    if dst_stat.is_dir:
        target_dir, arcname = dst_path, _base(src, os.sep)
    else:
        if os.path.isdir(resolved_src):
            raise TransferError(f"cannot copy directory <{src}> to the existing file <{dst_path}>")
        target_dir, arcname = split_path_dir_entry(dst_path)

    try:
        data = tar_path(resolved_src, arcname)
    except (tarfile.TarError, OSError) as e:
        raise TransferError(f"Failed to read source <{src}>: {e}") from e
    _put(engine, container_id, target_dir, data, src)


def create_file(engine, container_id: str, name: str, content: str, destination: str) -> None:
    _put(engine, container_id, destination, tar_content(name, content), name)


def inject_files(engine, container_id: str, files: Iterable[FileSpec], destination: str) -> None:
    """Write every inject entry into the container below `destination`."""
    for spec in files:
        if not spec.is_inject:
            continue
        if spec.content:
            create_file(engine, container_id, spec.inject, spec.content, destination)
            continue

        matches = sorted(glob.glob(spec.inject))
        if not matches:
            raise TransferError(f"No file matches glob <{spec.inject}>")
        for match in matches:
            inject_path(engine, container_id, match, destination)


# ---------------------------------------------------------------------
# Out of the container
# ---------------------------------------------------------------------

def extract_path(engine, container_id: str, spec: FileSpec, source_dir: str) -> None:
    src = f"{source_dir}/{spec.extract}"
    dst = preserve_trailing_dot_or_separator(os.path.abspath(spec.destination), spec.destination, os.sep)
    validate_output_path(dst)

    rebase_name = ""
    src_stat = _stat(engine, container_id, src, src)
    if src_stat.is_symlink:
        target = resolve_link_target(src, src_stat.link_target)
        src, rebase_name = get_rebase_name(src, target)

    try:
        stream, archive_stat = engine.get_archive(container_id, src)
    except EngineError as e:
        raise TransferError(f"Failed to copy from container path <{src}>: {e}") from e

    try:
        src_info = CopyInfo(path=src, exists=True, is_dir=archive_stat.is_dir, rebase_name=rebase_name)
        renames: Renames = []
        if rebase_name:
            renames.append((split_path_dir_entry(src)[1], rebase_name))

        dst_dir, rename = prepare_archive_copy(src_info, copy_info_destination_path(dst))
        if rename is not None:
            renames.append(rename)

        untar(stream, dst_dir, renames)
    except (tarfile.TarError, OSError, EngineError) as e:
        raise TransferError(f"Failed to write to disk for path <{dst}>: {e}") from e
    finally:
        stream.close()


def extract_files(engine, container_id: str, files: Iterable[FileSpec], source_dir: str) -> None:
    """Copy every extract entry from below `source_dir` back to the host."""
    for spec in files:
        if spec.is_extract:
            extract_path(engine, container_id, spec, source_dir)
