# engine.py
from __future__ import annotations

import base64
import json
import os
import socket
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from .errors import PipelineError

DEFAULT_HOST = "unix:///var/run/docker.sock"
DEFAULT_TCP_PORT = 2375

# os.FileMode type bits, as the engine reports them in path stats
MODE_DIR = 1 << 31
MODE_SYMLINK = 1 << 27
MODE_DEVICE = 1 << 26
MODE_NAMED_PIPE = 1 << 25
MODE_SOCKET = 1 << 24
MODE_CHAR_DEVICE = 1 << 21
MODE_IRREGULAR = 1 << 19
MODE_TYPE = (
    MODE_DIR | MODE_SYMLINK | MODE_DEVICE | MODE_NAMED_PIPE
    | MODE_SOCKET | MODE_CHAR_DEVICE | MODE_IRREGULAR
)

STAT_HEADER = "X-Docker-Container-Path-Stat"


class EngineError(PipelineError):
    """Raised when a container engine request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


@dataclass(frozen=True)
class PathStat:
    """Stat of a path inside a container."""
    name: str
    size: int
    mode: int
    mtime: str = ""
    link_target: str = ""

    @property
    def is_dir(self) -> bool:
        return bool(self.mode & MODE_DIR)

    @property
    def is_symlink(self) -> bool:
        return bool(self.mode & MODE_SYMLINK)

    @property
    def is_regular(self) -> bool:
        return self.mode & MODE_TYPE == 0

    @classmethod
    def from_header(cls, value: str) -> PathStat:
        data = json.loads(base64.b64decode(value))
        return cls(
            name=data.get("name", ""),
            size=int(data.get("size", 0)),
            mode=int(data.get("mode", 0)),
            mtime=data.get("mtime", ""),
            link_target=data.get("linkTarget", ""),
        )


def split_image_ref(image: str) -> Tuple[str, str]:
    """
    `alpine` -> ("alpine", "latest"), `host:5000/a/b:1.2` -> ("host:5000/a/b", "1.2").
    Digests are passed as the tag.
    """
    if "@" in image:
        name, digest = image.split("@", 1)
        return name, digest
    last = image.rsplit("/", 1)[-1]
    if ":" in last:
        name, tag = image.rsplit(":", 1)
        return name, tag
    return image, "latest"


class ByteStream:
    """An open streaming response body. Iterate for raw chunks, close() to cancel."""

    def __init__(self, response: httpx.Response):
        self._response = response

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_bytes():
                if chunk:
                    yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise EngineError(f"Stream interrupted: {e}") from e
        finally:
            self._response.close()

    def close(self) -> None:
        self._response.close()


class AttachedStdin:
    """Write side of a hijacked attach connection."""

    def __init__(self, sock: socket.socket):
        self._sock = sock

    def write(self, data: bytes) -> None:
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise EngineError(f"Failed to write to container input: {e}") from e

    def close_write(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_WR)
        except OSError as e:
            raise EngineError(f"Failed to close container input: {e}") from e

    def close(self) -> None:
        self._sock.close()


class DockerEngine:
    """HTTP client for the Docker Engine API."""

    def __init__(
        self,
        host: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: float = 60.0,
    ):
        """
        Initialize engine client.

        Args:
            host: Engine endpoint (defaults to $DOCKER_HOST, then the local unix socket)
            api_version: Pin an API version (e.g. "1.43"); unversioned paths otherwise
            timeout: Timeout in seconds for non-streaming requests
        """
        self.host = host or os.environ.get("DOCKER_HOST") or DEFAULT_HOST
        parsed = urlparse(self.host)

        if parsed.scheme == "unix":
            self._socket_path: Optional[str] = parsed.path or urlparse(DEFAULT_HOST).path
            self._address: Optional[Tuple[str, int]] = None
            transport = httpx.HTTPTransport(uds=self._socket_path)
            base_url = "http://docker"
        elif parsed.scheme in ("tcp", "http"):
            self._socket_path = None
            self._address = (parsed.hostname or "localhost", parsed.port or DEFAULT_TCP_PORT)
            transport = httpx.HTTPTransport()
            base_url = f"http://{self._address[0]}:{self._address[1]}"
        else:
            raise EngineError(f"Unsupported engine host: {self.host}")

        self._prefix = f"/v{api_version}" if api_version else ""
        self._client = httpx.Client(transport=transport, base_url=base_url, timeout=timeout)

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return self._prefix + path

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
            message = body.get("message") or json.dumps(body)
        except ValueError:
            message = response.text
        return f"{response.status_code} {response.reason_phrase}: {message}".strip()

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[dict] = None,
        content: Optional[bytes] = None,
        headers: Optional[dict] = None,
        wait_forever: bool = False,
    ) -> httpx.Response:
        """
        Make a request to the engine.

        Raises:
            EngineError: on transport failure or any 4xx/5xx response
        """
        kwargs: Dict[str, Any] = {}
        if wait_forever:
            kwargs["timeout"] = None
        try:
            response = self._client.request(
                method,
                self._url(path),
                params=params,
                json=json_body,
                content=content,
                headers=headers,
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise EngineError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise EngineError(self._error_message(response), status_code=response.status_code)
        return response

    def _stream(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        request = self._client.build_request(method, self._url(path), params=params, timeout=None)
        try:
            response = self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise EngineError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            response.read()
            message = self._error_message(response)
            response.close()
            raise EngineError(message, status_code=response.status_code)
        return response

    def _connect(self) -> socket.socket:
        if self._socket_path is not None:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.connect(self._socket_path)
            return sock
        if self._address is None:
            raise EngineError("No engine address to connect to")
        return socket.create_connection(self._address)

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def pull_image(self, image: str) -> Iterator[dict]:
        """Yield pull progress messages. The pull is only complete once drained."""
        name, tag = split_image_ref(image)
        response = self._stream("POST", "/images/create", params={"fromImage": name, "tag": tag})
        try:
            for line in response.iter_lines():
                if not line.strip():
                    continue
                message = json.loads(line)
                if "error" in message:
                    raise EngineError(f"Pull of <{image}> failed: {message['error']}")
                yield message
        except httpx.HTTPError as e:
            raise EngineError(f"Pull of <{image}> interrupted: {e}") from e
        finally:
            response.close()

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------

    def create_container(self, config: dict, name: Optional[str] = None) -> str:
        params = {"name": name} if name else None
        response = self._request("POST", "/containers/create", params=params, json_body=config)
        return response.json()["Id"]

    def start_container(self, container_id: str) -> None:
        self._request("POST", f"/containers/{container_id}/start")

    def attach_stdin(self, container_id: str) -> AttachedStdin:
        """Hijack an attach connection carrying the container's stdin."""
        path = self._url(f"/containers/{container_id}/attach") + "?" + urlencode({"stream": 1, "stdin": 1})
        request = (
            f"POST {path} HTTP/1.1\r\n"
            "Host: docker\r\n"
            "Connection: Upgrade\r\n"
            "Upgrade: tcp\r\n"
            "Content-Length: 0\r\n"
            "\r\n"
        ).encode("ascii")

        try:
            sock = self._connect()
        except OSError as e:
            raise EngineError(f"Cannot connect to engine at {self.host}: {e}") from e

        try:
            sock.sendall(request)
            head = b""
            while b"\r\n\r\n" not in head:
                chunk = sock.recv(4096)
                if not chunk:
                    raise EngineError("Engine closed the attach connection")
                head += chunk
        except OSError as e:
            sock.close()
            raise EngineError(f"Attach to <{container_id}> failed: {e}") from e
        except EngineError:
            sock.close()
            raise

        status_line = head.split(b"\r\n", 1)[0].decode("latin-1")
        parts = status_line.split(" ", 2)
        status = int(parts[1]) if len(parts) > 1 and parts[1].isdigit() else 0
        if status not in (101, 200):
            sock.close()
            raise EngineError(f"Attach to <{container_id}> refused: {status_line}", status_code=status)
        return AttachedStdin(sock)

    def container_logs(self, container_id: str, *, follow: bool = False) -> ByteStream:
        """Multiplexed stdout/stderr of a container."""
        params = {"stdout": 1, "stderr": 1, "follow": 1 if follow else 0}
        return ByteStream(self._stream("GET", f"/containers/{container_id}/logs", params=params))

    def wait_container(self, container_id: str, condition: str = "not-running") -> int:
        """Block until the container leaves the running state; returns its exit status."""
        response = self._request(
            "POST",
            f"/containers/{container_id}/wait",
            params={"condition": condition},
            wait_forever=True,
        )
        body = response.json()
        error = body.get("Error") or {}
        if error.get("Message"):
            raise EngineError(f"Wait on <{container_id}> failed: {error['Message']}")
        return int(body.get("StatusCode", 0))

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        self._request("POST", f"/containers/{container_id}/stop", params={"t": timeout})

    def remove_container(self, container_id: str, *, force: bool = False) -> None:
        self._request("DELETE", f"/containers/{container_id}", params={"force": "1" if force else "0"})

    # ------------------------------------------------------------------
    # Filesystem access
    # ------------------------------------------------------------------

    def stat_path(self, container_id: str, path: str) -> PathStat:
        response = self._request("HEAD", f"/containers/{container_id}/archive", params={"path": path})
        header = response.headers.get(STAT_HEADER)
        if not header:
            raise EngineError(f"No stat returned for <{path}>")
        return PathStat.from_header(header)

    def put_archive(self, container_id: str, path: str, data: bytes) -> None:
        """Extract a tar archive into directory `path` of the container."""
        self._request(
            "PUT",
            f"/containers/{container_id}/archive",
            params={"path": path, "noOverwriteDirNonDir": "true"},
            content=data,
            headers={"Content-Type": "application/x-tar"},
        )

    def get_archive(self, container_id: str, path: str) -> Tuple[ByteStream, PathStat]:
        """Tar stream of `path` in the container, plus the stat of `path`."""
        response = self._stream("GET", f"/containers/{container_id}/archive", params={"path": path})
        header = response.headers.get(STAT_HEADER)
        if not header:
            response.close()
            raise EngineError(f"No stat returned for <{path}>")
        return ByteStream(response), PathStat.from_header(header)

    # ------------------------------------------------------------------
    # Volumes and networks
    # ------------------------------------------------------------------

    def list_volumes(self) -> List[str]:
        body = self._request("GET", "/volumes").json()
        return [v["Name"] for v in (body.get("Volumes") or [])]

    def create_volume(self, name: str, driver: str) -> None:
        self._request("POST", "/volumes/create", json_body={"Name": name, "Driver": driver})

    def remove_volume(self, name: str) -> None:
        self._request("DELETE", f"/volumes/{name}")

    def list_networks(self) -> List[str]:
        body = self._request("GET", "/networks").json()
        return [n["Name"] for n in body]

    def create_network(self, name: str, driver: str) -> str:
        body = self._request("POST", "/networks/create", json_body={"Name": name, "Driver": driver}).json()
        return body.get("Id", "")

    def remove_network(self, name: str) -> None:
        self._request("DELETE", f"/networks/{name}")
