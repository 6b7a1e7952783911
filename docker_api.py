"""Docker Engine API client over Unix socket.

Talks to the Docker Engine API via the mounted /var/run/docker.sock Unix
socket using only http.client.  Covers the calls the watcher needs: image
inspect, build, tag, list and push, plus the short-lived container lifecycle
used to run helper scripts.
"""

import http.client
import json
import logging
import os
import socket
import struct
import threading
import urllib.parse
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

logger = logging.getLogger("buildwatch.docker")

# Docker Engine API version — compatible with Docker 20.10+
API_VERSION = "v1.41"

# Stream ids in the multiplexed log format
STDOUT = 1
STDERR = 2

READ_CHUNK = 64 * 1024


class DockerAPIError(Exception):
    """Error from the Docker Engine API."""

    def __init__(self, status: int, message: str):
        self.status = status
        self.message = message
        super().__init__(f"Docker API error {status}: {message}")

    @property
    def not_found(self) -> bool:
        return self.status == 404


class Cancelled(Exception):
    """Raised from a blocking call when the stop event has been set."""


class UnixHTTPConnection(http.client.HTTPConnection):
    """HTTPConnection subclass that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout: Optional[float] = 30):
        # host is unused for the actual connection but required by HTTPConnection
        super().__init__("localhost", timeout=timeout)
        self._socket_path = socket_path

    def connect(self):
        self.sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self.sock.settimeout(self.timeout)
        self.sock.connect(self._socket_path)


def _error_message(raw: str) -> str:
    try:
        err = json.loads(raw)
        return err.get("message", raw)
    except (json.JSONDecodeError, AttributeError):
        return raw


def demux_logs(data: bytes) -> Tuple[bytes, bytes]:
    """Split a multiplexed container log stream into (stdout, stderr).

    Each frame is an 8 byte header ``[stream, 0, 0, 0, size(uint32 BE)]``
    followed by *size* bytes of payload.  Containers started with a TTY do
    not multiplex; a stream whose first byte is not a known stream id is
    returned as stdout unchanged.
    """
    if data and data[0] not in (0, STDOUT, STDERR):
        return data, b""

    out = bytearray()
    err = bytearray()
    pos = 0
    while pos + 8 <= len(data):
        stream, size = struct.unpack(">BxxxL", data[pos:pos + 8])
        pos += 8
        payload = data[pos:pos + size]
        if len(payload) < size:
            raise DockerAPIError(500, "truncated frame in container log stream")
        pos += size
        if stream == STDERR:
            err += payload
        else:
            out += payload
    if pos != len(data):
        raise DockerAPIError(500, "trailing bytes in container log stream")
    return bytes(out), bytes(err)


class DockerClient:
    """Client for the Docker Engine API over Unix socket."""

    def __init__(self, socket_path: Optional[str] = None):
        if socket_path is None:
            host = os.environ.get("DOCKER_HOST", "")
            if host:
                socket_path = host.replace("unix://", "")
            else:
                socket_path = "/var/run/docker.sock"
        self._socket_path = socket_path

    def _connect(self, timeout: Optional[float]) -> UnixHTTPConnection:
        return UnixHTTPConnection(self._socket_path, timeout=timeout)

    def _request(self, method: str, path: str, body: Any = None,
                 query: Optional[Dict[str, str]] = None,
                 timeout: Optional[float] = 30, raw_response: bool = False) -> Any:
        """Send an HTTP request to the Docker Engine API.

        Creates a fresh connection per call (Docker socket is local so
        the overhead is negligible and avoids stale-connection issues).

        Returns parsed JSON for most calls, or the undecoded body when
        *raw_response* is True (container logs).
        """
        url = f"/{API_VERSION}{path}"
        if query:
            url += "?" + urllib.parse.urlencode(query)

        headers: Dict[str, str] = {}
        encoded_body: Optional[bytes] = None

        if body is not None:
            encoded_body = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        conn = self._connect(timeout)
        try:
            conn.request(method, url, body=encoded_body, headers=headers)
            response = conn.getresponse()
            data = response.read()

            if response.status >= 400:
                raise DockerAPIError(
                    response.status,
                    _error_message(data.decode("utf-8", errors="replace")),
                )

            if raw_response:
                return data

            raw = data.decode("utf-8", errors="replace")
            if response.status == 204 or not raw:
                return None

            return json.loads(raw)
        except (http.client.HTTPException, ValueError) as e:
            raise DockerAPIError(500, f"bad response for {method} {path}: {e!r}") from e
        finally:
            conn.close()

    def _stream(self, method: str, path: str, query: Dict[str, str],
                body: Optional[BinaryIO] = None,
                headers: Optional[Dict[str, str]] = None,
                timeout: Optional[float] = None,
                stop_event: Optional[threading.Event] = None) -> None:
        """Send a request whose response is an NDJSON progress stream.

        The whole stream is consumed line by line (build and push keep
        working only while their output is read).  ``stream`` lines are
        logged at DEBUG, and an ``error`` object anywhere in the stream
        raises :class:`DockerAPIError`.
        """
        url = f"/{API_VERSION}{path}?" + urllib.parse.urlencode(query)
        conn = self._connect(timeout)
        try:
            conn.request(method, url, body=body, headers=headers or {})
            response = conn.getresponse()

            if response.status >= 400:
                raw = response.read().decode("utf-8", errors="replace")
                raise DockerAPIError(response.status, _error_message(raw.strip()))

            while True:
                if stop_event is not None and stop_event.is_set():
                    raise Cancelled(f"{method} {path} interrupted")
                line = response.readline()
                if not line:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if "error" in obj:
                    raise DockerAPIError(
                        500,
                        obj.get("errorDetail", {}).get("message", obj["error"])
                    )
                text = obj.get("stream") or obj.get("status")
                if text and text.strip():
                    logger.debug(text.rstrip())
        except http.client.HTTPException as e:
            raise DockerAPIError(500, f"stream for {method} {path} broke off: {e!r}") from e
        finally:
            try:
                conn.close()
            except OSError as e:
                logger.warning(f"Failed to close stream for {path}: {e}")

    # ── Image operations ──────────────────────────────────────────

    def inspect_image(self, image_ref: str) -> Dict[str, Any]:
        """Inspect an image (equivalent to ``docker image inspect``)."""
        return self._request("GET", f"/images/{image_ref}/json")

    def list_images(self, reference: Optional[str] = None) -> List[Dict[str, Any]]:
        """List images, optionally filtered by reference.

        Returns list of dicts with keys like ``Id``, ``RepoTags``, ``Created``.
        """
        query = {}
        if reference:
            query["filters"] = json.dumps({"reference": [reference]})
        result = self._request("GET", "/images/json", query=query)
        return result or []

    def build_image(self, context: BinaryIO, tag: str, dockerfile: str = "Dockerfile",
                    buildargs: Optional[Dict[str, str]] = None,
                    nocache: bool = True,
                    stop_event: Optional[threading.Event] = None) -> None:
        """Build an image from a tar build context.

        Equivalent to ``docker build --no-cache -f dockerfile -t tag -``.
        Blocks until the build log stream has been fully drained.
        """
        query = {"t": tag, "dockerfile": dockerfile}
        if nocache:
            query["nocache"] = "1"
        if buildargs:
            query["buildargs"] = json.dumps(buildargs)
        self._stream(
            "POST", "/build", query,
            body=context,
            headers={"Content-Type": "application/x-tar"},
            stop_event=stop_event,
        )

    def tag_image(self, source: str, target: str) -> None:
        """Tag an image (equivalent to ``docker tag source target``)."""
        repo, _, tag = target.rpartition(":")
        if not repo or "/" in tag:
            repo, tag = target, "latest"
        self._request("POST", f"/images/{source}/tag",
                      query={"repo": repo, "tag": tag})

    def push_image(self, image_ref: str, auth: Optional[str] = None,
                   stop_event: Optional[threading.Event] = None) -> None:
        """Push a tagged image to its registry."""
        repo, _, tag = image_ref.rpartition(":")
        # The daemon requires the header even for anonymous pushes
        headers = {"X-Registry-Auth": auth or "e30="}
        self._stream("POST", f"/images/{repo}/push", {"tag": tag},
                     headers=headers, stop_event=stop_event)

    # ── Container operations ──────────────────────────────────────

    def create_container(self, config: Dict[str, Any], name: Optional[str] = None) -> str:
        """Create a container.  Returns the new container ID."""
        result = self._request(
            "POST", "/containers/create",
            body=config,
            query={"name": name} if name else None,
        )
        return result["Id"]

    def start_container(self, name: str) -> None:
        """Start an existing container."""
        self._request("POST", f"/containers/{name}/start")

    def wait_container(self, name: str, condition: str = "not-running",
                       timeout: Optional[float] = None) -> Dict[str, Any]:
        """Block until the container meets *condition*.

        Returns the wait result (``{"StatusCode": ..., "Error": ...}``).
        Raises ``TimeoutError`` if the container is still running after
        *timeout* seconds.
        """
        return self._request(
            "POST", f"/containers/{name}/wait",
            query={"condition": condition},
            timeout=timeout,
        )

    def container_logs(self, name: str, stdout: bool = True,
                       stderr: bool = False) -> Tuple[bytes, bytes]:
        """Fetch a container's logs, split into (stdout, stderr) bytes."""
        data = self._request(
            "GET", f"/containers/{name}/logs",
            query={"stdout": "1" if stdout else "0",
                   "stderr": "1" if stderr else "0"},
            raw_response=True,
        )
        return demux_logs(data or b"")

    def remove_container(self, name: str, force: bool = False) -> None:
        """Remove a container."""
        self._request("DELETE", f"/containers/{name}",
                      query={"force": "true"} if force else None)
