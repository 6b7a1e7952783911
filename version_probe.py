"""Reading build ids out of images by running helper scripts in them.

Each probe runs one throwaway container: the image's entrypoint is replaced
with ``/bin/sh`` and the helper script is passed as its argument.  The
script must print a single line of ASCII digits on stdout; stderr is never
read.
"""

import logging
import re
import threading
from typing import Optional

from docker_api import Cancelled, DockerAPIError, DockerClient
from watch_errors import ProbeError

logger = logging.getLogger("buildwatch.probe")

LATEST_BUILDID_SCRIPT = "/usr/src/helper-latest-buildid.sh"
INSTALLED_BUILDID_SCRIPT = "/usr/src/helper-installed-buildid.sh"

# Seconds per wait request; the stop event is checked in between
WAIT_SLICE = 5

_BUILD_ID_RE = re.compile(r"[0-9]+")


def parse_build_id(output: str) -> int:
    """Parse the single line printed by a helper script.

    At most one trailing line terminator is removed.  What remains must
    consist only of ASCII digits; anything else raises ProbeError.
    """
    if output.endswith("\r\n"):
        text = output[:-2]
    elif output.endswith("\n"):
        text = output[:-1]
    else:
        text = output

    if not _BUILD_ID_RE.fullmatch(text):
        raise ProbeError(f"expected a single line with a build id, got {output!r}")
    return int(text)


class VersionProbe:
    """Runs helper scripts in disposable containers and parses their output."""

    def __init__(self, docker: DockerClient, stop_event: Optional[threading.Event] = None,
                 wait_slice: float = WAIT_SLICE):
        self.docker = docker
        self.stop_event = stop_event or threading.Event()
        self.wait_slice = wait_slice

    def _wait(self, container_id: str) -> int:
        while True:
            if self.stop_event.is_set():
                raise Cancelled(f"stopped while waiting for container {container_id[:12]}")
            try:
                result = self.docker.wait_container(
                    container_id, condition="not-running", timeout=self.wait_slice
                )
            except TimeoutError:
                continue
            error = (result or {}).get("Error")
            if error and error.get("Message"):
                raise ProbeError(f"waiting for container failed: {error['Message']}")
            return (result or {}).get("StatusCode", 0)

    def _remove(self, container_id: str) -> None:
        try:
            self.docker.remove_container(container_id, force=True)
            logger.debug(f"Removed container {container_id[:12]}")
        except (DockerAPIError, OSError) as e:
            logger.warning(f"Failed to remove probe container {container_id[:12]}: {e}")

    def run_script(self, script: str, image: str) -> str:
        """Run *script* in a fresh container of *image* and return its stdout."""
        config = {
            "Image": image,
            "Entrypoint": ["/bin/sh"],
            "Cmd": [script],
            "AttachStdout": False,
            "AttachStderr": False,
            "Tty": False,
        }
        try:
            container_id = self.docker.create_container(config)
        except (DockerAPIError, OSError) as e:
            raise ProbeError(f"failed to create container from {image} for {script}: {e}") from e
        logger.debug(f"Created container {container_id[:12]} from {image}")

        try:
            try:
                self.docker.start_container(container_id)
                logger.debug(f"Started container {container_id[:12]}")
                status = self._wait(container_id)
                logger.debug(f"Container {container_id[:12]} exited with status {status}")
                stdout, _ = self.docker.container_logs(container_id, stdout=True, stderr=False)
            except (DockerAPIError, OSError) as e:
                raise ProbeError(f"failed to run {script} in {image}: {e}") from e
        finally:
            self._remove(container_id)

        output = stdout.decode("utf-8", errors="replace")
        if status != 0:
            raise ProbeError(f"{script} exited with status {status} in {image}, output {output!r}")
        return output

    def run_version_script(self, script: str, image: str) -> int:
        """Run *script* in *image* and return the build id it prints."""
        output = self.run_script(script, image)
        try:
            return parse_build_id(output)
        except ProbeError as e:
            logger.error(f"Failed to parse build id printed by {script} in {image}: {output!r}")
            raise ProbeError(f"{script} in {image}: {e.message}") from e

    def latest_build_id(self, base_image: str) -> int:
        """Latest build id published upstream, checked from the base image."""
        return self.run_version_script(LATEST_BUILDID_SCRIPT, base_image)

    def installed_build_id(self, image: str) -> int:
        """Build id of the game server installed in *image*."""
        return self.run_version_script(INSTALLED_BUILDID_SCRIPT, image)
