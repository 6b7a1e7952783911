"""Image builds: the base image and the per-release image chain.

Every release produces two permanent tags::

    <ns>:base                      built once, contains steamcmd
      -> <ns>:temp-<uuid>          Dockerfile-preinstall, game installed
      == <ns>:preinstall-buildid-N same image, tagged with its build id
      -> <ns>:get5-buildid-N       Dockerfile-get5 on top of the above

N is read back from the built image rather than taken from upstream.
"""

import logging
import threading
import uuid
from typing import Dict, Optional, Tuple

from build_context import BuildContext
from docker_api import Cancelled, DockerAPIError, DockerClient
from tag_ledger import GET5_ROLE, PREINSTALL_ROLE, TagStore, image_tag
from version_probe import VersionProbe
from watch_errors import BuildError, PushError, SetupError, TagError

logger = logging.getLogger("buildwatch.build")

BASE_DOCKERFILE = "Dockerfile"
PREINSTALL_DOCKERFILE = "Dockerfile-preinstall"
GET5_DOCKERFILE = "Dockerfile-get5"


class ImageBuilder:
    """Builds images from the shared build context."""

    def __init__(self, docker: DockerClient, context: BuildContext,
                 stop_event: Optional[threading.Event] = None):
        self.docker = docker
        self.context = context
        self.stop_event = stop_event

    def build(self, tag: str, dockerfile: str, base_image: Optional[str] = None) -> None:
        """Build *dockerfile* as *tag*, passing *base_image* as BASE_IMAGE."""
        buildargs: Dict[str, str] = {}
        if base_image:
            buildargs["BASE_IMAGE"] = base_image

        logger.info(f"Building {tag} from {dockerfile}")
        try:
            with self.context.open() as archive:
                self.docker.build_image(
                    archive, tag,
                    dockerfile=dockerfile,
                    buildargs=buildargs,
                    nocache=True,
                    stop_event=self.stop_event,
                )
        except (DockerAPIError, OSError) as e:
            raise BuildError(f"failed to build {tag} from {dockerfile}: {e}") from e
        logger.debug(f"Finished building {tag}")


class BaseImageManager:
    """Makes sure ``<ns>:base`` exists, building it only when absent."""

    def __init__(self, store: TagStore, builder: ImageBuilder, namespace: str):
        self.store = store
        self.builder = builder
        self.namespace = namespace

    @property
    def tag(self) -> str:
        return image_tag(self.namespace, "base")

    def ensure(self) -> bool:
        """Build the base image if missing.  Returns True if a build ran."""
        try:
            present = self.store.exists(self.tag)
        except (DockerAPIError, OSError) as e:
            raise SetupError(f"could not inspect base image {self.tag}: {e}") from e

        if present:
            logger.debug("Base image already exists, not rebuilding")
            return False

        logger.info(f"Building base image {self.tag}")
        try:
            self.builder.build(self.tag, BASE_DOCKERFILE)
        except BuildError as e:
            raise SetupError(f"failed to build base image: {e.message}") from e
        return True


class BuildPublishPipeline:
    """Builds, tags and optionally pushes the images for the current release."""

    def __init__(self, store: TagStore, builder: ImageBuilder, probe: VersionProbe,
                 namespace: str, push: bool = False,
                 docker: Optional[DockerClient] = None):
        self.store = store
        self.builder = builder
        self.probe = probe
        self.namespace = namespace
        self.push = push
        self.docker = docker

    def _temp_tag(self) -> str:
        return image_tag(self.namespace, "temp", uuid.uuid4().hex)

    def _push(self, tag: str) -> None:
        if self.docker is None:
            raise PushError(f"cannot push {tag}: no docker client configured")
        logger.info(f"Pushing {tag}")
        try:
            self.docker.push_image(tag, stop_event=self.builder.stop_event)
        except (DockerAPIError, OSError) as e:
            raise PushError(f"failed to push {tag}: {e}") from e

    def build_and_publish(self) -> Tuple[str, int]:
        """Run the whole chain.  Returns (final image tag, build id)."""
        logger.info("Building new CS:GO container images")

        base = image_tag(self.namespace, "base")
        temp = self._temp_tag()
        self.builder.build(temp, PREINSTALL_DOCKERFILE, base_image=base)

        build_id = self.probe.installed_build_id(temp)
        logger.info(f"Image {temp} contains build id {build_id}")

        preinstall = image_tag(self.namespace, PREINSTALL_ROLE, build_id)
        try:
            replacing = self.store.exists(preinstall)
        except (DockerAPIError, OSError) as e:
            raise TagError(f"could not inspect {preinstall}: {e}") from e
        if replacing:
            logger.warning(f"{preinstall} already exists, replacing it")
        self.store.create(preinstall, temp)

        get5 = image_tag(self.namespace, GET5_ROLE, build_id)
        self.builder.build(get5, GET5_DOCKERFILE, base_image=preinstall)

        if self.push:
            for tag in (preinstall, get5):
                if self.builder.stop_event is not None and self.builder.stop_event.is_set():
                    raise Cancelled("stopped before pushing images")
                self._push(tag)

        return get5, build_id
