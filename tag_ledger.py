"""The image tag namespace, read as the record of what has been built.

Nothing else is stored: the highest build id of each role is recovered by
listing tags and parsing the ``<namespace>:<role>-<buildid>`` ones.
"""

import logging
import re
from typing import Dict, List, Optional

from docker_api import DockerAPIError, DockerClient
from watch_errors import ListError, TagError

logger = logging.getLogger("buildwatch.ledger")

# Returned when no tag of a role exists.  Build id 0 is a real build.
NO_BUILD = None

PREINSTALL_ROLE = "preinstall-buildid"
GET5_ROLE = "get5-buildid"

_SUFFIX_RE = re.compile(r"[0-9]+")


def image_tag(namespace: str, role: str, qualifier=None) -> str:
    """Compose ``<namespace>:<role>-<qualifier>`` (``<namespace>:<role>`` without one)."""
    if qualifier is None:
        return f"{namespace}:{role}"
    return f"{namespace}:{role}-{qualifier}"


class TagStore:
    """Interface to the tag namespace of an image store."""

    def list(self) -> List[str]:
        raise NotImplementedError

    def exists(self, tag: str) -> bool:
        raise NotImplementedError

    def create(self, tag: str, from_image: str) -> None:
        raise NotImplementedError


class DockerTagStore(TagStore):
    """Tags of the local Docker daemon."""

    def __init__(self, docker: DockerClient):
        self.docker = docker

    def list(self) -> List[str]:
        try:
            images = self.docker.list_images()
        except (DockerAPIError, OSError) as e:
            raise ListError(f"failed to list images on docker host: {e}") from e
        tags = []
        for image in images:
            # Dangling images report None or ["<none>:<none>"]
            for tag in image.get("RepoTags") or []:
                if tag != "<none>:<none>":
                    tags.append(tag)
        return tags

    def exists(self, tag: str) -> bool:
        """True if *tag* resolves to an image.  Only a 404 means absent."""
        try:
            self.docker.inspect_image(tag)
            return True
        except DockerAPIError as e:
            if e.not_found:
                return False
            raise

    def create(self, tag: str, from_image: str) -> None:
        try:
            self.docker.tag_image(from_image, tag)
        except (DockerAPIError, OSError) as e:
            raise TagError(f"failed to tag {from_image} as {tag}: {e}") from e


class MemoryTagStore(TagStore):
    """Tag namespace kept in a dict of tag -> image id."""

    def __init__(self, tags: Optional[Dict[str, str]] = None):
        self.tags: Dict[str, str] = dict(tags or {})

    def list(self) -> List[str]:
        return list(self.tags)

    def exists(self, tag: str) -> bool:
        return tag in self.tags

    def create(self, tag: str, from_image: str) -> None:
        if from_image not in self.tags:
            raise TagError(f"no such image: {from_image}")
        self.tags[tag] = self.tags[from_image]


class ImageTagLedger:
    """Highest build id materialized as an image for one tag role."""

    def __init__(self, store: TagStore, namespace: str, role: str = PREINSTALL_ROLE):
        self.store = store
        self.namespace = namespace
        self.role = role
        self.prefix = f"{namespace}:{role}-"

    def build_ids(self) -> List[int]:
        """All build ids of this role, in listing order."""
        ids = []
        for tag in self.store.list():
            if not tag.startswith(self.prefix):
                continue
            suffix = tag[len(self.prefix):]
            if not _SUFFIX_RE.fullmatch(suffix):
                logger.warning(f"Failed to extract build id from image tag {tag}")
                continue
            ids.append(int(suffix))
        return ids

    def highest_build_id(self) -> Optional[int]:
        """Highest build id of this role, or NO_BUILD if none is tagged."""
        ids = self.build_ids()
        if not ids:
            return NO_BUILD
        return max(ids)
