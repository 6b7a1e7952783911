"""Shared fixtures for buildwatch tests."""

import pytest
from unittest.mock import Mock

from buildwatch import UpdateWatcher, WatcherConfig
from tag_ledger import MemoryTagStore
from version_probe import VersionProbe
from watch_errors import BuildError

NAMESPACE = "ns"

# Tags as listed by a host that already built a few releases, plus noise
# that must not be read as build ids
HOST_TAGS = [
    "ns:base",
    "ns:preinstall-buildid-480",
    "ns:preinstall-buildid-495",
    "ns:get5-buildid-480",
    "ns:get5-buildid-495",
    "ns:temp-6f1c0a9e5b7d4c2a8e3f1b0d9c8a7e6f",
    "ns:buildid-123abc",
    "ns:preinstall-buildid-",
    "ns:preinstall-buildid-12x",
    "other:preinstall-buildid-900",
    "NS:preinstall-buildid-901",
    "debian:bullseye-slim",
]


class FakeBuilder:
    """Records builds and materializes the tags in a MemoryTagStore."""

    stop_event = None

    def __init__(self, store: MemoryTagStore, fail_on=None):
        self.store = store
        self.fail_on = fail_on
        self.builds = []

    def build(self, tag, dockerfile, base_image=None):
        self.builds.append((tag, dockerfile, base_image))
        if self.fail_on and self.fail_on == dockerfile:
            raise BuildError(f"failed to build {tag} from {dockerfile}: boom")
        self.store.tags[tag] = f"sha256:{len(self.builds):064d}"


def make_docker(stdout=b"42\n", status=0, container_id="c0ffee1234567890"):
    """Mock DockerClient for running probe containers."""
    docker = Mock()
    docker.create_container.return_value = container_id
    docker.wait_container.return_value = {"StatusCode": status, "Error": None}
    docker.container_logs.return_value = (stdout, b"")
    return docker


@pytest.fixture
def docker():
    return make_docker()


@pytest.fixture
def store():
    return MemoryTagStore({"ns:base": "sha256:base"})


@pytest.fixture
def builder(store):
    return FakeBuilder(store)


@pytest.fixture
def probe():
    """VersionProbe double: upstream and installed build ids both 500."""
    fake = Mock(spec=VersionProbe)
    fake.latest_build_id.return_value = 500
    fake.installed_build_id.return_value = 500
    return fake


@pytest.fixture
def config(tmp_path):
    return WatcherConfig(namespace=NAMESPACE, interval=0.01, context_dir=str(tmp_path))


@pytest.fixture
def watcher(config, store, probe):
    """UpdateWatcher with in-memory tags and mocked probe and pipeline."""
    w = UpdateWatcher(config, docker=Mock(), store=store)
    w.probe = probe
    w.announcer = Mock()
    w.pipeline = Mock()
    w.pipeline.build_and_publish.return_value = ("ns:get5-buildid-500", 500)
    return w
