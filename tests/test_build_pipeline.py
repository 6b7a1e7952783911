"""Tests for the base image and the per-release build chain."""

import io
import threading
import pytest
from unittest.mock import Mock

from build_pipeline import (
    BASE_DOCKERFILE,
    GET5_DOCKERFILE,
    PREINSTALL_DOCKERFILE,
    BaseImageManager,
    BuildPublishPipeline,
    ImageBuilder,
)
from conftest import FakeBuilder
from docker_api import Cancelled, DockerAPIError
from tag_ledger import DockerTagStore, ImageTagLedger, MemoryTagStore
from watch_errors import BuildError, ProbeError, PushError, SetupError, TagError


class TestBaseImageManager:

    def test_builds_when_absent(self):
        store = MemoryTagStore()
        builder = FakeBuilder(store)
        assert BaseImageManager(store, builder, "ns").ensure() is True
        assert builder.builds == [("ns:base", BASE_DOCKERFILE, None)]
        assert store.exists("ns:base")

    def test_noop_when_present(self, store, builder):
        assert BaseImageManager(store, builder, "ns").ensure() is False
        assert builder.builds == []

    def test_idempotent(self):
        store = MemoryTagStore()
        builder = FakeBuilder(store)
        manager = BaseImageManager(store, builder, "ns")
        manager.ensure()
        manager.ensure()
        assert len(builder.builds) == 1

    def test_idempotent_against_docker(self):
        """Build API called once across two calls when the image starts absent."""
        docker = Mock()
        docker.inspect_image.side_effect = [DockerAPIError(404, "No such image"), {"Id": "sha256:1"}]
        context = Mock()
        context.open.return_value = io.BytesIO(b"")
        store = DockerTagStore(docker)
        manager = BaseImageManager(store, ImageBuilder(docker, context), "ns")

        manager.ensure()
        manager.ensure()

        docker.build_image.assert_called_once()
        args, kwargs = docker.build_image.call_args
        assert args[1] == "ns:base"
        assert kwargs["dockerfile"] == "Dockerfile"

    def test_inspect_error_not_masked(self):
        store = Mock()
        store.exists.side_effect = DockerAPIError(403, "permission denied")
        builder = Mock()
        with pytest.raises(SetupError):
            BaseImageManager(store, builder, "ns").ensure()
        builder.build.assert_not_called()

    def test_build_failure_is_setup_error(self):
        store = MemoryTagStore()
        builder = FakeBuilder(store, fail_on=BASE_DOCKERFILE)
        with pytest.raises(SetupError):
            BaseImageManager(store, builder, "ns").ensure()


class TestImageBuilder:

    def test_passes_base_image_build_arg(self):
        docker = Mock()
        context = Mock()
        context.open.return_value = io.BytesIO(b"tar")
        stop = threading.Event()
        ImageBuilder(docker, context, stop_event=stop).build(
            "ns:get5-buildid-5", GET5_DOCKERFILE, base_image="ns:preinstall-buildid-5"
        )
        docker.build_image.assert_called_once()
        args, kwargs = docker.build_image.call_args
        assert args[1] == "ns:get5-buildid-5"
        assert kwargs["buildargs"] == {"BASE_IMAGE": "ns:preinstall-buildid-5"}
        assert kwargs["nocache"] is True
        assert kwargs["stop_event"] is stop

    def test_reopens_context_for_every_build(self):
        docker = Mock()
        context = Mock()
        context.open.side_effect = lambda: io.BytesIO(b"tar")
        builder = ImageBuilder(docker, context)
        builder.build("ns:a", "Dockerfile")
        builder.build("ns:b", "Dockerfile")
        assert context.open.call_count == 2

    def test_docker_error_is_build_error(self):
        docker = Mock()
        docker.build_image.side_effect = DockerAPIError(500, "COPY failed")
        context = Mock()
        context.open.return_value = io.BytesIO(b"tar")
        with pytest.raises(BuildError) as exc:
            ImageBuilder(docker, context).build("ns:a", "Dockerfile")
        assert exc.value.stage == "build"


class TestBuildPublishPipeline:

    def test_build_chain(self, store, builder, probe):
        pipeline = BuildPublishPipeline(store, builder, probe, "ns")
        tag, build_id = pipeline.build_and_publish()

        assert (tag, build_id) == ("ns:get5-buildid-500", 500)
        temp, dockerfile, base = builder.builds[0]
        assert temp.startswith("ns:temp-")
        assert (dockerfile, base) == (PREINSTALL_DOCKERFILE, "ns:base")
        assert builder.builds[1] == (
            "ns:get5-buildid-500", GET5_DOCKERFILE, "ns:preinstall-buildid-500"
        )
        probe.installed_build_id.assert_called_once_with(temp)

    def test_preinstall_tag_aliases_temp_image(self, store, builder, probe):
        BuildPublishPipeline(store, builder, probe, "ns").build_and_publish()
        temp = builder.builds[0][0]
        assert store.tags["ns:preinstall-buildid-500"] == store.tags[temp]
        # temp tag is kept
        assert store.exists(temp)

    def test_build_id_read_from_image(self, store, builder, probe):
        probe.latest_build_id.return_value = 600
        probe.installed_build_id.return_value = 512
        tag, build_id = BuildPublishPipeline(store, builder, probe, "ns").build_and_publish()
        assert (tag, build_id) == ("ns:get5-buildid-512", 512)
        assert store.exists("ns:preinstall-buildid-512")

    def test_temp_tags_unique(self, store, builder, probe):
        pipeline = BuildPublishPipeline(store, builder, probe, "ns")
        pipeline.build_and_publish()
        pipeline.build_and_publish()
        temps = [b[0] for b in builder.builds if b[1] == PREINSTALL_DOCKERFILE]
        assert len(set(temps)) == 2

    def test_temp_tag_invisible_to_ledger(self, store, builder, probe):
        probe.installed_build_id.side_effect = ProbeError("garbled output")
        with pytest.raises(ProbeError):
            BuildPublishPipeline(store, builder, probe, "ns").build_and_publish()
        assert ImageTagLedger(store, "ns").highest_build_id() is None

    def test_existing_tag_overwritten(self, store, builder, probe):
        store.tags["ns:preinstall-buildid-500"] = "sha256:old"
        BuildPublishPipeline(store, builder, probe, "ns").build_and_publish()
        assert store.tags["ns:preinstall-buildid-500"] != "sha256:old"

    def test_preinstall_failure_stops_chain(self, store, probe):
        builder = FakeBuilder(store, fail_on=PREINSTALL_DOCKERFILE)
        with pytest.raises(BuildError):
            BuildPublishPipeline(store, builder, probe, "ns").build_and_publish()
        probe.installed_build_id.assert_not_called()
        assert len(builder.builds) == 1

    def test_probe_failure_stops_chain(self, store, builder, probe):
        probe.installed_build_id.side_effect = ProbeError("bad output")
        with pytest.raises(ProbeError):
            BuildPublishPipeline(store, builder, probe, "ns").build_and_publish()
        assert len(builder.builds) == 1
        assert not store.exists("ns:preinstall-buildid-500")

    def test_tag_failure_stops_chain(self, builder, probe):
        store = Mock()
        store.exists.return_value = False
        store.create.side_effect = TagError("no such image")
        with pytest.raises(TagError):
            BuildPublishPipeline(store, builder, probe, "ns").build_and_publish()
        assert len(builder.builds) == 1

    def test_get5_failure(self, store, probe):
        builder = FakeBuilder(store, fail_on=GET5_DOCKERFILE)
        with pytest.raises(BuildError):
            BuildPublishPipeline(store, builder, probe, "ns").build_and_publish()
        assert store.exists("ns:preinstall-buildid-500")

    def test_push_disabled_by_default(self, store, builder, probe):
        docker = Mock()
        BuildPublishPipeline(store, builder, probe, "ns", docker=docker).build_and_publish()
        docker.push_image.assert_not_called()

    def test_push_both_tags(self, store, builder, probe):
        docker = Mock()
        BuildPublishPipeline(store, builder, probe, "ns", push=True, docker=docker).build_and_publish()
        pushed = [c[0][0] for c in docker.push_image.call_args_list]
        assert pushed == ["ns:preinstall-buildid-500", "ns:get5-buildid-500"]

    def test_push_failure_is_push_error(self, store, builder, probe):
        docker = Mock()
        docker.push_image.side_effect = DockerAPIError(401, "unauthorized")
        with pytest.raises(PushError):
            BuildPublishPipeline(store, builder, probe, "ns", push=True, docker=docker).build_and_publish()

    def test_push_skipped_when_stopping(self, store, builder, probe):
        docker = Mock()
        builder.stop_event = threading.Event()
        builder.stop_event.set()
        with pytest.raises(Cancelled):
            BuildPublishPipeline(store, builder, probe, "ns", push=True, docker=docker).build_and_publish()
        docker.push_image.assert_not_called()
