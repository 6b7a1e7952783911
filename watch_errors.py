"""Exceptions raised by the watcher, tagged with the stage that failed."""


class WatcherError(Exception):
    """Base error.  ``stage`` names the step that produced it."""

    stage = "watch"

    def __init__(self, message: str, stage: str = None):
        if stage is not None:
            self.stage = stage
        self.message = message
        super().__init__(f"[{self.stage}] {message}")


class ProbeError(WatcherError):
    """Helper script could not be run or its output was not a build id."""

    stage = "probe"


class BuildError(WatcherError):
    stage = "build"


class TagError(WatcherError):
    stage = "tag"


class ListError(WatcherError):
    stage = "list"


class PushError(WatcherError):
    stage = "push"


class SetupError(WatcherError):
    """Build context or base image could not be prepared.  Always fatal."""

    stage = "setup"
