#!/usr/bin/env python3
"""
CS:GO Update Watcher

Polls Steam for the latest CS:GO dedicated server build id and, whenever it
is newer than the newest image on the Docker host, builds a fresh set of
images with that build preinstalled.  The image tags on the host are the
only state: ``<ns>:preinstall-buildid-<id>`` records every build made.
"""

__version__ = "1.0.0"

import argparse
import json
import logging
import os
import platform
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import jsonschema

from build_context import DEFAULT_CONTEXT_DIR, BuildContext
from build_pipeline import BaseImageManager, BuildPublishPipeline, ImageBuilder
from docker_api import Cancelled, DockerAPIError, DockerClient
from notify import Announcer
from tag_ledger import PREINSTALL_ROLE, DockerTagStore, ImageTagLedger, TagStore, image_tag
from version_probe import VersionProbe
from watch_errors import SetupError, WatcherError

# Apply TZ from environment (default UTC) before any logging is configured
os.environ.setdefault('TZ', 'UTC')
if platform.system() != 'Windows':
    time.tzset()


# Constants
DEFAULT_NAMESPACE = "csgo-watched"
DEFAULT_INTERVAL = 5

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "namespace": {"type": "string", "minLength": 1},
        "interval": {"type": "number", "exclusiveMinimum": 0},
        "stop_on_error": {"type": "boolean"},
        "context_dir": {"type": "string"},
        "push": {"type": "boolean"},
        "notifications": {
            "type": "object",
            "properties": {
                "discord": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "username": {"type": "string"}
                    },
                    "required": ["url"]
                },
                "ntfy": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "priority": {
                            "type": "string",
                            "enum": ["min", "low", "default", "high", "urgent"]
                        },
                        "headers": {
                            "type": "object",
                            "additionalProperties": {"type": "string"}
                        }
                    },
                    "required": ["url"]
                },
                "webhook": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "method": {"type": "string"},
                        "headers": {
                            "type": "object",
                            "additionalProperties": {"type": "string"}
                        },
                        "body_template": {"type": "string"}
                    },
                    "required": ["url"]
                }
            }
        }
    },
    "additionalProperties": False
}


@dataclass(frozen=True)
class WatcherConfig:
    """Settings for one watcher process.  Fixed once the watcher starts."""
    namespace: str = DEFAULT_NAMESPACE
    interval: float = DEFAULT_INTERVAL
    stop_on_error: bool = False
    context_dir: str = DEFAULT_CONTEXT_DIR
    push: bool = False
    notifications: Dict[str, Any] = field(default_factory=dict)
    log_level: str = "INFO"


def load_config_file(path: str) -> Dict[str, Any]:
    """Load and validate a JSON configuration file."""
    logger = logging.getLogger('buildwatch')
    try:
        with open(path, 'r') as f:
            config = json.load(f)
        jsonschema.validate(config, CONFIG_SCHEMA)
        return config
    except FileNotFoundError:
        logger.error(f"Config file {path} not found")
        raise
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing config file: {e}")
        raise
    except jsonschema.ValidationError as e:
        logger.error(f"Configuration validation failed: {e.message}")
        raise


def setup_logging(level: str) -> logging.Logger:
    """Setup logging configuration."""
    logger = logging.getLogger('buildwatch')
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S %Z'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


class RetryPolicy:
    """Decides whether the loop keeps going after a failed check."""

    def should_retry(self, attempt: int, error: Exception) -> bool:
        raise NotImplementedError


class AlwaysRetry(RetryPolicy):
    """Try again on the next tick, forever."""

    def should_retry(self, attempt: int, error: Exception) -> bool:
        return True


class NeverRetry(RetryPolicy):
    """Stop at the first failure."""

    def should_retry(self, attempt: int, error: Exception) -> bool:
        return False


class LimitedRetry(RetryPolicy):
    """Give up after *max_attempts* consecutive failed ticks."""

    def __init__(self, max_attempts: int):
        self.max_attempts = max_attempts

    def should_retry(self, attempt: int, error: Exception) -> bool:
        return attempt < self.max_attempts


class UpdateWatcher:
    """Watches Steam for new CS:GO builds and builds images for them."""

    def __init__(self, config: WatcherConfig, docker: Optional[DockerClient] = None,
                 store: Optional[TagStore] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 stop_event: Optional[threading.Event] = None):
        self.config = config
        self.logger = logging.getLogger('buildwatch.watcher')
        self.stop_event = stop_event or threading.Event()
        if retry_policy is None:
            retry_policy = NeverRetry() if config.stop_on_error else AlwaysRetry()
        self.retry_policy = retry_policy

        self.docker = docker or DockerClient()
        self.store = store or DockerTagStore(self.docker)
        self.probe = VersionProbe(self.docker, stop_event=self.stop_event)
        self.ledger = ImageTagLedger(self.store, config.namespace, PREINSTALL_ROLE)
        self.announcer = Announcer(config.notifications)

        # Set up by setup(), once per process
        self.context: Optional[BuildContext] = None
        self.builder: Optional[ImageBuilder] = None
        self.base_image: Optional[BaseImageManager] = None
        self.pipeline: Optional[BuildPublishPipeline] = None

    @property
    def base_tag(self) -> str:
        return image_tag(self.config.namespace, "base")

    def setup(self) -> None:
        """Package the build context and make sure the base image exists."""
        try:
            self.context = BuildContext.package(self.config.context_dir)
        except OSError as e:
            raise SetupError(f"failed to create build context: {e}") from e
        self.logger.debug(f"Build context packaged at {self.context.path}")

        self.builder = ImageBuilder(self.docker, self.context, stop_event=self.stop_event)
        self.base_image = BaseImageManager(self.store, self.builder, self.config.namespace)
        self.pipeline = BuildPublishPipeline(
            self.store, self.builder, self.probe, self.config.namespace,
            push=self.config.push, docker=self.docker,
        )
        self.base_image.ensure()

    def tick(self) -> str:
        """Run one check.  Returns 'built', 'up-to-date' or 'ahead'."""
        try:
            latest = self.probe.latest_build_id(self.base_tag)
        except WatcherError:
            self.logger.error("Failed to get latest version from Steam")
            raise
        self.logger.debug(f"Latest CS:GO buildid: {latest}")

        try:
            newest = self.ledger.highest_build_id()
        except WatcherError:
            self.logger.error("Failed to get buildid of newest built CS:GO image")
            raise
        self.logger.debug(f"Newest CS:GO buildid with built image: {newest}")

        if newest is None or newest < latest:
            current = newest if newest is not None else "no local build"
            self.logger.info(f"New CS:GO version available: {current} -> {latest}")
            self.announcer.announce(latest)
            try:
                image, build_id = self.pipeline.build_and_publish()
            except WatcherError:
                self.logger.error("Failed to build container image with latest CS:GO version")
                raise
            self.logger.info(f"Built new CS:GO container image {image} (buildid {build_id})")
            return "built"

        if newest > latest:
            self.logger.warning(
                f"Docker host contains CS:GO image with newer version than Steam provides "
                f"(steam {latest}, local {newest})"
            )
            return "ahead"

        self.logger.debug("No update available")
        return "up-to-date"

    def run(self) -> None:
        """Check once per interval until stopped or the retry policy gives up."""
        self.logger.info(
            f"Watching for CS:GO updates every {self.config.interval} seconds "
            f"(images: {self.config.namespace})"
        )
        failures = 0
        while not self.stop_event.wait(self.config.interval):
            try:
                self.tick()
            except Cancelled:
                break
            except (WatcherError, DockerAPIError, OSError) as e:
                failures += 1
                self.logger.error(f"Update check failed: {e}")
                if not self.retry_policy.should_retry(failures, e):
                    raise
                continue
            failures = 0
        self.logger.info("Stopped watching")

    def start(self) -> None:
        """Set up, then run the watch loop."""
        try:
            self.setup()
            self.run()
        except Cancelled:
            self.logger.info("Stopped")
        finally:
            self.close()

    def close(self) -> None:
        """Wait for pending announcements and delete the build context."""
        self.announcer.shutdown()
        if self.context is not None:
            self.context.remove()

    def stop(self) -> None:
        self.stop_event.set()


def _env_bool(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None or value == '':
        return None
    return value.lower() in ('1', 'true', 'yes')


def build_config(args: argparse.Namespace) -> WatcherConfig:
    """Merge defaults, the optional config file and command line/env values."""
    file_config: Dict[str, Any] = {}
    if args.config:
        file_config = load_config_file(args.config)

    def pick(name: str, default: Any) -> Any:
        value = getattr(args, name)
        if value is not None:
            return value
        return file_config.get(name, default)

    notifications = dict(file_config.get('notifications') or {})
    if args.discord_hook:
        notifications['discord'] = {'url': args.discord_hook}

    return WatcherConfig(
        namespace=pick('namespace', DEFAULT_NAMESPACE),
        interval=pick('interval', DEFAULT_INTERVAL),
        stop_on_error=pick('stop_on_error', False),
        context_dir=pick('context_dir', DEFAULT_CONTEXT_DIR),
        push=pick('push', False),
        notifications=notifications,
        log_level=args.log_level,
    )


def parse_args(argv=None) -> argparse.Namespace:
    interval = os.environ.get('CHECK_INTERVAL')
    parser = argparse.ArgumentParser(
        description='Build CS:GO server images whenever Steam publishes a new build'
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('CONFIG_FILE') or None,
        help='Path to optional configuration JSON file (env: CONFIG_FILE)'
    )
    parser.add_argument(
        '--namespace',
        default=os.environ.get('BASE_IMAGE_NAME') or None,
        help=f'Image name the tags are created under (env: BASE_IMAGE_NAME, default: {DEFAULT_NAMESPACE})'
    )
    parser.add_argument(
        '--interval',
        type=float,
        default=float(interval) if interval else None,
        help=f'Check interval in seconds (env: CHECK_INTERVAL, default: {DEFAULT_INTERVAL})'
    )
    parser.add_argument(
        '--discord-hook',
        default=os.environ.get('DISCORD_HOOK', ''),
        help='Discord webhook URL for new version announcements, empty disables (env: DISCORD_HOOK)'
    )
    parser.add_argument(
        '--stop-on-error',
        action='store_true',
        default=_env_bool('STOP_ON_ERROR'),
        help='Exit on the first failed check instead of waiting for the next one (env: STOP_ON_ERROR)'
    )
    parser.add_argument(
        '--context-dir',
        default=os.environ.get('CONTEXT_DIR') or None,
        help=f'Directory with Dockerfiles and helper scripts (env: CONTEXT_DIR, default: {DEFAULT_CONTEXT_DIR})'
    )
    parser.add_argument(
        '--push',
        action='store_true',
        default=_env_bool('PUSH_IMAGES'),
        help='Push built images to their registry (env: PUSH_IMAGES)'
    )
    parser.add_argument(
        '--once',
        action='store_true',
        default=bool(_env_bool('RUN_ONCE')),
        help='Run a single check and exit (env: RUN_ONCE)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    logger = setup_logging(args.log_level)

    try:
        config = build_config(args)
        watcher = UpdateWatcher(config)

        def _handle_signal(signum, frame):
            logger.info("Exiting...")
            watcher.stop()

        signal.signal(signal.SIGTERM, _handle_signal)
        signal.signal(signal.SIGINT, _handle_signal)

        if args.once:
            try:
                watcher.setup()
                watcher.tick()
            except Cancelled:
                logger.info("Stopped")
            finally:
                watcher.close()
        else:
            watcher.start()

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
