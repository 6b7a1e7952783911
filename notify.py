"""Outbound announcements of new releases.

Supported sinks, all optional:

- ``discord``: Discord webhook, message posted as ``username``/``content``
- ``ntfy``: ntfy topic URL, message as body, title and priority as headers
- ``webhook``: any HTTP endpoint; ``body_template`` is formatted with
  ``{name}``, ``{message}`` and ``{build_id}``

Delivery is best-effort.  Failures are logged and never raised to callers.
"""

import json
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger("buildwatch.notify")

REQUEST_TIMEOUT = 30
DISPLAY_NAME = "CS:GO update watcher"

DEFAULT_BODY_TEMPLATE = json.dumps({"name": "{name}", "message": "{message}"})


def send_discord(url: str, username: str, content: str) -> None:
    response = requests.post(
        url, json={"username": username, "content": content}, timeout=REQUEST_TIMEOUT
    )
    response.raise_for_status()


def send_ntfy(config: Dict[str, Any], title: str, message: str) -> None:
    headers = {"Title": title}
    if config.get("priority"):
        headers["Priority"] = config["priority"]
    headers.update(config.get("headers") or {})
    response = requests.post(
        config["url"], data=message.encode("utf-8"), headers=headers, timeout=REQUEST_TIMEOUT
    )
    response.raise_for_status()


def send_webhook(config: Dict[str, Any], **fields: Any) -> None:
    template = config.get("body_template") or DEFAULT_BODY_TEMPLATE
    # Values are inserted into a JSON template, so escape them as JSON strings
    body = template
    for key, value in fields.items():
        body = body.replace("{" + key + "}", json.dumps(str(value))[1:-1])

    headers = {"Content-Type": "application/json"}
    headers.update(config.get("headers") or {})
    response = requests.request(
        config.get("method", "POST").upper(), config["url"],
        data=body.encode("utf-8"), headers=headers, timeout=REQUEST_TIMEOUT
    )
    response.raise_for_status()


def send_notifications(notifications: Optional[Dict[str, Any]], name: str,
                       message: str, build_id: Optional[int] = None) -> int:
    """Send *message* to every configured sink.  Returns the number delivered."""
    if not notifications:
        return 0

    delivered = 0
    senders = []
    if notifications.get("discord", {}).get("url"):
        cfg = notifications["discord"]
        senders.append(("discord", lambda: send_discord(
            cfg["url"], cfg.get("username") or name, message)))
    if notifications.get("ntfy", {}).get("url"):
        cfg_ntfy = notifications["ntfy"]
        senders.append(("ntfy", lambda: send_ntfy(cfg_ntfy, name, message)))
    if notifications.get("webhook", {}).get("url"):
        cfg_hook = notifications["webhook"]
        senders.append(("webhook", lambda: send_webhook(
            cfg_hook, name=name, message=message, build_id=build_id)))

    for sink, send in senders:
        try:
            send()
            delivered += 1
            logger.debug(f"Sent {sink} notification")
        except requests.RequestException as e:
            logger.error(f"Failed to send {sink} notification: {e}")
    return delivered


class Announcer:
    """Sends new-version announcements from a background worker.

    ``announce`` returns immediately; nothing waits on the delivery.
    """

    def __init__(self, notifications: Optional[Dict[str, Any]], name: str = DISPLAY_NAME):
        self.notifications = notifications or {}
        self.name = name
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def enabled(self) -> bool:
        return any((self.notifications.get(sink) or {}).get("url")
                   for sink in ("discord", "ntfy", "webhook"))

    def _log_failure(self, future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error(f"Failed to send new version announcement: {error}")

    def announce(self, build_id: int) -> Optional[Future]:
        if not self.enabled:
            return None
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")
        message = f"New CS:GO version released, buildid {build_id}"
        future = self._executor.submit(
            send_notifications, self.notifications, self.name, message, build_id
        )
        future.add_done_callback(self._log_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
