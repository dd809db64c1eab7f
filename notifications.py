"""
Notification bridge: native desktop notifications plus a broadcast fan-out
to connected UI clients (served as server-sent events by meetingwatchd).

Desktop notifiers cannot report clicks back to a headless daemon, so click
and close are relayed by the UI through ``click(id)`` / ``close(id)``. Each
notification resolves at most once.
"""

import asyncio
import json
import logging
import shutil
import subprocess
import sys
import uuid
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

BROADCAST_QUEUE_SIZE = 100


def desktop_notify(title: str, body: str) -> bool:
    """Show a notification with the platform's command-line notifier."""
    if sys.platform == "darwin":
        script = f"display notification {json.dumps(body, ensure_ascii=False)} with title {json.dumps(title, ensure_ascii=False)}"
        cmd = ["osascript", "-e", script]
    elif shutil.which("notify-send"):
        cmd = ["notify-send", "--app-name=meetingwatch", title, body]
    else:
        logger.info(f"Notification: {title} - {body}")
        return False
    try:
        result = subprocess.run(cmd, capture_output=True, timeout=5)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.debug(f"Desktop notification failed: {e}")
        return False


class NotificationBridge:
    def __init__(self, notifier: Optional[Callable[[str, str], Any]] = None):
        self._notifier = notifier or desktop_notify
        self._pending: dict[str, dict] = {}
        self._subscribers: set[asyncio.Queue] = set()
        self._tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------
    # Native notifications
    # -------------------------------------------------------------------

    def show_native_notification(
        self,
        title: str,
        body: str,
        on_click: Optional[Callable[[], Any]] = None,
        on_close: Optional[Callable[[], Any]] = None,
    ) -> str:
        notification_id = uuid.uuid4().hex[:12]
        self._pending[notification_id] = {
            "title": title,
            "body": body,
            "on_click": on_click,
            "on_close": on_close,
        }
        self._dispatch(title, body)
        self.broadcast("notification", {"id": notification_id, "title": title, "body": body})
        return notification_id

    def _dispatch(self, title: str, body: str) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._safe_notify(title, body)
            return
        task = asyncio.create_task(asyncio.to_thread(self._safe_notify, title, body))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _safe_notify(self, title: str, body: str) -> None:
        try:
            self._notifier(title, body)
        except Exception as e:
            logger.warning(f"Native notification failed: {e}")

    @property
    def pending(self) -> dict[str, dict]:
        return dict(self._pending)

    def click(self, notification_id: str) -> bool:
        return self._resolve(notification_id, "on_click")

    def close(self, notification_id: str) -> bool:
        return self._resolve(notification_id, "on_close")

    def _resolve(self, notification_id: str, which: str) -> bool:
        entry = self._pending.pop(notification_id, None)
        if entry is None:
            return False
        callback = entry[which]
        if callback is not None:
            try:
                callback()
            except Exception as e:
                logger.error(f"Notification {which} handler failed: {e}", exc_info=True)
        return True

    # -------------------------------------------------------------------
    # UI broadcast
    # -------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=BROADCAST_QUEUE_SIZE)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def broadcast(self, channel: str, payload: dict) -> None:
        message = {"channel": channel, "payload": payload}
        logger.debug(f"Broadcast {channel}")
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(f"UI subscriber queue full, dropping {channel}")
