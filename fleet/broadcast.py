"""
Live event fan-out for scans, uploads and package jobs.

Delivery is best-effort: there is no persistence or replay, and a
subscriber that raises is dropped.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

CHANNEL_SCAN = "scan"
CHANNEL_UPLOAD = "upload"
CHANNEL_PACKAGE_JOB = "package-job"

EVENT_LOG = "log"
EVENT_PROGRESS = "progress"
EVENT_ERROR = "error"
EVENT_COMPLETE = "complete"


@dataclass
class BroadcastEvent:
    channel: str
    type: str
    message: str
    server_id: Optional[str] = None
    upload_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload = {'channel': self.channel, 'type': self.type, 'message': self.message}
        if self.server_id:
            payload['server_id'] = self.server_id
        if self.upload_id:
            payload['upload_id'] = self.upload_id
        if self.data:
            payload['data'] = self.data
        return payload


Subscriber = Callable[[BroadcastEvent], None]


class EventBroadcaster:

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber):
        with self._lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber):
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def broadcast(self, event: BroadcastEvent):
        with self._lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Dropping event subscriber {callback!r}: {e}")
                self.unsubscribe(callback)

    def emit(self, channel: str, type: str, message: str, **kwargs):
        self.broadcast(BroadcastEvent(channel=channel, type=type, message=message, **kwargs))
