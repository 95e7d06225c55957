"""Fan-out of accepted transitions to live observers.

An observer is any object with a ``deliver(event)`` method. The default
channel is a bounded queue drained by the SSE view; a channel that raises on
delivery (closed, or full because its reader stopped) is dropped.
"""

import json
import logging
import queue
import threading
from dataclasses import dataclass, asdict, field
from typing import Optional

log = logging.getLogger(__name__)


class ChannelClosed(Exception):
    pass


@dataclass(frozen=True)
class ProductionUpdate:
    device_serial: str
    stage: str
    status: str
    stage_logs: list = field(default_factory=list)
    type: str = 'production_update'

    @classmethod
    def from_update(cls, update) -> 'ProductionUpdate':
        return cls(
            device_serial=update.device_serial,
            stage=update.stage,
            status=update.status,
            stage_logs=list(update.state_logs),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class QueueChannel:
    def __init__(self, maxsize: int = 100):
        self._queue = queue.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event) -> None:
        if self.closed:
            raise ChannelClosed('channel is closed')
        self._queue.put_nowait(event)

    def get(self, timeout: Optional[float] = None):
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self.closed = True


class Broadcaster:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._observers = []
        self._lock = threading.Lock()

    def subscribe(self, channel=None):
        """Register an observer and return it as the unsubscribe handle."""
        if channel is None:
            channel = QueueChannel(self.queue_size)
        with self._lock:
            self._observers.append(channel)
            count = len(self._observers)
        log.info('Observer connected, %d connected', count)
        return channel

    def unsubscribe(self, channel) -> bool:
        with self._lock:
            try:
                self._observers.remove(channel)
            except ValueError:
                return False
            count = len(self._observers)
        close = getattr(channel, 'close', None)
        if close is not None:
            close()
        log.info('Observer disconnected, %d remaining', count)
        return True

    def publish(self, event) -> int:
        """Deliver ``event`` to every observer, returning how many accepted it.

        Never raises; observers whose delivery fails are unsubscribed.
        """
        with self._lock:
            observers = list(self._observers)
        delivered = 0
        for channel in observers:
            try:
                channel.deliver(event)
            except Exception:
                log.warning('Dropping observer %r after failed delivery', channel, exc_info=True)
                try:
                    self.unsubscribe(channel)
                except Exception:
                    log.exception('Error while closing observer %r', channel)
                continue
            delivered += 1
        return delivered

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)
