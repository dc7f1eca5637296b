import json
import logging
import queue
import threading

logger = logging.getLogger(__name__)

KEEPALIVE_SEC = 15.0
SUBSCRIBER_QUEUE_SIZE = 64


def format_event(event, payload):
    data = json.dumps(payload, ensure_ascii=False)
    return f"event: {event}\ndata: {data}\n\n"


class EventBroadcaster:
    """
    Fan-out of named full-snapshot events to every open /events stream.

    Delivery is best effort: a subscriber whose queue is full (slow or gone) is dropped
    from the set instead of blocking the broadcast for everyone else.
    """

    def __init__(self, queue_size=SUBSCRIBER_QUEUE_SIZE):
        self.queue_size = queue_size
        self._subscribers = set()
        self._lock = threading.Lock()

    def __len__(self):
        with self._lock:
            return len(self._subscribers)

    def subscribe(self):
        q = queue.Queue(maxsize=self.queue_size)
        with self._lock:
            self._subscribers.add(q)
        return q

    def unsubscribe(self, q):
        with self._lock:
            self._subscribers.discard(q)

    def publish(self, event, payload):
        message = format_event(event, payload)
        with self._lock:
            subscribers = list(self._subscribers)
        dropped = 0
        for q in subscribers:
            try:
                q.put_nowait(message)
            except queue.Full:
                self.unsubscribe(q)
                dropped += 1
        if dropped:
            logger.info(f"Dropped {dropped} stalled event subscriber(s)")
        return len(subscribers) - dropped

    def stream(self, q, initial=(), keepalive=KEEPALIVE_SEC):
        """Generator body for a text/event-stream response."""
        try:
            for event, payload in initial:
                yield format_event(event, payload)
            while True:
                try:
                    yield q.get(timeout=keepalive)
                except queue.Empty:
                    yield ": keepalive\n\n"
        finally:
            self.unsubscribe(q)


broadcaster = EventBroadcaster()
