"""Per-tenant fan-out of console output and status events."""
from collections import deque
import threading

DEFAULT_BUFFER_SIZE = 800


class _Room:
    def __init__(self, buffer_size):
        self.cond = threading.Condition()
        self.seq = 0
        self.events = deque(maxlen=buffer_size)
        self.clients = 0
        self.closed = False


class Subscription:
    """One viewer's cursor into a room's event ring."""

    def __init__(self, hub, tenant_id, room):
        self._hub = hub
        self.tenant_id = tenant_id
        self._room = room
        with room.cond:
            self.last_seq = room.seq
        self.active = True

    @property
    def closed(self):
        return not self.active or self._room.closed

    def wait(self, timeout=None):
        """Block until new events arrive or ``timeout`` elapses; return them in publish order."""
        room = self._room
        with room.cond:
            room.cond.wait_for(lambda: room.seq > self.last_seq or room.closed or not self.active, timeout=timeout)
            if room.seq <= self.last_seq:
                return []
            if not room.events:
                self.last_seq = room.seq
                return []
            first_available = room.events[0][0]
            if self.last_seq < first_available - 1:
                self.last_seq = first_available - 1
            pending = [(seq, event) for seq, event in room.events if seq > self.last_seq]
            if pending:
                self.last_seq = pending[-1][0]
            return [event for _, event in pending]

    def close(self):
        if not self.active:
            return
        self.active = False
        self._hub._release(self._room)


class SessionBroadcastHub:
    """Room-style multiplexer keyed by tenant id.

    Subscribers only see events published after they joined; history replay
    comes from the transcript file instead.
    """

    def __init__(self, buffer_size=DEFAULT_BUFFER_SIZE):
        self.buffer_size = max(1, int(buffer_size))
        self._lock = threading.Lock()
        self._rooms = {}

    def _room(self, tenant_id):
        with self._lock:
            room = self._rooms.get(tenant_id)
            if room is None:
                room = _Room(self.buffer_size)
                self._rooms[tenant_id] = room
            return room

    def subscribe(self, tenant_id):
        room = self._room(tenant_id)
        with room.cond:
            room.clients += 1
        return Subscription(self, tenant_id, room)

    def _release(self, room):
        with room.cond:
            room.clients = max(0, room.clients - 1)
            room.cond.notify_all()

    def publish(self, tenant_id, event_type, data):
        room = self._room(tenant_id)
        with room.cond:
            room.seq += 1
            room.events.append((room.seq, {"type": event_type, "data": data}))
            room.cond.notify_all()
        return room.seq

    def emit_output(self, tenant_id, text):
        return self.publish(tenant_id, "output", text)

    def emit_status(self, tenant_id, running):
        return self.publish(tenant_id, "status", bool(running))

    def subscriber_count(self, tenant_id):
        with self._lock:
            room = self._rooms.get(tenant_id)
        if room is None:
            return 0
        with room.cond:
            return room.clients

    def close_room(self, tenant_id):
        """Wake and detach every subscriber of a removed tenant."""
        with self._lock:
            room = self._rooms.pop(tenant_id, None)
        if room is None:
            return
        with room.cond:
            room.closed = True
            room.cond.notify_all()
