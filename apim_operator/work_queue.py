"""
The ReconcileQueue is the de-duplicating work queue that sits between the
watches and the reconcile workers.

* Adding a key that is already pending collapses into the pending entry
* A key that is being processed is not handed to a second worker. If it is
  added while in flight it is re-queued when the worker calls done()
* Delayed adds share a single timer thread backed by a heap
"""

# Standard
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from heapq import heappop, heappush
from typing import Optional, Union
import itertools
import threading

# First Party
import alog

log = alog.use_channel("WQUEUE")

# Minimum wait of the timer loop
MIN_SLEEP_TIME = 0.001


@dataclass(frozen=True)
class ReconcileRequest:
    """The key identifying one managed object to reconcile"""

    name: str
    namespace: Optional[str] = None

    def __str__(self):
        return f"{self.namespace}/{self.name}"


class ReconcileQueue:
    """Thread safe de-duplicating work queue"""

    def __init__(self, name: str = "reconcile_queue"):
        self.name = name
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._shutting_down = False
        self._condition = threading.Condition()

        # Delayed adds
        self._timer_heap = []
        self._timer_sequence = itertools.count()
        self._timer_condition = threading.Condition()
        self._timer_thread = None

    ## Public Interface ########################################################

    def add(self, key: ReconcileRequest):
        """Mark the key as needing a reconcile"""
        with self._condition:
            if self._shutting_down:
                log.debug2("Ignoring add of %s after shutdown", key)
                return
            if key in self._dirty:
                log.debug3("Collapsing duplicate add of %s", key)
                return
            self._dirty.add(key)
            if key in self._processing:
                log.debug3("Deferring add of in-flight key %s", key)
                return
            self._queue.append(key)
            self._condition.notify()

    def add_after(self, key: ReconcileRequest, delay: Union[float, timedelta]):
        """Add the key once the delay has passed"""
        if isinstance(delay, timedelta):
            delay = delay.total_seconds()
        if delay <= 0:
            self.add(key)
            return
        due = datetime.now() + timedelta(seconds=delay)
        log.debug2("Scheduling %s at %s", key, due)
        with self._timer_condition:
            if self._shutting_down:
                return
            heappush(self._timer_heap, (due, next(self._timer_sequence), key))
            self._ensure_timer_thread()
            self._timer_condition.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[ReconcileRequest]:
        """Block until a key is available and mark it in flight

        Returns:
            key:  Optional[ReconcileRequest]
                The next key, or None on timeout or shutdown
        """
        with self._condition:
            if not self._condition.wait_for(
                lambda: self._queue or self._shutting_down, timeout=timeout
            ):
                return None
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: ReconcileRequest):
        """Release an in-flight key, re-queueing it if it was added meanwhile"""
        with self._condition:
            self._processing.discard(key)
            if key in self._dirty:
                log.debug3("Re-queueing %s added while in flight", key)
                self._queue.append(key)
                self._condition.notify()

    def shutdown(self):
        """Stop handing out keys and wake every waiter"""
        with self._condition:
            self._shutting_down = True
            self._condition.notify_all()
        with self._timer_condition:
            self._timer_heap.clear()
            self._timer_condition.notify_all()
        if self._timer_thread is not None:
            self._timer_thread.join()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self):
        with self._condition:
            return len(self._queue)

    ## Implementation Details ##################################################

    def _ensure_timer_thread(self):
        if self._timer_thread is None:
            self._timer_thread = threading.Thread(
                target=self._run_timer, name=f"{self.name}_timer", daemon=True
            )
            self._timer_thread.start()

    def _run_timer(self):
        """Sleep until the next delayed add is due and release it"""
        while True:
            ready = []
            with self._timer_condition:
                if self._shutting_down:
                    return
                if self._timer_heap:
                    wait_time = max(
                        (self._timer_heap[0][0] - datetime.now()).total_seconds(),
                        MIN_SLEEP_TIME,
                    )
                else:
                    wait_time = None
                self._timer_condition.wait(timeout=wait_time)
                while self._timer_heap and self._timer_heap[0][0] <= datetime.now():
                    ready.append(heappop(self._timer_heap)[2])
            for key in ready:
                log.debug2("Timer releasing %s", key)
                self.add(key)
