"""
The ControllerRunner wires watches, the work queue and reconcile workers
together for one reconciler.

Each watch runs in its own thread and turns events into ReconcileRequests,
either directly (events on the reconciled kind) or through a mapper such as
the OwnershipTracker (events on owned objects). Worker threads take keys from
the queue, call safe_reconcile and schedule the key again as the result asks.
"""

# Standard
from dataclasses import dataclass
from typing import Callable, List, Optional
import threading

# First Party
import alog

# Local
from . import config
from .client import KubeWatchEvent
from .managed_object import ManagedObject
from .reconcile import ReconcilerBase, ReconciliationResult
from .work_queue import ReconcileQueue, ReconcileRequest

log = alog.use_channel("RUNNER")

# Signature of a function mapping a watched object to requests
EVENT_MAPPER = Callable[[ManagedObject], List[ReconcileRequest]]

# Seconds a worker waits on an empty queue before checking for shutdown
WORKER_POLL_SECONDS = 0.5


def direct_mapper(obj: ManagedObject) -> List[ReconcileRequest]:
    """Map an event on the reconciled kind to a request for the object itself"""
    return [ReconcileRequest(obj.name, obj.namespace)]


@dataclass
class WatchSpec:
    """One watch feeding the runner's queue"""

    kind: str
    api_version: Optional[str] = None
    namespace: Optional[str] = None
    label_selector: Optional[str] = None
    mapper: EVENT_MAPPER = direct_mapper


class ControllerRunner:
    """Runs the watch and worker threads for a single reconciler"""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        reconciler: ReconcilerBase,
        watches: List[WatchSpec],
        workers: Optional[int] = None,
        watch_timeout: Optional[float] = None,
        name: str = "runner",
    ):
        """
        Args:
            reconciler:  ReconcilerBase
                The reconciler handed every key
            watches:  List[WatchSpec]
                The watches feeding the queue
            workers:  Optional[int]
                Number of worker threads (defaults to config.runner.workers)
            watch_timeout:  Optional[float]
                Seconds before a watch stream is restarted (defaults to
                config.runner.watch_timeout_seconds)
            name:  str
                Name used for the queue and the threads
        """
        self.reconciler = reconciler
        self.watches = list(watches)
        self.workers = workers if workers is not None else config.runner.workers
        self.watch_timeout = (
            watch_timeout
            if watch_timeout is not None
            else config.runner.watch_timeout_seconds
        )
        self.name = name
        self.queue = ReconcileQueue(name=f"{name}_queue")
        self.shutdown = threading.Event()
        self._threads = []

    ## Lifecycle ###############################################################

    def start(self):
        """Start every watch and worker thread"""
        log.info(
            "Starting %s with %d watch(es) and %d worker(s)",
            self.name,
            len(self.watches),
            self.workers,
        )
        for watch in self.watches:
            self._start_thread(
                f"{self.name}_watch_{watch.kind}", self._run_watch, watch
            )
        for idx in range(self.workers):
            self._start_thread(f"{self.name}_worker_{idx}", self._run_worker)

    def stop(self, timeout: Optional[float] = None):
        """Signal every thread to stop and wait for the workers"""
        log.info("Stopping %s", self.name)
        self.shutdown.set()
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []

    ## Event and key handling ##################################################

    def handle_event(self, watch: WatchSpec, event: KubeWatchEvent):
        """Turn a watch event into queued requests"""
        requests = watch.mapper(event.resource)
        log.debug2(
            "Event %s on %s/%s mapped to %s",
            event.type.value,
            event.resource.kind,
            event.resource.name,
            [str(request) for request in requests],
        )
        for request in requests:
            self.queue.add(request)

    def process_next(
        self, timeout: Optional[float] = None
    ) -> Optional[ReconciliationResult]:
        """Reconcile the next key in the queue

        Returns:
            result:  Optional[ReconciliationResult]
                The result of the reconcile, None if no key was available
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return None
        try:
            result = self.reconciler.safe_reconcile(key)
        finally:
            self.queue.done(key)
        self.handle_result(key, result)
        return result

    def handle_result(self, key: ReconcileRequest, result: ReconciliationResult):
        """Schedule the key again if the result asks for it"""
        if result.exception is not None:
            log.warning("Reconcile of %s failed: %s", key, result.exception)
        if result.requeue:
            log.debug(
                "Requeueing %s after %s", key, result.requeue_params.requeue_after
            )
            self.queue.add_after(key, result.requeue_params.requeue_after)

    ## Implementation Details ##################################################

    def _start_thread(self, name: str, target: Callable, *args):
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _run_watch(self, watch: WatchSpec):
        client = self.reconciler.client
        while not self.shutdown.is_set():
            log.debug("Starting watch of %s", watch.kind)
            for event in client.watch_objects(
                watch.kind,
                api_version=watch.api_version,
                namespace=watch.namespace,
                label_selector=watch.label_selector,
                timeout=self.watch_timeout,
            ):
                if self.shutdown.is_set():
                    break
                self.handle_event(watch, event)

    def _run_worker(self):
        while not self.shutdown.is_set():
            self.process_next(timeout=WORKER_POLL_SECONDS)
