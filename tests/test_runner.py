"""
Tests for the threaded ControllerRunner
"""

# Standard
import datetime
import time

# First Party
import alog

# Local
from apim_operator import constants
from apim_operator.client import KubeEventType, KubeWatchEvent
from apim_operator.managed_object import ManagedObject
from apim_operator.ownership import OwnershipTracker
from apim_operator.reconcile import (
    ReconcilerBase,
    ReconciliationResult,
    RequeueParams,
)
from apim_operator.runner import ControllerRunner, WatchSpec
from apim_operator.test_helpers.helpers import (
    TEST_INSTANCE_NAME,
    TEST_NAMESPACE,
    MockClient,
    configure_logging,
    make_deployment,
    setup_cr,
)
from apim_operator.work_queue import ReconcileRequest

configure_logging()
log = alog.use_channel("TEST")

REQUEST = ReconcileRequest(TEST_INSTANCE_NAME, TEST_NAMESPACE)

## Helpers #####################################################################


class RecordingReconciler(ReconcilerBase):
    """Reconciler that records its requests and returns canned results"""

    def __init__(self, client, results=None, error=None):
        super().__init__(client)
        self.results = list(results or [])
        self.error = error
        self.requests = []

    def reconcile(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.results:
            return self.results.pop(0)
        return ReconciliationResult(requeue=False)


def make_event(manifest, event_type=KubeEventType.MODIFIED):
    return KubeWatchEvent(event_type, ManagedObject(manifest))


def make_runner(reconciler, watches=None):
    return ControllerRunner(
        reconciler,
        watches or [WatchSpec(constants.APIMANAGER_KIND)],
        workers=1,
        watch_timeout=0.2,
    )


## Events ######################################################################


def test_handle_event_direct():
    runner = make_runner(RecordingReconciler(MockClient()))
    watch = runner.watches[0]
    runner.handle_event(watch, make_event(setup_cr()))
    runner.handle_event(watch, make_event(setup_cr()))
    assert len(runner.queue) == 1
    assert runner.queue.get(timeout=0) == REQUEST
    runner.queue.shutdown()


def test_handle_event_owned_object():
    client = MockClient()
    owner = client.create(setup_cr())
    tracker = OwnershipTracker(
        client, constants.APPS_GROUP, constants.APIMANAGER_KIND
    )
    watch = WatchSpec("Deployment", api_version="apps/v1", mapper=tracker.map_event)
    runner = make_runner(RecordingReconciler(client), [watch])

    runner.handle_event(watch, make_event(make_deployment("backend", owner=owner)))
    runner.handle_event(watch, make_event(make_deployment("unowned")))
    assert len(runner.queue) == 1
    assert runner.queue.get(timeout=0) == REQUEST
    runner.queue.shutdown()


## Keys ########################################################################


def test_process_next_empty():
    runner = make_runner(RecordingReconciler(MockClient()))
    assert runner.process_next(timeout=0) is None
    runner.queue.shutdown()


def test_process_next_done():
    reconciler = RecordingReconciler(MockClient())
    runner = make_runner(reconciler)
    runner.queue.add(REQUEST)
    result = runner.process_next(timeout=0)
    assert not result.requeue
    assert reconciler.requests == [REQUEST]
    assert len(runner.queue) == 0
    runner.queue.shutdown()


def test_process_next_requeue_now():
    reconciler = RecordingReconciler(
        MockClient(),
        results=[
            ReconciliationResult(
                requeue=True,
                requeue_params=RequeueParams(requeue_after=datetime.timedelta(0)),
            )
        ],
    )
    runner = make_runner(reconciler)
    runner.queue.add(REQUEST)
    assert runner.process_next(timeout=0).requeue
    assert len(runner.queue) == 1
    assert runner.process_next(timeout=0) is not None
    assert reconciler.requests == [REQUEST, REQUEST]
    runner.queue.shutdown()


def test_process_next_requeue_later():
    reconciler = RecordingReconciler(
        MockClient(),
        results=[
            ReconciliationResult(
                requeue=True,
                requeue_params=RequeueParams(
                    requeue_after=datetime.timedelta(seconds=0.2)
                ),
            )
        ],
    )
    runner = make_runner(reconciler)
    runner.queue.add(REQUEST)
    runner.process_next(timeout=0)
    assert len(runner.queue) == 0
    assert runner.queue.get(timeout=5) == REQUEST
    runner.queue.shutdown()


def test_process_next_error_is_requeued():
    reconciler = RecordingReconciler(MockClient(), error=ValueError("boom"))
    runner = make_runner(reconciler)
    runner.queue.add(REQUEST)
    result = runner.process_next(timeout=0)
    assert result.requeue
    assert isinstance(result.exception, ValueError)
    assert len(runner.queue) == 0
    runner.queue.shutdown()


## Lifecycle ###################################################################


def test_start_reconciles_existing_objects():
    client = MockClient()
    client.create(setup_cr())
    reconciler = RecordingReconciler(client)
    runner = make_runner(reconciler)
    runner.start()
    try:
        deadline = time.time() + 5
        while not reconciler.requests and time.time() < deadline:
            time.sleep(0.05)
    finally:
        runner.stop(timeout=5)
    assert reconciler.requests[0] == REQUEST
    assert runner.queue.shutting_down
