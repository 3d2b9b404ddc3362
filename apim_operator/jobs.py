"""
Orchestration of one-shot batch jobs for the backup and restore kinds.

A run is split in two phases. The main phase is a step sequence that ends by
setting the mainStepsCompleted marker. The post phase deletes every job of the
run and only sets completed (with completionTime) once a cleanup pass finds no
job left.
"""

# Standard
from enum import Enum
from typing import Any, Callable, Iterable, List, Optional
import copy
import re
import time

# First Party
import alog

# Local
from . import config
from .client import ConvergenceClientBase, PropagationPolicy
from .exceptions import AlreadyExistsError, PollTimeoutError, assert_config
from .reconcile import ReconciliationResult, result_from_step
from .session import Session
from .steps import CONTINUE, Step, StepResult, StepSequencer, requeue_after, requeue_now
from .utils import nested_get, now_timestamp, resource_key

log = alog.use_channel("JOBS")

## Status markers ##############################################################

START_TIME_FIELD = "startTime"
MAIN_STEPS_COMPLETED_FIELD = "mainStepsCompleted"
COMPLETED_FIELD = "completed"
COMPLETION_TIME_FIELD = "completionTime"

JOB_KIND = "Job"
JOB_API_VERSION = "batch/v1"

_DNS1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

## Job state ###################################################################


class JobState(Enum):
    """Lifecycle of a single batch job as seen by the orchestrator"""

    MISSING = "missing"
    RUNNING = "running"
    SUCCEEDED = "succeeded"


def job_state(job: Optional[dict]) -> JobState:
    """Classify a job. Failed pods do not make a job terminal: the job keeps
    running until the number of successful completions is reached.
    """
    if job is None:
        return JobState.MISSING
    completions = nested_get(job, "spec.completions", 1)
    if completions is None:
        completions = 1
    succeeded = nested_get(job, "status.succeeded", 0) or 0
    if succeeded == completions:
        return JobState.SUCCEEDED
    return JobState.RUNNING


def uid_based_job_name(prefix: str, uid: str) -> str:
    """Name a job after the object that runs it so that names never collide
    across runs

    Raises:
        ConfigError: If the result is not a valid DNS-1123 label
    """
    job_name = f"{prefix}-{uid}"
    assert_config(
        len(job_name) <= 63 and _DNS1123_LABEL.match(job_name) is not None,
        f"Error generating UID-based Job name: '{job_name}'",
    )
    return job_name


def poll_until(
    predicate: Callable[[], Any],
    interval: float,
    timeout: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """Call the predicate every interval seconds until it returns a truthy
    value or the timeout elapses

    Args:
        predicate:  Callable[[], Any]
            Function evaluated on every attempt
        interval:  float
            Seconds between attempts
        timeout:  float
            Seconds after which the wait gives up
        sleep:  Callable[[float], None]
            Function used to wait between attempts
        clock:  Callable[[], float]
            Monotonic clock used to measure the timeout

    Returns:
        result:  Any
            The first truthy value returned by the predicate

    Raises:
        PollTimeoutError: If the predicate never returned a truthy value
    """
    deadline = clock() + timeout
    while True:
        result = predicate()
        if result:
            return result
        if clock() + interval > deadline:
            raise PollTimeoutError(f"Condition not met within {timeout} seconds")
        log.debug3("Condition not met. Retrying in %s seconds", interval)
        sleep(interval)


## JobOrchestrator #############################################################


class JobOrchestrator:
    """Drives the main and post phases of a backup or restore run"""

    def __init__(self, client: ConvergenceClientBase, session: Session):
        """
        Args:
            client:  ConvergenceClientBase
                The client used for the jobs and their dependencies
            session:  Session
                The session of the backup or restore object
        """
        self.client = client
        self.session = session

    ## Building blocks #########################################################

    def ensure_created(self, manifest: dict) -> bool:
        """Create the object (owned by the session object) unless it exists

        Returns:
            created:  bool
                True if this call created the object
        """
        manifest = copy.deepcopy(manifest)
        metadata = manifest.setdefault("metadata", {})
        metadata.setdefault("namespace", self.session.namespace)
        existing = self.client.get(
            manifest["kind"],
            metadata.get("name"),
            namespace=metadata.get("namespace"),
            api_version=manifest.get("apiVersion"),
        )
        if existing is not None:
            return False
        try:
            self.client.create(self.session.own(manifest))
        except AlreadyExistsError:
            log.debug2("%s created concurrently", resource_key(manifest))
            return False
        log.info("Created %s", resource_key(manifest))
        return True

    def ensure_job(self, job_manifest: dict) -> StepResult:
        """Create the job if needed and wait for it to succeed"""
        metadata = job_manifest["metadata"]
        job = self.client.get(
            JOB_KIND,
            metadata["name"],
            namespace=metadata.get("namespace"),
            api_version=JOB_API_VERSION,
        )
        state = job_state(job)
        if state is JobState.MISSING:
            self.ensure_created(job_manifest)
            return requeue_after(config.job_poll_seconds)
        if state is JobState.RUNNING:
            log.info(
                "Job %s not finished. Active: %s, failed: %s",
                metadata["name"],
                nested_get(job, "status.active", 0),
                nested_get(job, "status.failed", 0),
            )
            failed = nested_get(job, "status.failed", 0) or 0
            if failed > 0:
                log.warning(
                    "Job %s has %s failed pod(s). Waiting for it to succeed",
                    metadata["name"],
                    failed,
                )
            return requeue_after(config.job_poll_seconds)
        log.debug2("Job %s succeeded", metadata["name"])
        return CONTINUE

    def cleanup_jobs(self, job_manifests: Iterable[dict]) -> StepResult:
        """Delete every job of the run with foreground propagation"""
        deleted_any = False
        for job_manifest in job_manifests:
            metadata = job_manifest["metadata"]
            job = self.client.get(
                JOB_KIND,
                metadata["name"],
                namespace=metadata.get("namespace"),
                api_version=JOB_API_VERSION,
            )
            if job is None:
                continue
            log.info("Deleting job %s", metadata["name"])
            self.client.delete(job, propagation_policy=PropagationPolicy.FOREGROUND)
            deleted_any = True
        if deleted_any:
            return requeue_after(config.job_poll_seconds)
        return CONTINUE

    def job_steps(self, job_manifests: Iterable[dict]) -> List[Step]:
        """One step per job, waiting for each to succeed before the next"""
        return [
            Step(
                f"job-{job_manifest['metadata']['name']}",
                lambda session, job_manifest=job_manifest: self.ensure_job(
                    job_manifest
                ),
            )
            for job_manifest in job_manifests
        ]

    ## Phases ##################################################################

    def reconcile(
        self, main_steps: StepSequencer, job_manifests: List[dict]
    ) -> ReconciliationResult:
        """Advance the run by one pass

        Args:
            main_steps:  StepSequencer
                The steps of the main phase. The mainStepsCompleted marker is
                set after all of them report done.
            job_manifests:  List[dict]
                Every job of the run, deleted in the post phase

        Returns:
            result:  ReconciliationResult
                The result of this pass
        """
        session = self.session
        if session.get_status_field(COMPLETED_FIELD):
            log.info("%s completed. End of reconciliation", resource_key(session.manifest))
            return ReconciliationResult(requeue=False)

        if not session.get_status_field(MAIN_STEPS_COMPLETED_FIELD):
            log.info("Reconciling main steps of %s", resource_key(session.manifest))
            steps = StepSequencer(
                main_steps.steps
                + [Step(MAIN_STEPS_COMPLETED_FIELD, self._set_main_steps_completed)],
                name=main_steps.name,
            )
            result = steps.run(session)
            if result.requeue:
                return result_from_step(result)
            return result_from_step(requeue_after(config.job_poll_seconds))

        log.info("Reconciling post steps of %s", resource_key(session.manifest))
        post_steps = StepSequencer(
            [
                Step("cleanup-jobs", lambda _: self.cleanup_jobs(job_manifests)),
                Step(COMPLETED_FIELD, self._set_completed),
            ],
            name="post",
        )
        return result_from_step(post_steps.run(session))

    ## Implementation Details ##################################################

    @staticmethod
    def _set_main_steps_completed(session: Session) -> Optional[StepResult]:
        if session.get_status_field(MAIN_STEPS_COMPLETED_FIELD):
            return None
        session.set_status_fields(**{MAIN_STEPS_COMPLETED_FIELD: True})
        return requeue_now()

    @staticmethod
    def _set_completed(session: Session) -> Optional[StepResult]:
        if session.get_status_field(COMPLETED_FIELD):
            return None
        session.set_status_fields(
            **{COMPLETED_FIELD: True, COMPLETION_TIME_FIELD: now_timestamp()}
        )
        return None


def set_start_time(session: Session) -> Optional[StepResult]:
    """Step recording the start of the run"""
    if session.get_status_field(START_TIME_FIELD):
        return None
    session.set_status_fields(**{START_TIME_FIELD: now_timestamp()})
    return requeue_now()
