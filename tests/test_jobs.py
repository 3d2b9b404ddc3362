"""
Tests for the batch job orchestration
"""

# Standard
import datetime

# Third Party
import pytest

# First Party
import alog

# Local
from apim_operator import constants
from apim_operator.exceptions import ConfigError, PollTimeoutError
from apim_operator.jobs import (
    COMPLETED_FIELD,
    COMPLETION_TIME_FIELD,
    JOB_KIND,
    MAIN_STEPS_COMPLETED_FIELD,
    START_TIME_FIELD,
    JobOrchestrator,
    JobState,
    job_state,
    poll_until,
    set_start_time,
    uid_based_job_name,
)
from apim_operator.steps import Step, StepSequencer
from apim_operator.test_helpers.helpers import (
    TEST_NAMESPACE,
    MockClient,
    complete_job,
    configure_logging,
    make_job,
    setup_cr,
    setup_session,
)

configure_logging()
log = alog.use_channel("TEST")

POLL_DELAY = datetime.timedelta(seconds=5)

## Helpers #####################################################################


class FakeClock:
    """Clock and sleep pair that advances time only when sleeping"""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def setup_backup_session(client=None):
    return setup_session(
        manifest=setup_cr(
            kind=constants.APIMANAGER_BACKUP_KIND, name="backup", annotations={}
        ),
        client=client or MockClient(),
    )


def job_names(session, *prefixes):
    return [uid_based_job_name(prefix, session.uid) for prefix in prefixes]


## job_state ###################################################################


@pytest.mark.parametrize(
    ["job", "expected"],
    [
        (None, JobState.MISSING),
        ({"spec": {"completions": 1}}, JobState.RUNNING),
        ({"spec": {"completions": 1}, "status": {"failed": 3}}, JobState.RUNNING),
        ({"spec": {"completions": 2}, "status": {"succeeded": 1}}, JobState.RUNNING),
        ({"spec": {"completions": 2}, "status": {"succeeded": 2}}, JobState.SUCCEEDED),
        ({"spec": {"completions": None}, "status": {"succeeded": 1}}, JobState.SUCCEEDED),
        ({"spec": {}, "status": {"succeeded": 1}}, JobState.SUCCEEDED),
    ],
)
def test_job_state(job, expected):
    assert job_state(job) is expected


## uid_based_job_name ##########################################################


def test_uid_based_job_name():
    assert uid_based_job_name("backup-secrets", "1234-abcd") == "backup-secrets-1234-abcd"


@pytest.mark.parametrize(
    ["prefix", "uid"],
    [("Backup", "1234"), ("backup", "x" * 60), ("backup_secrets", "1234")],
)
def test_uid_based_job_name_invalid(prefix, uid):
    with pytest.raises(ConfigError):
        uid_based_job_name(prefix, uid)


## poll_until ##################################################################


def test_poll_until_returns_first_truthy():
    fake = FakeClock()
    results = iter([None, {}, {"found": True}])
    result = poll_until(
        lambda: next(results), interval=2, timeout=10, sleep=fake.sleep, clock=fake.clock
    )
    assert result == {"found": True}
    assert fake.sleeps == [2, 2]


def test_poll_until_times_out():
    fake = FakeClock()
    with pytest.raises(PollTimeoutError):
        poll_until(
            lambda: None, interval=2, timeout=5, sleep=fake.sleep, clock=fake.clock
        )
    assert fake.sleeps == [2, 2]


## Building blocks #############################################################


def test_ensure_created_owns_object():
    session = setup_backup_session()
    orchestrator = JobOrchestrator(session.client, session)
    manifest = {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": "apimanager-backup"},
    }
    assert orchestrator.ensure_created(manifest)
    assert not orchestrator.ensure_created(manifest)
    stored = session.client.get_obj("ServiceAccount", "apimanager-backup")
    assert stored["metadata"]["ownerReferences"][0]["uid"] == session.uid
    assert session.client.create.call_count == 2


def test_ensure_job_waits_for_success():
    session = setup_backup_session()
    client = session.client
    orchestrator = JobOrchestrator(client, session)
    job = make_job("backup-job")

    result = orchestrator.ensure_job(job)
    assert result.requeue and result.requeue_after == POLL_DELAY
    assert client.has_obj(JOB_KIND, "backup-job")

    # Failed pods keep the job running
    client.set_status_fields(JOB_KIND, "backup-job", TEST_NAMESPACE, failed=2)
    result = orchestrator.ensure_job(job)
    assert result.requeue and result.requeue_after == POLL_DELAY

    complete_job(client, "backup-job")
    assert not orchestrator.ensure_job(job).requeue


def test_cleanup_jobs():
    session = setup_backup_session()
    client = session.client
    orchestrator = JobOrchestrator(client, session)
    jobs = [make_job("job-a"), make_job("job-b")]
    client.create(jobs[0])

    result = orchestrator.cleanup_jobs(jobs)
    assert result.requeue and result.requeue_after == POLL_DELAY
    assert not client.has_obj(JOB_KIND, "job-a")
    assert client.delete.call_count == 1

    assert not orchestrator.cleanup_jobs(jobs).requeue


def test_set_start_time_once():
    session = setup_backup_session()
    assert set_start_time(session).requeue
    start_time = session.get_status_field(START_TIME_FIELD)
    assert start_time
    assert set_start_time(session) is None
    assert session.get_status_field(START_TIME_FIELD) == start_time


## Phases ######################################################################


def test_orchestrator_phases():
    """Jobs run in order, then every job is deleted, then the run completes"""
    session = setup_backup_session()
    client = session.client
    orchestrator = JobOrchestrator(client, session)
    first, second = job_names(session, "backup-secrets", "backup-apimanager")
    jobs = [make_job(first), make_job(second)]

    def run():
        main_steps = StepSequencer(orchestrator.job_steps(jobs), name="backup")
        return orchestrator.reconcile(main_steps, jobs)

    # First job created
    result = run()
    assert result.requeue
    assert result.requeue_params.requeue_after == POLL_DELAY
    assert client.has_obj(JOB_KIND, first)
    assert not client.has_obj(JOB_KIND, second)

    # Second job only starts once the first succeeded
    assert run().requeue
    assert not client.has_obj(JOB_KIND, second)
    complete_job(client, first)
    assert run().requeue
    assert client.has_obj(JOB_KIND, second)

    # Marker set once every job succeeded
    complete_job(client, second)
    result = run()
    assert result.requeue
    assert result.requeue_params.requeue_after == datetime.timedelta(0)
    assert session.get_status_field(MAIN_STEPS_COMPLETED_FIELD)
    assert not session.get_status_field(COMPLETED_FIELD)

    # Cleanup pass deletes the jobs without completing
    result = run()
    assert result.requeue
    assert not client.has_obj(JOB_KIND, first)
    assert not client.has_obj(JOB_KIND, second)
    assert not session.get_status_field(COMPLETED_FIELD)

    # Next pass finds no job and completes
    result = run()
    assert not result.requeue
    assert session.get_status_field(COMPLETED_FIELD)
    assert session.get_status_field(COMPLETION_TIME_FIELD)

    # Completed runs do nothing
    client.reset_counts()
    assert not run().requeue
    assert client.write_count() == 0


def test_orchestrator_main_step_requeue_stops_phase():
    session = setup_backup_session()
    orchestrator = JobOrchestrator(session.client, session)
    calls = []

    def waiting(_):
        calls.append("waiting")
        return orchestrator.ensure_job(make_job("never-done"))

    main_steps = StepSequencer(
        [Step("waiting", waiting), Step("after", lambda _: calls.append("after"))]
    )
    result = orchestrator.reconcile(main_steps, [])
    assert result.requeue
    assert calls == ["waiting"]
    assert not session.get_status_field(MAIN_STEPS_COMPLETED_FIELD)
