"""
Reconciler for the APIManagerBackup kind. A backup copies the secrets, config
maps, the APIManager object and the system file storage of one installation
to a destination volume by running one job per kind of data.
"""

# Standard
from typing import List, Optional
import abc

# First Party
import alog

# Local
from . import constants
from .client import ConvergenceClientBase
from .exceptions import ConflictError, assert_precondition
from .jobs import COMPLETED_FIELD, START_TIME_FIELD, JobOrchestrator
from .reconcile import (
    ReconcilerBase,
    ReconciliationResult,
    ReconcileRequest,
    requeue_immediately,
)
from .session import Session
from .steps import Step, StepResult, StepSequencer, requeue_now
from .utils import nested_get, now_timestamp

log = alog.use_channel("BACKUP")

## Status markers ##############################################################

API_MANAGER_SOURCE_NAME_FIELD = "apiManagerSourceName"
BACKUP_PVC_NAME_FIELD = "backupPersistentVolumeClaimName"


## BackupObjectBuilder #########################################################


class BackupObjectBuilder(abc.ABC):
    """Interface of the collaborator that produces the manifests of a backup
    run. Every manifest must carry its namespace.
    """

    @abc.abstractmethod
    def destination_pvc(self, backup: dict, apimanager: dict) -> Optional[dict]:
        """The volume claim receiving the backup, None if the destination is
        not a volume claim
        """

    @abc.abstractmethod
    def permissions(self, backup: dict) -> List[dict]:
        """ServiceAccount, Role and RoleBinding used by the jobs"""

    @abc.abstractmethod
    def jobs(self, backup: dict, apimanager: dict) -> List[dict]:
        """The jobs of the run in execution order"""


def find_source_apimanager(client: ConvergenceClientBase, backup: dict) -> dict:
    """The APIManager to back up. Once recorded in the status the source is
    looked up by name, before that the namespace must hold exactly one.

    Raises:
        PreconditionError: If the source cannot be determined
    """
    namespace = backup["metadata"].get("namespace")
    source_name = nested_get(backup, f"status.{API_MANAGER_SOURCE_NAME_FIELD}")
    if source_name:
        apimanager = client.get(
            constants.APIMANAGER_KIND,
            source_name,
            namespace=namespace,
            api_version=constants.APPS_API_VERSION,
        )
        assert_precondition(
            apimanager is not None, f"APIManager {source_name} not found"
        )
        return apimanager

    apimanagers = client.list(
        constants.APIMANAGER_KIND,
        namespace=namespace,
        api_version=constants.APPS_API_VERSION,
    )
    assert_precondition(
        len(apimanagers) == 1,
        f"Expected exactly one APIManager in namespace {namespace}. "
        f"Found {len(apimanagers)}",
    )
    return apimanagers[0]


## BackupReconciler ############################################################


class BackupReconciler(ReconcilerBase):
    """Runs an APIManagerBackup to completion"""

    kind = constants.APIMANAGER_BACKUP_KIND
    api_version = constants.APPS_API_VERSION

    def __init__(
        self,
        builder: BackupObjectBuilder,
        client: Optional[ConvergenceClientBase] = None,
    ):
        super().__init__(client)
        self.builder = builder

    @alog.logged_function(log.info)
    @alog.timed_function(log.info, "Backup reconcile finished in: ")
    def reconcile(self, request: ReconcileRequest) -> ReconciliationResult:
        manifest = self.client.get(
            self.kind,
            request.name,
            namespace=request.namespace,
            api_version=self.api_version,
        )
        if manifest is None:
            log.info("%s %s not found. Ignoring", self.kind, request)
            return ReconciliationResult(requeue=False)

        reconciliation_id = self.generate_id()
        self.configure_logging(manifest, reconciliation_id)
        session = Session(reconciliation_id, manifest, self.client)
        orchestrator = JobOrchestrator(self.client, session)

        if session.get_status_field(COMPLETED_FIELD):
            return orchestrator.reconcile(StepSequencer([], name="backup"), [])

        try:
            apimanager = find_source_apimanager(self.client, manifest)
            jobs = self.builder.jobs(manifest, apimanager)
            steps = StepSequencer(
                [
                    Step(
                        "source-and-start-time",
                        lambda sess: self._record_source(sess, apimanager),
                    ),
                    Step(
                        "destination-pvc",
                        lambda sess: self._destination_pvc(
                            sess, orchestrator, apimanager
                        ),
                    ),
                    Step(
                        "permissions",
                        lambda sess: self._permissions(sess, orchestrator),
                    ),
                ]
                + orchestrator.job_steps(jobs),
                name="backup",
            )
            return orchestrator.reconcile(steps, jobs)
        except ConflictError as err:
            log.info("Write conflict on %s. Requeueing: %s", request, err)
            return requeue_immediately()

    ## Steps ###################################################################

    @staticmethod
    def _record_source(session: Session, apimanager: dict) -> Optional[StepResult]:
        fields = {}
        source_name = apimanager["metadata"]["name"]
        if session.get_status_field(API_MANAGER_SOURCE_NAME_FIELD) != source_name:
            fields[API_MANAGER_SOURCE_NAME_FIELD] = source_name
        if not session.get_status_field(START_TIME_FIELD):
            fields[START_TIME_FIELD] = now_timestamp()
        if not fields:
            return None
        log.info("Recording backup fields %s", sorted(fields))
        session.set_status_fields(**fields)
        return requeue_now()

    def _destination_pvc(
        self, session: Session, orchestrator: JobOrchestrator, apimanager: dict
    ) -> Optional[StepResult]:
        pvc = self.builder.destination_pvc(session.manifest, apimanager)
        if pvc is None:
            return None
        orchestrator.ensure_created(pvc)

        destination = nested_get(
            session.manifest, "spec.backupDestination.persistentVolumeClaim"
        )
        if destination is None:
            return None
        if session.get_status_field(BACKUP_PVC_NAME_FIELD):
            return None
        session.set_status_fields(**{BACKUP_PVC_NAME_FIELD: pvc["metadata"]["name"]})
        return requeue_now()

    def _permissions(
        self, session: Session, orchestrator: JobOrchestrator
    ) -> Optional[StepResult]:
        created = [
            orchestrator.ensure_created(manifest)
            for manifest in self.builder.permissions(session.manifest)
        ]
        if any(created):
            return requeue_now()
        return None
