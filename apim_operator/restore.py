"""
Reconciler for the APIManagerRestore kind. A restore reads a backup from a
source volume, recreates the secrets and config maps, the system file storage
and the APIManager object, waits for the installation to come up and finally
resynchronizes the zync domains.
"""

# Standard
from typing import List, Optional
import abc
import base64
import binascii
import copy
import json

# First Party
import alog

# Local
from . import config, constants
from .client import ConvergenceClientBase
from .conditions import AVAILABLE_CONDITION, is_condition_true
from .exceptions import AlreadyExistsError, ConflictError, assert_precondition
from .jobs import COMPLETED_FIELD, JobOrchestrator, set_start_time
from .reconcile import (
    ReconcilerBase,
    ReconciliationResult,
    ReconcileRequest,
    requeue_immediately,
)
from .session import Session
from .steps import Step, StepResult, StepSequencer, requeue_after, requeue_now
from .utils import nested_get, resource_key

log = alog.use_channel("RESTORE")

## Status markers ##############################################################

API_MANAGER_TO_RESTORE_REF_FIELD = "apiManagerToRestoreRef"

# Key of the shared secret holding the serialized APIManager
SERIALIZED_APIMANAGER_KEY = "apimanager-backup.json"

SYSTEM_STORAGE_PVC_NAME = "system-storage"


## RestoreObjectBuilder ########################################################


class RestoreObjectBuilder(abc.ABC):
    """Interface of the collaborator that produces the manifests of a restore
    run. Every manifest must carry its namespace. A job that does not apply to
    the restore source is returned as None.
    """

    @abc.abstractmethod
    def restore_secrets_job(self, restore: dict) -> Optional[dict]:
        """Job restoring the secrets and config maps"""

    @abc.abstractmethod
    def shared_secret_job(self, restore: dict) -> Optional[dict]:
        """Job publishing the backed up APIManager in the shared secret"""

    @abc.abstractmethod
    def shared_secret_name(self, restore: dict) -> str:
        """Name of the secret the shared secret job writes"""

    @abc.abstractmethod
    def system_storage_pvc(self, restore: dict, apimanager: dict) -> Optional[dict]:
        """The system file storage volume claim for the restored installation"""

    def system_storage_pvc_name(self, restore: dict) -> str:
        """Name of the claim returned by system_storage_pvc"""
        return SYSTEM_STORAGE_PVC_NAME

    @abc.abstractmethod
    def restore_filestorage_job(self, restore: dict) -> Optional[dict]:
        """Job restoring the system file storage"""

    @abc.abstractmethod
    def zync_resync_job(self, restore: dict) -> Optional[dict]:
        """Job resynchronizing the zync domains"""

    def jobs(self, restore: dict) -> List[dict]:
        """Every job of the run"""
        jobs = [
            self.restore_secrets_job(restore),
            self.restore_filestorage_job(restore),
            self.shared_secret_job(restore),
            self.zync_resync_job(restore),
        ]
        return [job for job in jobs if job is not None]


def decode_shared_apimanager(secret: dict, namespace: str) -> dict:
    """Read the APIManager manifest out of the shared secret

    Raises:
        PreconditionError: If the secret does not hold a valid manifest
    """
    data = (secret.get("data") or {}).get(SERIALIZED_APIMANAGER_KEY)
    assert_precondition(
        data is not None,
        f"Expected key '{SERIALIZED_APIMANAGER_KEY}' in secret "
        f"'{secret['metadata']['name']}' not found",
    )
    try:
        apimanager = json.loads(base64.b64decode(data))
    except (binascii.Error, ValueError) as err:
        log.warning("Could not decode the shared APIManager: %s", err)
        apimanager = None
    assert_precondition(
        isinstance(apimanager, dict)
        and apimanager.get("kind") == constants.APIMANAGER_KIND,
        f"Secret '{secret['metadata']['name']}' does not hold an APIManager",
    )

    # Only the user facing parts of the object are restored
    metadata = {
        key: copy.deepcopy(value)
        for key, value in (apimanager.get("metadata") or {}).items()
        if key in ("name", "labels", "annotations")
    }
    metadata["namespace"] = namespace
    return {
        "apiVersion": apimanager.get("apiVersion", constants.APPS_API_VERSION),
        "kind": constants.APIMANAGER_KIND,
        "metadata": metadata,
        "spec": copy.deepcopy(apimanager.get("spec") or {}),
    }


## RestoreReconciler ###########################################################


class RestoreReconciler(ReconcilerBase):
    """Runs an APIManagerRestore to completion"""

    kind = constants.APIMANAGER_RESTORE_KIND
    api_version = constants.APPS_API_VERSION

    def __init__(
        self,
        builder: RestoreObjectBuilder,
        client: Optional[ConvergenceClientBase] = None,
    ):
        super().__init__(client)
        self.builder = builder

    @alog.logged_function(log.info)
    @alog.timed_function(log.info, "Restore reconcile finished in: ")
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
        jobs = self.builder.jobs(manifest)

        if session.get_status_field(COMPLETED_FIELD):
            return orchestrator.reconcile(StepSequencer([], name="restore"), jobs)

        steps = [Step("start-time", set_start_time)]
        restore_secrets_job = self.builder.restore_secrets_job(manifest)
        if restore_secrets_job is not None:
            steps.append(
                Step(
                    "restore-secrets-job",
                    lambda _: orchestrator.ensure_job(restore_secrets_job),
                )
            )
        steps += [
            Step(
                "shared-secret",
                lambda sess: self._shared_secret(sess, orchestrator),
            ),
            Step(
                "restore-filestorage",
                lambda sess: self._filestorage(sess, orchestrator),
            ),
            Step("restore-apimanager", self._restore_apimanager),
            Step("wait-for-apimanager", self._wait_for_apimanager),
        ]
        zync_job = self.builder.zync_resync_job(manifest)
        if zync_job is not None:
            steps.append(
                Step("zync-resync-job", lambda _: orchestrator.ensure_job(zync_job))
            )
        steps.append(Step("shared-secret-cleanup", self._cleanup_shared_secret))

        try:
            return orchestrator.reconcile(StepSequencer(steps, name="restore"), jobs)
        except ConflictError as err:
            log.info("Write conflict on %s. Requeueing: %s", request, err)
            return requeue_immediately()

    ## Steps ###################################################################

    def _shared_secret(
        self, session: Session, orchestrator: JobOrchestrator
    ) -> Optional[StepResult]:
        job = self.builder.shared_secret_job(session.manifest)
        if job is None:
            return None
        result = orchestrator.ensure_job(job)
        if result.requeue:
            return result
        if session.get_status_field(API_MANAGER_TO_RESTORE_REF_FIELD):
            return None

        secret = self._get_shared_secret(session)
        if secret is None:
            log.info(
                "Shared secret '%s' not found. Waiting...",
                self.builder.shared_secret_name(session.manifest),
            )
            return requeue_after(config.job_poll_seconds)
        apimanager = decode_shared_apimanager(secret, session.namespace)
        session.set_status_fields(
            **{
                API_MANAGER_TO_RESTORE_REF_FIELD: {
                    "name": apimanager["metadata"]["name"]
                }
            }
        )
        return None

    def _filestorage(
        self, session: Session, orchestrator: JobOrchestrator
    ) -> Optional[StepResult]:
        job = self.builder.restore_filestorage_job(session.manifest)
        if job is None:
            return None

        # The shared secret is only read to build a missing claim. It is gone
        # once the main steps ran through.
        existing = session.get_object(
            "PersistentVolumeClaim",
            self.builder.system_storage_pvc_name(session.manifest),
            api_version="v1",
        )
        if existing is None:
            apimanager = self._shared_apimanager(session)
            pvc = self.builder.system_storage_pvc(session.manifest, apimanager)
            if pvc is not None and orchestrator.ensure_created(pvc):
                return requeue_after(config.job_poll_seconds)
        return orchestrator.ensure_job(job)

    def _restore_apimanager(self, session: Session) -> Optional[StepResult]:
        if self._restored_apimanager(session) is not None:
            return None
        apimanager = self._shared_apimanager(session)
        log.info("Restoring %s", resource_key(apimanager))
        # The restored installation must outlive the restore object
        try:
            self.client.create(apimanager)
        except AlreadyExistsError:
            log.debug2("%s created concurrently", resource_key(apimanager))
        return None

    def _wait_for_apimanager(self, session: Session) -> Optional[StepResult]:
        apimanager = self._restored_apimanager(session)
        if apimanager is None:
            log.info("APIManager not found. Waiting until it exists")
            return requeue_after(config.job_poll_seconds)
        if not is_condition_true(
            AVAILABLE_CONDITION, nested_get(apimanager, "status.conditions", [])
        ):
            log.info("APIManager %s not available. Waiting", resource_key(apimanager))
            return requeue_after(config.job_poll_seconds)
        return None

    def _cleanup_shared_secret(self, session: Session) -> Optional[StepResult]:
        secret = self._get_shared_secret(session)
        if secret is None:
            return None
        log.info("Deleting shared secret %s", resource_key(secret))
        self.client.delete(secret)
        if self._get_shared_secret(session) is not None:
            log.info("Secret still not completely deleted. Requeuing")
            return requeue_now()
        return None

    ## Implementation Details ##################################################

    def _get_shared_secret(self, session: Session) -> Optional[dict]:
        return session.get_object(
            "Secret", self.builder.shared_secret_name(session.manifest), api_version="v1"
        )

    def _shared_apimanager(self, session: Session) -> dict:
        secret = self._get_shared_secret(session)
        assert_precondition(
            secret is not None,
            f"Secret '{self.builder.shared_secret_name(session.manifest)}' not found",
        )
        return decode_shared_apimanager(secret, session.namespace)

    def _restored_apimanager(self, session: Session) -> Optional[dict]:
        name = session.get_status_field(f"{API_MANAGER_TO_RESTORE_REF_FIELD}.name")
        assert_precondition(bool(name), "APIManager to restore is not known yet")
        return session.get_object(
            constants.APIMANAGER_KIND, name, api_version=constants.APPS_API_VERSION
        )
