"""
The ReconcileManager class manages an individual reconcile of a controller. It
loads the managed object, then drives the phases:

    defaults -> preflights -> upgrade -> spec steps -> status

Failed preflights skip the upgrade and spec phases. The status phase runs even
when an earlier phase failed so that the persisted status always reflects the
current state. A deferred error is surfaced only after the status was written.
"""

# Standard
from dataclasses import dataclass, field
from typing import Optional
import abc
import base64
import copy
import datetime
import logging
import uuid

# First Party
import alog

# Local
from . import config, constants
from .client import ConvergenceClientBase, DryRunClient, OpenshiftClient
from .conditions import status_changed
from .controller import Controller
from .exceptions import ConflictError, OperatorError
from .log_format import ReconcileJsonFormatter
from .session import Session
from .steps import StepResult
from .upgrade import needs_upgrade, update_version_annotations
from .utils import resource_key
from .work_queue import ReconcileRequest

log = alog.use_channel("RECONCILE")


## Data models #################################################################


@dataclass
class RequeueParams:
    """RequeueParams holds parameters for requeue request"""

    requeue_after: datetime.timedelta = field(
        default_factory=lambda: datetime.timedelta(
            seconds=float(config.requeue_after_seconds)
        )
    )


@dataclass
class ReconciliationResult:
    """ReconciliationResult is the result of a reconciliation session"""

    # Flag to control requeue of current reconcile request
    requeue: bool
    # Parameters for requeue request
    requeue_params: RequeueParams = field(default_factory=RequeueParams)
    # Flag to identify if the reconciliation raised an exception
    exception: Optional[Exception] = None


def requeue_immediately(exception: Optional[Exception] = None) -> ReconciliationResult:
    """A result that asks to be run again without delay"""
    return ReconciliationResult(
        requeue=True,
        requeue_params=RequeueParams(requeue_after=datetime.timedelta(0)),
        exception=exception,
    )


def result_from_step(step_result: StepResult) -> ReconciliationResult:
    """Convert the outcome of a step sequence into a reconciliation result"""
    if not step_result.requeue:
        return ReconciliationResult(requeue=False)
    if step_result.requeue_after is None:
        return ReconciliationResult(requeue=True)
    return ReconciliationResult(
        requeue=True,
        requeue_params=RequeueParams(requeue_after=step_result.requeue_after),
    )


## ReconcilerBase ##############################################################


class ReconcilerBase(abc.ABC):
    """Shared plumbing for every reconciler driven by the runner"""

    def __init__(self, client: Optional[ConvergenceClientBase] = None):
        """
        Args:
            client:  Optional[ConvergenceClientBase]
                The client to use. If not given, one is built from config.
        """
        self.client = client if client is not None else self.setup_client()

    @abc.abstractmethod
    def reconcile(self, request: ReconcileRequest) -> ReconciliationResult:
        """Run a single reconciliation for the given key"""

    def safe_reconcile(self, request: ReconcileRequest) -> ReconciliationResult:
        """Call reconcile but catch any errors thrown. This guarantees a result
        for the worker loop.

        Args:
            request:  ReconcileRequest
                The key to reconcile

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile
        """
        try:
            return self.reconcile(request)

        # Capture all generic exceptions
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Handling caught error in reconcile: %s", exc, exc_info=True)
            log.info("Requeuing %s due to error during reconcile", request)
            return ReconciliationResult(
                requeue=True, requeue_params=RequeueParams(), exception=exc
            )

    @staticmethod
    def setup_client() -> ConvergenceClientBase:
        """Build the client selected by config"""
        if config.dry_run:
            log.debug("Running DRY RUN")
            return DryRunClient()
        log.debug("Running live")
        return OpenshiftClient()

    @classmethod
    def configure_logging(cls, manifest: dict, reconciliation_id: str):
        """Configure the logging for a given reconcile

        Args:
            manifest: dict
                The resource to get annotation overrides from
            reconciliation_id: str
                The unique id for the reconciliation
        """
        annotations = (manifest.get("metadata") or {}).get("annotations") or {}
        default_level = annotations.get(
            constants.LOG_DEFAULT_LEVEL_NAME, config.log_level
        )
        filters = annotations.get(constants.LOG_FILTERS_NAME, config.log_filters)
        log_json = annotations.get(constants.LOG_JSON_NAME, str(config.log_json))
        log_thread_id = annotations.get(
            constants.LOG_THREAD_ID_NAME, str(config.log_thread_id)
        )

        # Convert boolean args
        log_json = (log_json or "").lower() == "true"
        log_thread_id = (log_thread_id or "").lower() == "true"

        # Keep the existing handler (e.g. one installed by a test harness)
        handler_generator = None
        if logging.root.handlers:
            old_handler = logging.root.handlers[0]

            def handler_generator():
                return old_handler

        alog.configure(
            default_level=default_level,
            filters=filters,
            formatter=ReconcileJsonFormatter(manifest, reconciliation_id)
            if log_json
            else "pretty",
            thread_id=log_thread_id,
            handler_generator=handler_generator,
        )

    @classmethod
    def generate_id(cls) -> str:
        """Generates a unique human readable id for this reconciliation

        Returns:
            id: str
                A unique base32 encoded id
        """
        base32_str = base64.b32encode(uuid.uuid4().bytes).decode("utf-8")
        reconcile_id = base32_str[:22]
        log.debug("Generated reconcile id: %s", reconcile_id)
        return reconcile_id


## ReconcileManager ############################################################


class ReconcileManager(ReconcilerBase):
    """Runs reconciliations of a Controller's managed kind"""

    def __init__(
        self,
        controller: Controller,
        client: Optional[ConvergenceClientBase] = None,
    ):
        super().__init__(client)
        self.controller = controller

    @alog.logged_function(log.info)
    @alog.timed_function(log.info, "Reconcile finished in: ")
    def reconcile(self, request: ReconcileRequest) -> ReconciliationResult:
        """This is the main entrypoint for reconciliations. The path is:

            1. Load the managed object (not found is a silent success)
            2. Persist defaults if any are missing
            3. Run the preflights, skipping 4 and 5 if they fail
            4. Run the upgrade steps on an operator version change
            5. Run the spec steps, deferring any error
            6. Compute and persist the status
            7. Surface the deferred error

        A ConflictError anywhere results in an immediate requeue without error.

        Args:
            request:  ReconcileRequest
                The key of the object to reconcile

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile
        """
        manifest = self.client.get(
            self.controller.kind,
            request.name,
            namespace=request.namespace,
            api_version=self.controller.api_version,
        )
        if manifest is None:
            log.info(
                "%s %s not found. Ignoring since object must have been deleted",
                self.controller.kind,
                request,
            )
            return ReconciliationResult(requeue=False)

        reconciliation_id = self.generate_id()
        self.configure_logging(manifest, reconciliation_id)

        try:
            return self._run_phases(manifest, reconciliation_id)
        except ConflictError as err:
            log.info("Write conflict on %s. Requeueing: %s", request, err)
            return requeue_immediately()

    ## Phases ##################################################################

    def _run_phases(self, manifest: dict, reconciliation_id: str):
        # Defaults
        defaults_diff = self.controller.compute_defaults(manifest)
        if defaults_diff.changed:
            log.info("Defaults set for %s", resource_key(manifest))
            self.client.update(defaults_diff.defaulted)
            return requeue_immediately()

        session = Session(reconciliation_id, manifest, self.client)

        # Preflights. A requeue skips the upgrade and spec phases.
        spec_error = None
        prepare_result = None
        try:
            prepare_result = self.controller.prepare(session)
        except ConflictError:
            raise
        except Exception as err:  # pylint: disable=broad-except
            log.warning(
                "Deferring error from preflights of %s: %s",
                resource_key(session.manifest),
                err,
                exc_info=True,
            )
            spec_error = err
        blocked = spec_error is not None or (
            prepare_result is not None and prepare_result.requeue
        )

        if not blocked:
            # Upgrade
            if needs_upgrade(session.manifest, config.operator_version):
                upgrade_result = self.controller.upgrade_steps(session).run(session)
                if upgrade_result.requeue:
                    log.info("Upgrading not finished. Requeueing.")
                    return result_from_step(upgrade_result)
                self.client.update(
                    update_version_annotations(
                        session.manifest,
                        config.operator_version,
                        config.release_version,
                    )
                )
                return requeue_immediately()

            # Spec
            try:
                spec_result = self.controller.spec_steps(session).run(session)
                if spec_result.requeue:
                    log.info("Reconciling not finished. Requeueing.")
                    return result_from_step(spec_result)
            except ConflictError:
                raise
            except Exception as err:  # pylint: disable=broad-except
                log.warning(
                    "Deferring error from spec phase of %s: %s",
                    resource_key(session.manifest),
                    err,
                    exc_info=True,
                )
                spec_error = err

        # Status
        status_result = self._reconcile_status(session)

        if spec_error is not None:
            if isinstance(spec_error, OperatorError) and spec_error.is_fatal_error:
                log.error("Fatal error during reconciliation: %s", spec_error)
            return ReconciliationResult(
                requeue=True, requeue_params=RequeueParams(), exception=spec_error
            )
        if blocked:
            return result_from_step(prepare_result)
        return status_result

    def _reconcile_status(self, session: Session) -> ReconciliationResult:
        """Compute the new status and write it only if it changed. Steady state
        is reached once the persisted status is available and unchanged. Any
        other pass requeues so that a written status gets a confirming pass.
        """
        new_status = self.controller.compute_status(session)
        persisted_available = self.controller.is_available(session.status)
        changed = status_changed(session.status, new_status)

        if not changed and persisted_available:
            log.debug2("Status was not updated")
            return ReconciliationResult(requeue=False)

        if changed:
            log.debug("Status will be updated for %s", resource_key(session.manifest))
            updated = copy.deepcopy(session.manifest)
            updated["status"] = new_status
            try:
                session.replace_manifest(self.client.update_status(updated))
            except ConflictError:
                log.info("Failed to update status: resource might just be outdated")
                return requeue_immediately()

        log.debug("Reconciling status not finished. Requeueing.")
        return ReconciliationResult(requeue=True)
