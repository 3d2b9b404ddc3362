"""
The APIManager controller: defaults, preflights, the owned resources produced
by an ObjectBuilder, and the status computation.
"""

# Standard
from typing import Dict, List, Optional
import abc
import copy

# First Party
import alog

# Local
from . import config, constants, status
from .conditions import compute_conditions
from .controller import Controller
from .defaults import DefaultsDiff, compute_defaults
from .requirements import check_requirements, read_requirements_snapshot
from .resources import MUTATOR, merge_mutator, reconcile_resource
from .session import Session
from .steps import Step, StepResult, StepSequencer, requeue_after
from .upgrade import major_minor

log = alog.use_channel("APIMGR")

# Delay before preflights are run again after a failure
PREFLIGHTS_RETRY_SECONDS = 600


## ObjectBuilder ###############################################################


class ObjectBuilder(abc.ABC):
    """Interface of the collaborator that turns the APIManager spec into
    concrete manifests. Implementations own the templates. The controller only
    applies what they return.
    """

    @abc.abstractmethod
    def components(self, session: Session) -> Dict[str, List[dict]]:
        """The desired manifests, grouped by component name. Groups are applied
        in order and each group is a step of its own.
        """

    @abc.abstractmethod
    def expected_deployment_names(self, session: Session) -> List[str]:
        """Names of the deployments that must be available"""

    def watched_secret_names(self, session: Session) -> List[str]:
        """Names of the user provided secrets referenced by the spec"""
        return []

    def current_dependency_versions(self, session: Session) -> Dict[str, str]:
        """Running versions of the external dependencies, keyed by the
        requirement keys of the snapshot
        """
        return {}

    def mutator(self, manifest: dict) -> MUTATOR:
        """The mutator used to update an existing object"""
        return merge_mutator


## APIManagerController ########################################################


class APIManagerController(Controller):
    """Controller for the APIManager kind"""

    group = constants.APPS_GROUP
    version = constants.APPS_VERSION
    kind = constants.APIMANAGER_KIND

    def __init__(self, builder: ObjectBuilder):
        super().__init__()
        self.builder = builder

    def compute_defaults(self, manifest: dict) -> DefaultsDiff:
        return compute_defaults(manifest)

    def prepare(self, session: Session) -> Optional[StepResult]:
        """Read the requirements snapshot and stop before the upgrade and spec
        phases if the preflight checks fail or the running release skips a
        minor version of the installed one
        """
        session.requirements = read_requirements_snapshot(
            session.client, config.operator_namespace
        )
        if config.preflights.bypass:
            log.debug("Preflights bypassed")
            return None
        error = self.preflights_error(session)
        if status.multi_minor_hop_detected(
            session.manifest, major_minor(config.release_version)
        ):
            log.warning(status.multi_hop_message(error))
            return requeue_after(PREFLIGHTS_RETRY_SECONDS)
        if error is not None:
            log.warning(status.PREFLIGHTS_FAILED_TEMPLATE.format(error))
            return requeue_after(PREFLIGHTS_RETRY_SECONDS)
        return None

    def preflights_error(self, session: Session) -> Optional[str]:
        """The failures of the requirements check joined in one message"""
        if session.requirements is None:
            return None
        failures = check_requirements(
            session.requirements, self.builder.current_dependency_versions(session)
        )
        if failures:
            return "; ".join(failures)
        return None

    def spec_steps(self, session: Session) -> StepSequencer:
        components = self.builder.components(session)
        return StepSequencer(
            [
                Step(name, lambda sess, manifests=manifests: self._apply(sess, manifests))
                for name, manifests in components.items()
            ],
            name="apimanager",
        )

    def compute_status(self, session: Session) -> dict:
        manifest = session.manifest
        spec = manifest.get("spec") or {}
        client = session.client

        deployments = [
            deployment
            for deployment in client.list(
                "Deployment", namespace=session.namespace, api_version="apps/v1"
            )
            if deployment["metadata"]["name"]
            in self.builder.expected_deployment_names(session)
        ]
        routes = client.list(
            "Route", namespace=session.namespace, api_version="route.openshift.io/v1"
        )
        missing_secrets = status.missing_watched_secrets(
            client, session.namespace, self.builder.watched_secret_names(session)
        )

        owned = [
            deployment
            for deployment in deployments
            if status.owned_by(deployment, session.uid)
        ]
        primaries = [
            status.available_condition(
                status.deployments_available(
                    owned, self.builder.expected_deployment_names(session)
                ),
                status.routes_ready(routes, status.default_route_hosts(spec)),
                missing_secrets,
            )
        ]

        preflights_error = None
        if not config.preflights.bypass:
            preflights_error = self.preflights_error(session)
            primaries.append(
                status.preflights_condition(
                    manifest,
                    session.requirements.values
                    if session.requirements is not None
                    else None,
                    preflights_error,
                    major_minor(config.release_version),
                )
            )
        warnings = status.warnings(manifest) if preflights_error is None else []

        new_status = {
            constants.STATUS_CONDITIONS: compute_conditions(
                session.status.get(constants.STATUS_CONDITIONS) or [],
                primaries,
                warnings,
            ),
            constants.STATUS_DEPLOYMENTS: status.deployment_rollup(owned),
        }

        confirmed = session.status.get(constants.STATUS_CONFIRMED_REQUIREMENTS)
        if session.requirements is not None and preflights_error is None:
            confirmed = session.requirements.token
        if confirmed is not None:
            new_status[constants.STATUS_CONFIRMED_REQUIREMENTS] = confirmed
        return new_status

    ## Implementation Details ##################################################

    def _apply(self, session: Session, manifests: List[dict]) -> Optional[StepResult]:
        for manifest in manifests:
            manifest = copy.deepcopy(manifest)
            manifest.setdefault("metadata", {}).setdefault("namespace", session.namespace)
            desired = session.own(manifest)
            reconcile_resource(session.client, desired, self.builder.mutator(desired))
        return None
