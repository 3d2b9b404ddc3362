"""
The requirements snapshot: the dependency versions required by the incoming
operator release, published as a ConfigMap in the operator namespace.

The RequirementsPublisher fills it from the ClusterServiceVersion of the
latest install plan. Every APIManager checks its dependencies against it and
records the snapshot's resourceVersion in status.confirmedRequirementsVersion
once the check passes. The UpgradeGate compares those records with the
snapshot.
"""

# Standard
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import copy

# First Party
import alog

# Local
from . import config, constants
from .client import ConvergenceClientBase, set_owner_reference
from .exceptions import ConfigError, assert_cluster
from .jobs import poll_until
from .upgrade import compare_versions
from .utils import nested_get, resource_key

log = alog.use_channel("RQMTS")

# Human readable label of each dependency requirement
REQUIREMENT_LABELS = {
    constants.RHT_MYSQL_REQUIREMENTS: "System MySQL",
    constants.RHT_POSTGRES_REQUIREMENTS: "System PostgreSQL",
    constants.RHT_SYSTEM_REDIS_REQUIREMENTS: "System Redis",
    constants.RHT_BACKEND_REDIS_REQUIREMENTS: "Backend Redis",
}


@dataclass(frozen=True)
class RequirementsSnapshot:
    """The published requirement values with the resourceVersion they were
    read at
    """

    values: Dict[str, str] = field(default_factory=dict)
    token: str = ""

    @property
    def release(self) -> Optional[str]:
        """The incoming release (major.minor) the requirements belong to"""
        return self.values.get(constants.RHT_THREESCALE_VERSION)


def read_requirements_snapshot(
    client: ConvergenceClientBase, namespace: str
) -> Optional[RequirementsSnapshot]:
    """Read the snapshot from the operator namespace, None if not published"""
    config_map = client.get(
        "ConfigMap",
        constants.REQUIREMENTS_CONFIGMAP_NAME,
        namespace=namespace,
        api_version="v1",
    )
    if config_map is None:
        log.debug("Requirements config map not found in %s", namespace)
        return None
    return RequirementsSnapshot(
        values=dict(config_map.get("data") or {}),
        token=str(config_map["metadata"].get("resourceVersion", "")),
    )


def is_confirmed(manifest: dict, snapshot: RequirementsSnapshot) -> bool:
    """Whether the APIManager confirmed exactly this snapshot"""
    confirmed = nested_get(
        manifest, f"status.{constants.STATUS_CONFIRMED_REQUIREMENTS}", None
    )
    return confirmed is not None and confirmed == snapshot.token


def check_requirements(
    snapshot: RequirementsSnapshot, current_versions: Dict[str, Optional[str]]
) -> List[str]:
    """Compare each required dependency version with the running one

    Args:
        snapshot:  RequirementsSnapshot
            The published requirements
        current_versions:  Dict[str, Optional[str]]
            The running version of each dependency, keyed like the snapshot.
            Dependencies that are not reported are not checked.

    Returns:
        failures:  List[str]
            One message per unmet requirement
    """
    failures = []
    for key, label in REQUIREMENT_LABELS.items():
        required = snapshot.values.get(key)
        current = current_versions.get(key)
        if not required or not current:
            continue
        try:
            met = compare_versions(required, current)
        except ConfigError as err:
            failures.append(f"{label} version could not be compared: {err}")
            continue
        if not met:
            failures.append(
                f"{label} version {current} does not meet the required version {required}"
            )
    return failures


class RequirementsPublisher:
    """Publishes the requirements snapshot for the operator subscription"""

    def __init__(self, client: ConvergenceClientBase, operator_namespace: str):
        self.client = client
        self.operator_namespace = operator_namespace

    def publish(self, subscription: dict) -> bool:
        """Create or update the requirements config map from the latest install
        plan of the subscription

        Args:
            subscription:  dict
                The operator Subscription

        Returns:
            updated:  bool
                True if an existing config map was changed

        Raises:
            PollTimeoutError: If the install plan could not be read in time
        """
        install_plan = poll_until(
            lambda: self._get_install_plan(subscription),
            interval=config.install_plan_poll.interval_seconds,
            timeout=config.install_plan_poll.timeout_seconds,
        )
        csv = self._get_csv(install_plan)
        values = self.requirement_values(csv)
        return self._apply(subscription, values)

    @staticmethod
    def requirement_values(csv: dict) -> Dict[str, str]:
        """Extract the requirement annotations and the release label"""
        annotations = (csv.get("metadata") or {}).get("annotations") or {}
        values = {
            key: annotations.get(key, "")
            for key in constants.REQUIREMENT_ANNOTATION_KEYS
        }
        deployments = nested_get(csv, "spec.install.spec.deployments", []) or []
        labels = {}
        if deployments:
            labels = nested_get(deployments[0], "spec.template.metadata.labels", {})
        values[constants.RHT_THREESCALE_VERSION] = (labels or {}).get(
            constants.COMPONENT_VERSION_LABEL, ""
        )
        return values

    ## Implementation Details ##################################################

    def _get_install_plan(self, subscription: dict) -> Optional[dict]:
        ref = nested_get(subscription, "status.installPlanRef", None)
        if not ref:
            log.info(
                "InstallPlanRef from %s is not set, trying again...",
                resource_key(subscription),
            )
            return None
        install_plan = self.client.get(
            constants.INSTALL_PLAN_KIND,
            ref.get("name"),
            namespace=ref.get("namespace"),
            api_version=constants.INSTALL_PLAN_API_VERSION,
        )
        if install_plan is None:
            log.info("InstallPlan %s not found, trying again...", ref.get("name"))
        return install_plan

    def _get_csv(self, install_plan: dict) -> dict:
        names = nested_get(install_plan, "spec.clusterServiceVersionNames", []) or []
        assert_cluster(
            bool(names), f"InstallPlan {resource_key(install_plan)} lists no CSV"
        )
        csv = self.client.get(
            constants.CSV_KIND,
            names[0],
            namespace=install_plan["metadata"].get("namespace"),
            api_version=constants.CSV_API_VERSION,
        )
        assert_cluster(csv is not None, f"CSV {names[0]} not found")
        return csv

    def _apply(self, subscription: dict, values: Dict[str, str]) -> bool:
        existing = self.client.get(
            "ConfigMap",
            constants.REQUIREMENTS_CONFIGMAP_NAME,
            namespace=self.operator_namespace,
            api_version="v1",
        )
        if existing is None:
            desired = {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {
                    "name": constants.REQUIREMENTS_CONFIGMAP_NAME,
                    "namespace": self.operator_namespace,
                },
                "data": values,
            }
            log.info("Creating requirements config map")
            self.client.create(set_owner_reference(subscription, desired))
            return False

        updated = set_owner_reference(subscription, copy.deepcopy(existing))
        updated["data"] = values
        if updated == existing:
            log.debug2("Requirements config map unchanged")
            return False
        log.info("Updating requirements config map")
        self.client.update(updated)
        return True
