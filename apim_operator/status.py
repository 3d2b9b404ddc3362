"""
Pure helpers that compute the pieces of the APIManager status: the deployment
rollup, the Available condition, the warning toggles and the Preflights
condition.
"""

# Standard
from typing import Iterable, List, Optional, Tuple

# First Party
import alog

# Local
from .client import ConvergenceClientBase
from .conditions import (
    AVAILABLE_CONDITION,
    CONDITION_FALSE,
    CONDITION_TRUE,
    PREFLIGHTS_CONDITION,
    WarningCondition,
    make_condition,
)
from .constants import DISABLE_ASYNC_ANNOTATION, RHT_THREESCALE_VERSION
from .upgrade import installed_release, is_fresh_install, is_multi_minor_hop
from .utils import get_annotation, nested_get

log = alog.use_channel("STATUS")

## Messages ####################################################################

MISSING_SECRETS_REASON = "MissingWatchedSecrets"
PREFLIGHTS_REASON = "PreflightsPass"

PREFLIGHTS_OK_MESSAGE = "All requirements for the current version are met"
PREFLIGHTS_UPGRADE_OK_MESSAGE = (
    "All requirement for incoming version are met. If using automatic upgrades "
    "the upgrade will start shortly, if manual, you can proceed with approval"
)
PREFLIGHTS_NO_CONFIGMAP_MESSAGE = (
    "Requirement config map is not found yet, it should be generated shortly"
)
PREFLIGHTS_FAILED_TEMPLATE = (
    "Preflights failed - {} - re-running preflights in 10 minutes"
)
PREFLIGHTS_MULTI_HOP_MESSAGE = (
    "Multi minor version hop detected. Reconciliation of this 3scale instance "
    "is stopped. Remove the operator and refer to official upgrade path for "
    "3scale Operator"
)

HPA_NO_RESOURCES_WARNING = WarningCondition(
    reason="HPA & ResourceRequirementsEnabled false",
    message=(
        "HorizontalPodAutoScaling (HPA) can't function if "
        "ResourcesRequirementsEnabled is set to false as there would be no "
        "resources to compare to in order to scale"
    ),
)
HPA_WARNING = WarningCondition(
    reason="HPA",
    message="HorizontalPodAutoscaling (Hpa) enabled overrides values applied to replicas",
)
HPA_ASYNC_DISABLED_WARNING = WarningCondition(
    reason="HPA async-disabled",
    message=(
        "HorizontalPodAutoscaling (Hpa). Discovered async disabled annotation "
        "and Hpa enabled for backend. Hpa for backends will now be disabled."
    ),
)
OPENTRACING_MESSAGE = "OpenTracing is deprecated, please use OpenTelemetry instead"
STAGING_OPENTRACING_WARNING = WarningCondition(
    reason="Apicast Staging OpenTracing Deprecation", message=OPENTRACING_MESSAGE
)
PRODUCTION_OPENTRACING_WARNING = WarningCondition(
    reason="Apicast Production OpenTracing Deprecation", message=OPENTRACING_MESSAGE
)

## Deployments #################################################################


def owned_by(obj: dict, owner_uid: str) -> bool:
    """Whether any owner reference of the object points at the given uid"""
    refs = (obj.get("metadata") or {}).get("ownerReferences") or []
    return any(ref.get("uid") == owner_uid for ref in refs)


def deployment_rollup(
    deployments: Iterable[dict], owner_uid: Optional[str] = None
) -> dict:
    """Classify deployments by readiness

    Args:
        deployments:  Iterable[dict]
            The deployment manifests to classify
        owner_uid:  Optional[str]
            If given, only deployments owned by this uid are counted

    Returns:
        rollup:  dict
            {"ready": [...], "starting": [...], "stopped": [...]} with sorted
            names
    """
    ready, starting, stopped = [], [], []
    for deployment in deployments:
        if owner_uid is not None and not owned_by(deployment, owner_uid):
            continue
        name = deployment["metadata"]["name"]
        replicas = nested_get(deployment, "spec.replicas", 1)
        available = nested_get(deployment, "status.availableReplicas", 0) or 0
        if replicas == 0:
            stopped.append(name)
        elif available >= replicas:
            ready.append(name)
        else:
            starting.append(name)
    return {
        "ready": sorted(ready),
        "starting": sorted(starting),
        "stopped": sorted(stopped),
    }


def is_deployment_available(deployment: dict) -> bool:
    """Whether the deployment reports condition Available=True"""
    for cond in nested_get(deployment, "status.conditions", []) or []:
        if cond.get("type") == "Available":
            return cond.get("status") == CONDITION_TRUE
    return False


def deployments_available(
    deployments: Iterable[dict], expected_names: Iterable[str]
) -> bool:
    """Every expected deployment exists and is available"""
    by_name = {dep["metadata"]["name"]: dep for dep in deployments}
    for name in expected_names:
        deployment = by_name.get(name)
        if deployment is None or not is_deployment_available(deployment):
            log.debug2("Deployment %s not available", name)
            return False
    return True


## Routes ######################################################################


def default_route_hosts(spec: dict) -> List[str]:
    """The hosts of the routes created by default for an installation. With
    no tenant name there is nothing to expect.
    """
    tenant = spec.get("tenantName")
    if not tenant:
        return []
    domain = spec.get("wildcardDomain")
    hosts = [f"backend-{tenant}.{domain}"]
    if is_zync_enabled(spec):
        hosts += [
            f"api-{tenant}-apicast-production.{domain}",
            f"api-{tenant}-apicast-staging.{domain}",
            f"master.{domain}",
            f"{tenant}.{domain}",
            f"{tenant}-admin.{domain}",
        ]
    return hosts


def is_route_admitted(route: dict) -> bool:
    """A route is admitted once every ingress reports Admitted=True"""
    ingresses = nested_get(route, "status.ingress", []) or []
    if not ingresses:
        return False
    for ingress in ingresses:
        admitted = [
            cond
            for cond in ingress.get("conditions") or []
            if cond.get("type") == "Admitted"
        ]
        if not admitted or admitted[0].get("status") != CONDITION_TRUE:
            return False
    return True


def routes_ready(routes: Iterable[dict], expected_hosts: Iterable[str]) -> bool:
    """Each expected host is served by an admitted route"""
    expected_hosts = list(expected_hosts)
    if not expected_hosts:
        return False
    by_host = {}
    for route in sorted(routes, key=lambda route: route["metadata"]["name"]):
        by_host.setdefault(nested_get(route, "spec.host"), route)
    for host in expected_hosts:
        route = by_host.get(host)
        if route is None:
            log.debug2("Route for host %s not found", host)
            return False
        if not is_route_admitted(route):
            log.debug2("Route for host %s not admitted", host)
            return False
    return True


## Secrets #####################################################################


def missing_watched_secrets(
    client: ConvergenceClientBase, namespace: str, names: Iterable[str]
) -> List[str]:
    """The names of the referenced secrets that do not exist"""
    return [
        name
        for name in names
        if client.get("Secret", name, namespace=namespace, api_version="v1") is None
    ]


## Conditions ##################################################################


def available_condition(
    deployments_ok: bool,
    routes_ok: bool,
    missing_secrets: List[str],
    now: Optional[str] = None,
) -> dict:
    """Build the Available condition"""
    log.debug2(
        "deploymentsAvailable: %s, defaultRoutesReady: %s, missingSecrets: %s",
        deployments_ok,
        routes_ok,
        missing_secrets,
    )
    status = deployments_ok and routes_ok and not missing_secrets
    reason, message = "", ""
    if missing_secrets:
        reason = MISSING_SECRETS_REASON
        message = "The following secret(s) could not be found: {}".format(
            ", ".join(missing_secrets)
        )
    return make_condition(AVAILABLE_CONDITION, status, reason, message, now=now)


def is_zync_enabled(spec: dict) -> bool:
    return nested_get(spec, "zync.enabled", True) is not False


def hpa_flags(spec: dict) -> Tuple[bool, bool]:
    """(backend hpa, apicast production hpa)"""
    backend = bool(
        nested_get(spec, "backend.listenerSpec.hpa", False)
        or nested_get(spec, "backend.workerSpec.hpa", False)
    )
    apicast = bool(nested_get(spec, "apicast.productionSpec.hpa", False))
    return backend, apicast


def warnings(manifest: dict) -> List[Tuple[WarningCondition, bool]]:
    """Every warning paired with whether it currently applies"""
    spec = manifest.get("spec") or {}
    backend_hpa, apicast_hpa = hpa_flags(spec)
    any_hpa = backend_hpa or apicast_hpa
    resources_enabled = spec.get("resourceRequirementsEnabled", True) is not False
    async_disabled = (
        str(get_annotation(manifest, DISABLE_ASYNC_ANNOTATION, "")).lower() == "true"
    )
    return [
        (HPA_NO_RESOURCES_WARNING, any_hpa and not resources_enabled),
        (HPA_WARNING, any_hpa),
        (HPA_ASYNC_DISABLED_WARNING, backend_hpa and async_disabled),
        (
            STAGING_OPENTRACING_WARNING,
            bool(nested_get(spec, "apicast.stagingSpec.openTracing.enabled", False)),
        ),
        (
            PRODUCTION_OPENTRACING_WARNING,
            bool(
                nested_get(spec, "apicast.productionSpec.openTracing.enabled", False)
            ),
        ),
    ]


def multi_minor_hop_detected(manifest: dict, running_release: str) -> bool:
    """Whether the running release skips a minor version of the installed one"""
    installed = installed_release(manifest)
    return installed is not None and is_multi_minor_hop(installed, running_release)


def multi_hop_message(preflights_error: Optional[str]) -> str:
    if preflights_error:
        return f"Preflights failed - {preflights_error}. {PREFLIGHTS_MULTI_HOP_MESSAGE}"
    return f"Preflights failed. {PREFLIGHTS_MULTI_HOP_MESSAGE}"


def preflights_condition(
    manifest: dict,
    snapshot_values: Optional[dict],
    preflights_error: Optional[str],
    running_release: str,
    now: Optional[str] = None,
) -> dict:
    """Build the Preflights condition

    Args:
        manifest:  dict
            The APIManager manifest
        snapshot_values:  Optional[dict]
            The data of the requirements snapshot, None if it does not exist
        preflights_error:  Optional[str]
            The failure of the requirements check, if any
        running_release:  str
            The major.minor release installed by the running operator
        now:  Optional[str]
            Override for the transition timestamp

    Returns:
        condition:  dict
            The Preflights condition
    """
    status, message = CONDITION_TRUE, PREFLIGHTS_OK_MESSAGE

    if snapshot_values is None:
        status, message = CONDITION_FALSE, PREFLIGHTS_NO_CONFIGMAP_MESSAGE

    if multi_minor_hop_detected(manifest, running_release):
        status = CONDITION_FALSE
        message = multi_hop_message(preflights_error)
    elif preflights_error is not None:
        status = CONDITION_FALSE
        message = PREFLIGHTS_FAILED_TEMPLATE.format(preflights_error)
    elif (
        not is_fresh_install(manifest)
        and snapshot_values is not None
        and snapshot_values.get(RHT_THREESCALE_VERSION) != running_release
    ):
        status, message = CONDITION_TRUE, PREFLIGHTS_UPGRADE_OK_MESSAGE

    return make_condition(
        PREFLIGHTS_CONDITION, status, PREFLIGHTS_REASON, message, now=now
    )
