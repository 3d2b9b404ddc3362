"""
The fleet-wide upgrade gate. The operator lifecycle manager only moves to an
incoming operator release once the Upgradeable condition of the operator's
OperatorCondition allows it. The gate keeps that condition closed until every
APIManager in scope confirmed the requirements snapshot of the incoming
release.
"""

# Standard
from typing import List, Optional, Tuple
import copy
import datetime

# First Party
import alog

# Local
from . import config, constants
from .client import ConvergenceClientBase
from .conditions import CONDITION_FALSE, CONDITION_TRUE, TIMESTAMP_KEY, make_condition
from .exceptions import ConflictError
from .reconcile import (
    ReconcilerBase,
    ReconciliationResult,
    ReconcileRequest,
    RequeueParams,
    requeue_immediately,
)
from .requirements import (
    RequirementsPublisher,
    is_confirmed,
    read_requirements_snapshot,
)
from .utils import resource_key

log = alog.use_channel("UPGATE")

# Only subscriptions whose name contains this are handled
SUBSCRIPTION_NAME_MARKER = "3scale"

## Gate outcomes ###############################################################

APPROVED_REASON = "ApprovedUpgradeScenario"
APPROVED_MESSAGE = (
    "Upgrade approved, requirements confirmed, operator upgrade is ready to progress"
)
NO_UPGRADE_REASON = "NoUpgradeAvailable"
NO_UPGRADE_MESSAGE = "No new upgrade available, blocking any automatic upgrades"
REJECTED_REASON = "UpgradeRejected"
REJECTED_MESSAGE = (
    "Requirements are not confirmed yet by all 3scale instances that are "
    "managed by the operator"
)
NOT_MET_MESSAGE = (
    "No new upgrade available or upgrade is manual and has not been approved "
    "yet, requirements for current or incoming installation are not met"
)


def consensus_label(subscription_name: str, namespace: str) -> str:
    """The label carried by the OperatorConditions of a subscription"""
    return f"{constants.OLM_GROUP}/{subscription_name}.{namespace}"


def blocking_consensus_object(consensus_objects: List[dict]) -> dict:
    """The object whose conditions hold Upgradeable=False. Falls back to the
    last object when none is blocking.
    """
    blocking = consensus_objects[-1]
    for obj in consensus_objects:
        for cond in (obj.get("spec") or {}).get("conditions") or []:
            if (
                cond.get("type") == constants.UPGRADEABLE_CONDITION
                and cond.get("status") == CONDITION_FALSE
            ):
                blocking = obj
    return blocking


def gate_decision(all_confirmed: bool, upgrade_pending: bool) -> Tuple[str, str, str, bool]:
    """Apply the decision table

    Returns:
        decision:  Tuple[str, str, str, bool]
            (status, reason, message, requeue)
    """
    if all_confirmed and upgrade_pending:
        return CONDITION_TRUE, APPROVED_REASON, APPROVED_MESSAGE, False
    if all_confirmed:
        return CONDITION_FALSE, NO_UPGRADE_REASON, NO_UPGRADE_MESSAGE, False
    if upgrade_pending:
        return CONDITION_FALSE, REJECTED_REASON, REJECTED_MESSAGE, True
    return CONDITION_FALSE, NO_UPGRADE_REASON, NOT_MET_MESSAGE, True


## UpgradeGate #################################################################


class UpgradeGate:
    """Opens or closes the Upgradeable condition for the operator subscription"""

    def __init__(
        self,
        client: ConvergenceClientBase,
        operator_namespace: str,
        watch_namespace: Optional[str] = None,
    ):
        """
        Args:
            client:  ConvergenceClientBase
                The client used for every read and write
            operator_namespace:  str
                Namespace holding the subscription and the requirements snapshot
            watch_namespace:  Optional[str]
                Namespace of the APIManagers in scope, None for all
        """
        self.client = client
        self.operator_namespace = operator_namespace
        self.watch_namespace = watch_namespace or None

    def reconcile(self, subscription_name: str) -> ReconciliationResult:
        """Bring the Upgradeable condition in line with the confirmations

        Args:
            subscription_name:  str
                Name of the operator subscription

        Returns:
            result:  ReconciliationResult
                The result of the pass
        """
        snapshot = read_requirements_snapshot(self.client, self.operator_namespace)
        if snapshot is None:
            log.info("Requirements snapshot not published yet. Requeueing")
            return ReconciliationResult(requeue=True)

        apimanagers = self.client.list(
            constants.APIMANAGER_KIND,
            namespace=self.watch_namespace,
            api_version=constants.APPS_API_VERSION,
        )
        if not apimanagers:
            log.info("No APIManagers found. Requeueing")
            return ReconciliationResult(requeue=True)

        unconfirmed = [
            resource_key(apimanager)
            for apimanager in apimanagers
            if not is_confirmed(apimanager, snapshot)
        ]
        all_confirmed = not unconfirmed
        if unconfirmed:
            log.debug("Requirements not confirmed by %s", unconfirmed)

        consensus_objects = self.client.list(
            constants.OPERATOR_CONDITION_KIND,
            api_version=constants.OPERATOR_CONDITION_API_VERSION,
            label_selector=consensus_label(subscription_name, self.operator_namespace),
        )
        if not consensus_objects:
            log.info("No OperatorCondition found for %s. Requeueing", subscription_name)
            return ReconciliationResult(requeue=True)
        upgrade_pending = len(consensus_objects) > config.upgrade_gate.pending_threshold

        status, reason, message, requeue = gate_decision(all_confirmed, upgrade_pending)
        log.info(
            "Upgrade gate: confirmed=%s pending=%s -> %s (%s)",
            all_confirmed,
            upgrade_pending,
            status,
            reason,
        )

        target = (
            blocking_consensus_object(consensus_objects)
            if upgrade_pending
            else consensus_objects[0]
        )
        condition = make_condition(
            constants.UPGRADEABLE_CONDITION, status, reason, message
        )
        try:
            self._write(target, condition, as_override=status == CONDITION_TRUE)
        except ConflictError as err:
            log.info("Conflict writing %s. Requeueing: %s", resource_key(target), err)
            return requeue_immediately()

        if requeue:
            return ReconciliationResult(
                requeue=True,
                requeue_params=RequeueParams(
                    requeue_after=datetime.timedelta(
                        seconds=float(config.upgrade_gate.requeue_seconds)
                    )
                ),
            )
        return ReconciliationResult(requeue=False)

    ## Implementation Details ##################################################

    def _write(self, target: dict, condition: dict, as_override: bool):
        """Write the condition to the overrides or to the conditions (clearing
        the overrides). Nothing is written if the object already holds it.
        """
        updated = copy.deepcopy(target)
        spec = updated.setdefault("spec", {})
        field_name = "overrides" if as_override else "conditions"

        existing = spec.get(field_name) or []
        if len(existing) == 1 and _same_condition(existing[0], condition):
            condition = copy.deepcopy(existing[0])
        spec[field_name] = [condition]
        if not as_override:
            spec.pop("overrides", None)

        if updated == target:
            log.debug2("%s already up to date", resource_key(target))
            return
        log.debug("Writing Upgradeable %s to %s", field_name, resource_key(target))
        self.client.update(updated)


def _same_condition(current: dict, desired: dict) -> bool:
    return {k: v for k, v in current.items() if k != TIMESTAMP_KEY} == {
        k: v for k, v in desired.items() if k != TIMESTAMP_KEY
    }


## SubscriptionReconciler ######################################################


class SubscriptionReconciler(ReconcilerBase):
    """Publishes the requirements snapshot of the operator subscription and
    runs the upgrade gate
    """

    kind = constants.SUBSCRIPTION_KIND
    api_version = constants.SUBSCRIPTION_API_VERSION

    def __init__(
        self,
        client: Optional[ConvergenceClientBase] = None,
        operator_namespace: Optional[str] = None,
        watch_namespace: Optional[str] = None,
    ):
        super().__init__(client)
        self.operator_namespace = operator_namespace or config.operator_namespace
        if watch_namespace is None:
            watch_namespace = config.watch_namespace
        self.publisher = RequirementsPublisher(self.client, self.operator_namespace)
        self.gate = UpgradeGate(self.client, self.operator_namespace, watch_namespace)

    def should_reconcile(self, request: ReconcileRequest) -> bool:
        """Only the operator's own subscription is handled"""
        return (
            request.namespace == self.operator_namespace
            and SUBSCRIPTION_NAME_MARKER in request.name
        )

    @alog.logged_function(log.info)
    @alog.timed_function(log.info, "Subscription reconcile finished in: ")
    def reconcile(self, request: ReconcileRequest) -> ReconciliationResult:
        if not self.should_reconcile(request):
            log.debug("Ignoring subscription %s", request)
            return ReconciliationResult(requeue=False)

        subscription = self.client.get(
            self.kind,
            request.name,
            namespace=request.namespace,
            api_version=self.api_version,
        )
        if subscription is None:
            log.info("Subscription %s not found. Ignoring", request)
            return ReconciliationResult(requeue=False)
        self.configure_logging(subscription, self.generate_id())

        try:
            if self.publisher.publish(subscription):
                log.info("Requirements snapshot updated. Requeueing")
                return requeue_immediately()
        except ConflictError as err:
            log.info("Conflict writing the requirements snapshot: %s", err)
            return requeue_immediately()

        return self.gate.reconcile(request.name)
