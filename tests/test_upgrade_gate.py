"""
Tests for the fleet-wide upgrade gate
"""

# Standard
import datetime

# Third Party
import pytest

# First Party
import alog

# Local
from apim_operator import constants
from apim_operator.conditions import CONDITION_FALSE, CONDITION_TRUE
from apim_operator.test_helpers.helpers import (
    MockClient,
    configure_logging,
    library_config,
    make_requirements_config_map,
    setup_cr,
)
from apim_operator.upgrade_gate import (
    APPROVED_REASON,
    NO_UPGRADE_MESSAGE,
    NO_UPGRADE_REASON,
    NOT_MET_MESSAGE,
    REJECTED_REASON,
    SubscriptionReconciler,
    UpgradeGate,
    blocking_consensus_object,
    consensus_label,
    gate_decision,
)
from apim_operator.work_queue import ReconcileRequest

configure_logging()
log = alog.use_channel("TEST")

OPERATOR_NAMESPACE = "3scale-operator"
SUBSCRIPTION_NAME = "3scale-operator-sub"

## Helpers #####################################################################


def make_operator_condition(name, conditions=None):
    return {
        "apiVersion": constants.OPERATOR_CONDITION_API_VERSION,
        "kind": constants.OPERATOR_CONDITION_KIND,
        "metadata": {
            "name": name,
            "namespace": OPERATOR_NAMESPACE,
            "labels": {consensus_label(SUBSCRIPTION_NAME, OPERATOR_NAMESPACE): ""},
        },
        "spec": {"conditions": conditions or []},
    }


def setup_fleet(client, confirmed, operator_conditions=1):
    """Publish the snapshot and store one APIManager per entry of confirmed,
    each having confirmed the snapshot or not
    """
    config_map = client.create(
        make_requirements_config_map(namespace=OPERATOR_NAMESPACE)
    )
    token = config_map["metadata"]["resourceVersion"]
    for idx, is_confirmed in enumerate(confirmed):
        status = {constants.STATUS_CONFIRMED_REQUIREMENTS: token} if is_confirmed else {}
        client.create(setup_cr(name=f"apimanager-{idx}", namespace=f"ns-{idx}", status=status))
    for idx in range(operator_conditions):
        client.create(make_operator_condition(f"3scale-operator.v0.{idx}"))
    client.reset_counts()
    return token


def confirm_all(client, token):
    for apimanager in client.list(constants.APIMANAGER_KIND):
        apimanager["status"] = {constants.STATUS_CONFIRMED_REQUIREMENTS: token}
        client.update_status(apimanager)


def get_operator_condition(client, idx):
    return client.get_obj(
        constants.OPERATOR_CONDITION_KIND,
        f"3scale-operator.v0.{idx}",
        namespace=OPERATOR_NAMESPACE,
    )


def upgradeable(entries):
    assert len(entries) == 1
    return entries[0]


## gate_decision ###############################################################


@pytest.mark.parametrize(
    ["all_confirmed", "pending", "status", "reason", "requeue"],
    [
        (True, True, CONDITION_TRUE, APPROVED_REASON, False),
        (True, False, CONDITION_FALSE, NO_UPGRADE_REASON, False),
        (False, True, CONDITION_FALSE, REJECTED_REASON, True),
        (False, False, CONDITION_FALSE, NO_UPGRADE_REASON, True),
    ],
)
def test_gate_decision(all_confirmed, pending, status, reason, requeue):
    decision = gate_decision(all_confirmed, pending)
    assert decision[0] == status
    assert decision[1] == reason
    assert decision[3] is requeue


def test_gate_decision_messages():
    assert gate_decision(True, False)[2] == NO_UPGRADE_MESSAGE
    assert gate_decision(False, False)[2] == NOT_MET_MESSAGE


def test_blocking_consensus_object():
    blocked = make_operator_condition(
        "blocked",
        [{"type": constants.UPGRADEABLE_CONDITION, "status": CONDITION_FALSE}],
    )
    first, last = make_operator_condition("first"), make_operator_condition("last")
    assert blocking_consensus_object([first, blocked, last]) is blocked
    assert blocking_consensus_object([first, last]) is last


## UpgradeGate #################################################################


def test_missing_snapshot_requeues():
    client = MockClient()
    gate = UpgradeGate(client, OPERATOR_NAMESPACE)
    assert gate.reconcile(SUBSCRIPTION_NAME).requeue
    assert client.write_count() == 0


def test_rejected_while_instance_unconfirmed():
    client = MockClient()
    setup_fleet(client, [True, False], operator_conditions=2)
    gate = UpgradeGate(client, OPERATOR_NAMESPACE)

    result = gate.reconcile(SUBSCRIPTION_NAME)
    assert result.requeue
    assert result.requeue_params.requeue_after == datetime.timedelta(seconds=60)

    # Written to the last object when none is blocking yet
    cond = upgradeable(get_operator_condition(client, 1)["spec"]["conditions"])
    assert cond["status"] == CONDITION_FALSE
    assert cond["reason"] == REJECTED_REASON
    assert get_operator_condition(client, 0)["spec"]["conditions"] == []


def test_no_upgrade_while_instance_unconfirmed():
    client = MockClient()
    setup_fleet(client, [True, False], operator_conditions=1)
    result = UpgradeGate(client, OPERATOR_NAMESPACE).reconcile(SUBSCRIPTION_NAME)
    assert result.requeue
    cond = upgradeable(get_operator_condition(client, 0)["spec"]["conditions"])
    assert cond["status"] == CONDITION_FALSE
    assert cond["reason"] == NO_UPGRADE_REASON
    assert cond["message"] == NOT_MET_MESSAGE


def test_all_confirmed_without_pending_upgrade():
    client = MockClient()
    setup_fleet(client, [True, True], operator_conditions=1)
    result = UpgradeGate(client, OPERATOR_NAMESPACE).reconcile(SUBSCRIPTION_NAME)
    assert not result.requeue
    cond = upgradeable(get_operator_condition(client, 0)["spec"]["conditions"])
    assert cond["reason"] == NO_UPGRADE_REASON
    assert cond["message"] == NO_UPGRADE_MESSAGE


def test_approval_and_flip_back():
    client = MockClient()
    token = setup_fleet(client, [True, False], operator_conditions=2)
    gate = UpgradeGate(client, OPERATOR_NAMESPACE)
    gate.reconcile(SUBSCRIPTION_NAME)

    # Once every instance confirmed, the blocking object gets an override
    confirm_all(client, token)
    result = gate.reconcile(SUBSCRIPTION_NAME)
    assert not result.requeue
    blocking = get_operator_condition(client, 1)
    override = upgradeable(blocking["spec"]["overrides"])
    assert override["status"] == CONDITION_TRUE
    assert override["reason"] == APPROVED_REASON

    # Nothing to write on a repeated pass
    client.reset_counts()
    gate.reconcile(SUBSCRIPTION_NAME)
    assert client.update.call_count == 0

    # A new instance without confirmation closes the gate again
    client.create(setup_cr(name="late", namespace="ns-late"))
    result = gate.reconcile(SUBSCRIPTION_NAME)
    assert result.requeue
    blocking = get_operator_condition(client, 1)
    assert "overrides" not in blocking["spec"]
    cond = upgradeable(blocking["spec"]["conditions"])
    assert cond["status"] == CONDITION_FALSE
    assert cond["reason"] == REJECTED_REASON


def test_pending_threshold_from_config():
    client = MockClient()
    setup_fleet(client, [True], operator_conditions=2)
    with library_config(upgrade_gate={"requeue_seconds": 60, "pending_threshold": 2}):
        UpgradeGate(client, OPERATOR_NAMESPACE).reconcile(SUBSCRIPTION_NAME)
    cond = upgradeable(get_operator_condition(client, 0)["spec"]["conditions"])
    assert cond["reason"] == NO_UPGRADE_REASON


def test_watch_namespace_scope():
    client = MockClient()
    setup_fleet(client, [True, False], operator_conditions=1)
    result = UpgradeGate(client, OPERATOR_NAMESPACE, "ns-0").reconcile(
        SUBSCRIPTION_NAME
    )
    assert not result.requeue
    cond = upgradeable(get_operator_condition(client, 0)["spec"]["conditions"])
    assert cond["message"] == NO_UPGRADE_MESSAGE


## SubscriptionReconciler ######################################################


@pytest.mark.parametrize(
    ["name", "namespace", "expected"],
    [
        (SUBSCRIPTION_NAME, OPERATOR_NAMESPACE, True),
        ("other-operator", OPERATOR_NAMESPACE, False),
        (SUBSCRIPTION_NAME, "elsewhere", False),
    ],
)
def test_subscription_filter(name, namespace, expected):
    reconciler = SubscriptionReconciler(
        client=MockClient(), operator_namespace=OPERATOR_NAMESPACE
    )
    request = ReconcileRequest(name, namespace)
    assert reconciler.should_reconcile(request) is expected
    if not expected:
        assert not reconciler.reconcile(request).requeue
        assert reconciler.client.get.call_count == 0
