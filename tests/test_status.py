"""
Tests for the APIManager status helpers
"""

# Third Party
import pytest

# First Party
import alog

# Local
from apim_operator import status
from apim_operator.conditions import CONDITION_FALSE, CONDITION_TRUE
from apim_operator.constants import (
    DISABLE_ASYNC_ANNOTATION,
    RELEASE_VERSION_ANNOTATION,
    RHT_THREESCALE_VERSION,
)
from apim_operator.test_helpers.helpers import (
    TEST_NAMESPACE,
    MockClient,
    configure_logging,
    make_deployment,
    make_route,
    setup_cr,
)

configure_logging()
log = alog.use_channel("TEST")

NOW = "2024-01-01T00:00:00Z"

## Deployments #################################################################


def test_deployment_rollup():
    deployments = [
        make_deployment("b-ready"),
        make_deployment("a-ready"),
        make_deployment("starting", available=False),
        make_deployment("stopped", replicas=0),
    ]
    assert status.deployment_rollup(deployments) == {
        "ready": ["a-ready", "b-ready"],
        "starting": ["starting"],
        "stopped": ["stopped"],
    }


def test_deployment_rollup_owner_filter():
    owner = setup_cr()
    owner["metadata"]["uid"] = "owner-uid"
    deployments = [make_deployment("owned", owner=owner), make_deployment("other")]
    rollup = status.deployment_rollup(deployments, owner_uid="owner-uid")
    assert rollup["ready"] == ["owned"]


def test_deployments_available():
    deployments = [make_deployment("a"), make_deployment("b", available=False)]
    assert status.deployments_available(deployments, ["a"])
    assert not status.deployments_available(deployments, ["a", "b"])
    assert not status.deployments_available(deployments, ["missing"])


## Routes ######################################################################


def test_default_route_hosts():
    spec = {"tenantName": "3scale", "wildcardDomain": "example.com"}
    assert status.default_route_hosts(spec) == [
        "backend-3scale.example.com",
        "api-3scale-apicast-production.example.com",
        "api-3scale-apicast-staging.example.com",
        "master.example.com",
        "3scale.example.com",
        "3scale-admin.example.com",
    ]


def test_default_route_hosts_zync_disabled():
    spec = {
        "tenantName": "3scale",
        "wildcardDomain": "example.com",
        "zync": {"enabled": False},
    }
    assert status.default_route_hosts(spec) == ["backend-3scale.example.com"]


def test_default_route_hosts_no_tenant():
    assert status.default_route_hosts({"wildcardDomain": "example.com"}) == []


def test_routes_ready():
    routes = [
        make_route("backend", "backend-3scale.example.com"),
        make_route("master", "master.example.com", admitted=False),
    ]
    assert status.routes_ready(routes, ["backend-3scale.example.com"])
    assert not status.routes_ready(routes, ["master.example.com"])
    assert not status.routes_ready(routes, ["missing.example.com"])
    assert not status.routes_ready(routes, [])


def test_route_without_ingress_not_admitted():
    route = make_route("backend", "backend-3scale.example.com")
    route["status"] = {}
    assert not status.is_route_admitted(route)


## Secrets #####################################################################


def test_missing_watched_secrets():
    client = MockClient(
        resources=[
            {
                "apiVersion": "v1",
                "kind": "Secret",
                "metadata": {"name": "present", "namespace": TEST_NAMESPACE},
            }
        ]
    )
    assert status.missing_watched_secrets(
        client, TEST_NAMESPACE, ["present", "absent"]
    ) == ["absent"]


## Conditions ##################################################################


def test_available_condition():
    cond = status.available_condition(True, True, [], now=NOW)
    assert cond["status"] == CONDITION_TRUE
    assert cond["reason"] == ""
    cond = status.available_condition(False, True, [], now=NOW)
    assert cond["status"] == CONDITION_FALSE


def test_available_condition_missing_secrets():
    cond = status.available_condition(True, True, ["s1", "s2"], now=NOW)
    assert cond["status"] == CONDITION_FALSE
    assert cond["reason"] == status.MISSING_SECRETS_REASON
    assert cond["message"] == "The following secret(s) could not be found: s1, s2"


def active_warnings(manifest):
    return [warning.reason for warning, active in status.warnings(manifest) if active]


def test_no_warnings_by_default():
    assert active_warnings(setup_cr(spec={})) == []


def test_hpa_warnings():
    manifest = setup_cr(
        spec={
            "resourceRequirementsEnabled": False,
            "backend": {"listenerSpec": {"hpa": True}},
        },
        annotations={DISABLE_ASYNC_ANNOTATION: "true"},
    )
    assert active_warnings(manifest) == [
        status.HPA_NO_RESOURCES_WARNING.reason,
        status.HPA_WARNING.reason,
        status.HPA_ASYNC_DISABLED_WARNING.reason,
    ]


def test_apicast_hpa_does_not_trigger_async_warning():
    manifest = setup_cr(
        spec={"apicast": {"productionSpec": {"hpa": True}}},
        annotations={DISABLE_ASYNC_ANNOTATION: "true"},
    )
    assert active_warnings(manifest) == [status.HPA_WARNING.reason]


def test_opentracing_warnings():
    manifest = setup_cr(
        spec={
            "apicast": {
                "stagingSpec": {"openTracing": {"enabled": True}},
                "productionSpec": {"openTracing": {"enabled": True}},
            }
        }
    )
    assert active_warnings(manifest) == [
        status.STAGING_OPENTRACING_WARNING.reason,
        status.PRODUCTION_OPENTRACING_WARNING.reason,
    ]


## Preflights ##################################################################


@pytest.mark.parametrize(
    ["installed", "snapshot_values", "error", "expected_status", "expected_message"],
    [
        (
            None,
            {RHT_THREESCALE_VERSION: "2.15"},
            None,
            CONDITION_TRUE,
            status.PREFLIGHTS_OK_MESSAGE,
        ),
        (
            None,
            None,
            None,
            CONDITION_FALSE,
            status.PREFLIGHTS_NO_CONFIGMAP_MESSAGE,
        ),
        (
            "2.14",
            {RHT_THREESCALE_VERSION: "2.15"},
            "mysql too old",
            CONDITION_FALSE,
            status.PREFLIGHTS_FAILED_TEMPLATE.format("mysql too old"),
        ),
        (
            "2.13",
            {RHT_THREESCALE_VERSION: "2.15"},
            None,
            CONDITION_FALSE,
            "Preflights failed. " + status.PREFLIGHTS_MULTI_HOP_MESSAGE,
        ),
        (
            "2.15",
            {RHT_THREESCALE_VERSION: "2.16"},
            None,
            CONDITION_TRUE,
            status.PREFLIGHTS_UPGRADE_OK_MESSAGE,
        ),
        (
            "2.15",
            {RHT_THREESCALE_VERSION: "2.15"},
            None,
            CONDITION_TRUE,
            status.PREFLIGHTS_OK_MESSAGE,
        ),
    ],
)
def test_preflights_condition(
    installed, snapshot_values, error, expected_status, expected_message
):
    annotations = {} if installed is None else {RELEASE_VERSION_ANNOTATION: installed}
    manifest = setup_cr(annotations=annotations)
    cond = status.preflights_condition(
        manifest, snapshot_values, error, "2.15", now=NOW
    )
    assert cond["type"] == "Preflights"
    assert cond["reason"] == status.PREFLIGHTS_REASON
    assert cond["status"] == expected_status
    assert cond["message"] == expected_message


def test_multi_hop_message():
    assert "None" not in status.multi_hop_message(None)
    assert status.multi_hop_message("mysql too old") == (
        "Preflights failed - mysql too old. " + status.PREFLIGHTS_MULTI_HOP_MESSAGE
    )


@pytest.mark.parametrize(
    ["installed", "expected"],
    [(None, False), ("2.14", False), ("2.15", False), ("2.13", True), ("1.15", True)],
)
def test_multi_minor_hop_detected(installed, expected):
    annotations = {} if installed is None else {RELEASE_VERSION_ANNOTATION: installed}
    manifest = setup_cr(annotations=annotations)
    assert status.multi_minor_hop_detected(manifest, "2.15") is expected
