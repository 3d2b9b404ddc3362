"""
Tests for the OpenshiftClient with a mocked DynamicClient
"""

# Standard
from unittest import mock

# Third Party
from kubernetes.client.rest import ApiException
from openshift.dynamic.exceptions import ConflictError as ApiConflictError
from openshift.dynamic.exceptions import (
    ForbiddenError,
    NotFoundError as ApiNotFoundError,
    ResourceNotFoundError,
    ServiceUnavailableError,
)
import pytest

# First Party
import alog

# Local
from apim_operator.client import OpenshiftClient, PropagationPolicy
from apim_operator.exceptions import AlreadyExistsError, ConflictError, NotFoundError
from apim_operator.test_helpers.helpers import (
    TEST_NAMESPACE,
    configure_logging,
    library_config,
)

configure_logging()
log = alog.use_channel("TEST")

## Helpers #####################################################################


def api_error(error_class, status):
    return error_class(ApiException(status=status, reason=error_class.__name__))


def make_obj(name="test-cm"):
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": name,
            "namespace": TEST_NAMESPACE,
            "resourceVersion": "1",
        },
        "data": {"key": "value"},
    }


def returns(value):
    """A mock result of a DynamicClient call"""
    result = mock.MagicMock()
    result.to_dict.return_value = value
    return result


def setup_client():
    """Make an OpenshiftClient around a mocked DynamicClient with a single
    resource handle
    """
    dynamic_client = mock.MagicMock()
    handle = mock.MagicMock()
    handle.group_version = "v1"
    handle.kind = "ConfigMap"
    dynamic_client.resources.get.return_value = handle
    return OpenshiftClient(dynamic_client), handle


## Reads #######################################################################


def test_get_found():
    client, handle = setup_client()
    handle.get.return_value = returns(make_obj())
    assert client.get("ConfigMap", "test-cm", namespace=TEST_NAMESPACE) == make_obj()
    handle.get.assert_called_once_with(name="test-cm", namespace=TEST_NAMESPACE)


def test_get_not_found():
    client, handle = setup_client()
    handle.get.side_effect = api_error(ApiNotFoundError, 404)
    assert client.get("ConfigMap", "test-cm", namespace=TEST_NAMESPACE) is None


def test_get_unknown_kind():
    """Make sure an unknown kind is reported as a missing object"""
    client, _ = setup_client()
    client.client.resources.get.side_effect = ResourceNotFoundError("nope")
    assert client.get("Unknown", "test", namespace=TEST_NAMESPACE) is None


def test_list_fills_type_information():
    """Make sure list items carry apiVersion and kind"""
    client, handle = setup_client()
    item = make_obj()
    del item["apiVersion"]
    del item["kind"]
    handle.get.return_value = returns({"items": [item]})
    assert client.list("ConfigMap", namespace=TEST_NAMESPACE) == [make_obj()]


def test_list_forbidden():
    client, handle = setup_client()
    handle.get.side_effect = api_error(ForbiddenError, 403)
    assert client.list("ConfigMap") == []


## Writes ######################################################################


def test_create_already_exists():
    client, handle = setup_client()
    handle.create.side_effect = api_error(ApiConflictError, 409)
    with pytest.raises(AlreadyExistsError):
        client.create(make_obj())


def test_update_conflict():
    client, handle = setup_client()
    handle.replace.side_effect = api_error(ApiConflictError, 409)
    with pytest.raises(ConflictError):
        client.update(make_obj())


def test_update_status_not_found():
    client, handle = setup_client()
    handle.status.replace.side_effect = api_error(ApiNotFoundError, 404)
    with pytest.raises(NotFoundError):
        client.update_status(make_obj())


def test_update_status_uses_status_subresource():
    client, handle = setup_client()
    handle.status.replace.return_value = returns(make_obj())
    assert client.update_status(make_obj()) == make_obj()
    handle.status.replace.assert_called_once_with(
        body=make_obj(), namespace=TEST_NAMESPACE
    )
    handle.replace.assert_not_called()


def test_delete_propagation_policy():
    """Make sure the propagation policy is sent in the delete options"""
    client, handle = setup_client()
    assert client.delete(make_obj(), propagation_policy=PropagationPolicy.FOREGROUND)
    handle.delete.assert_called_once_with(
        name="test-cm",
        namespace=TEST_NAMESPACE,
        body={
            "kind": "DeleteOptions",
            "apiVersion": "v1",
            "propagationPolicy": "Foreground",
        },
    )


def test_delete_not_found():
    client, handle = setup_client()
    handle.delete.side_effect = api_error(ApiNotFoundError, 404)
    assert not client.delete(make_obj())


## Retries #####################################################################


def test_transient_errors_retried():
    """Make sure transient errors are retried with backoff"""
    client, handle = setup_client()
    handle.get.side_effect = [
        api_error(ServiceUnavailableError, 503),
        returns(make_obj()),
    ]
    with library_config(client_retries=2, retry_backoff_base_seconds=0):
        assert client.get("ConfigMap", "test-cm", namespace=TEST_NAMESPACE)
    assert handle.get.call_count == 2


def test_transient_errors_exhausted():
    client, handle = setup_client()
    handle.get.side_effect = api_error(ServiceUnavailableError, 503)
    with library_config(client_retries=1, retry_backoff_base_seconds=0):
        with pytest.raises(ServiceUnavailableError):
            client.get("ConfigMap", "test-cm", namespace=TEST_NAMESPACE)
    assert handle.get.call_count == 2
