"""
Tests for the set_owner_reference functionality
"""

# Third Party
import pytest

# First Party
import alog

# Local
from apim_operator.client import make_owner_reference, set_owner_reference
from apim_operator.test_helpers.helpers import SOME_OTHER_NAMESPACE, TEST_NAMESPACE

## Helpers #####################################################################

log = alog.use_channel("TEST")

SAMPLE_OWNER = {
    "kind": "APIManager",
    "apiVersion": "apps.3scale.net/v1alpha1",
    "metadata": {
        "name": "owner",
        "namespace": TEST_NAMESPACE,
        "uid": "12345",
    },
}


def sample_object(namespace=TEST_NAMESPACE):
    return {
        "kind": "Deployment",
        "apiVersion": "apps/v1",
        "metadata": {
            "name": "child",
            "namespace": namespace,
            "uid": "54321",
        },
    }


## Happy Path ##################################################################


def test_add_new_owner_ref():
    """Test that adding a ref to an object with none present adds as expected"""
    obj = sample_object()
    owned = set_owner_reference(SAMPLE_OWNER, obj)
    assert owned["metadata"]["ownerReferences"] == [make_owner_reference(SAMPLE_OWNER)]
    assert "ownerReferences" not in obj["metadata"]


def test_owner_reference_content():
    ref = make_owner_reference(SAMPLE_OWNER)
    assert ref == {
        "apiVersion": "apps.3scale.net/v1alpha1",
        "kind": "APIManager",
        "name": "owner",
        "uid": "12345",
        "controller": True,
        "blockOwnerDeletion": True,
    }


def test_no_owner_ref_if_namespace_mismatch():
    """Test that a ref is only added if owner and object are in the same
    namespace
    """
    owned = set_owner_reference(
        SAMPLE_OWNER, sample_object(namespace=SOME_OTHER_NAMESPACE)
    )
    assert "ownerReferences" not in owned["metadata"]


def test_no_duplicate():
    """Test that an object with an existing ref for the owner does not
    duplicate the existing ref
    """
    obj = sample_object()
    obj["metadata"]["ownerReferences"] = [make_owner_reference(SAMPLE_OWNER)]
    owned = set_owner_reference(SAMPLE_OWNER, obj)
    assert owned["metadata"]["ownerReferences"] == [make_owner_reference(SAMPLE_OWNER)]


def test_other_owners_kept():
    """Test that references to other owners are not dropped"""
    other_ref = {"apiVersion": "v1", "kind": "Other", "name": "other", "uid": "999"}
    obj = sample_object()
    obj["metadata"]["ownerReferences"] = [other_ref]
    owned = set_owner_reference(SAMPLE_OWNER, obj)
    assert owned["metadata"]["ownerReferences"] == [
        other_ref,
        make_owner_reference(SAMPLE_OWNER),
    ]


def test_self_reference_skipped():
    obj = sample_object()
    obj["metadata"]["uid"] = SAMPLE_OWNER["metadata"]["uid"]
    owned = set_owner_reference(SAMPLE_OWNER, obj)
    assert "ownerReferences" not in owned["metadata"]


## Errors ######################################################################


def test_owner_without_uid():
    owner = {
        "kind": "APIManager",
        "apiVersion": "apps.3scale.net/v1alpha1",
        "metadata": {"name": "owner", "namespace": TEST_NAMESPACE},
    }
    with pytest.raises(AssertionError):
        set_owner_reference(owner, sample_object())


def test_malformed_child():
    with pytest.raises(AssertionError):
        set_owner_reference(SAMPLE_OWNER, {"kind": "Deployment", "metadata": {}})
