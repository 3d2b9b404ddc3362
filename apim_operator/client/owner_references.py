"""
This module holds common functionality for stamping ownerReferences onto the
objects the operator creates so that they are garbage collected with their
owner and so that their events can be mapped back to it
"""

# Standard
import copy

# First Party
import alog

log = alog.use_channel("OWNRF")


def set_owner_reference(owner: dict, child: dict) -> dict:
    """Return a copy of the child with a controller reference to the owner
    merged into its ownerReferences. References to other owners are kept and an
    existing reference to this owner is replaced.

    Args:
        owner:  dict
            The full manifest of the owning object (must carry a uid)
        child:  dict
            The manifest of the owned object

    Returns:
        owned_child:  dict
            A copy of child with the owner reference in place
    """
    _validate_object_struct(owner)
    _validate_object_struct(child)
    owned_child = copy.deepcopy(child)

    owner_uid = owner["metadata"].get("uid")
    assert owner_uid, "Cannot reference an owner without a uid"
    if owned_child["metadata"].get("uid") == owner_uid:
        log.debug2("Owner is same as child; Not adding owner ref")
        return owned_child

    owner_namespace = owner["metadata"].get("namespace")
    child_namespace = owned_child["metadata"].get("namespace")
    if owner_namespace and owner_namespace != child_namespace:
        log.debug2(
            "Owner namespace [%s] differs from child namespace [%s]",
            owner_namespace,
            child_namespace,
        )
        return owned_child

    owner_refs = [
        ref
        for ref in owned_child["metadata"].get("ownerReferences", [])
        if ref.get("uid") != owner_uid
    ]
    owner_refs.append(make_owner_reference(owner))
    log.debug4("Final owner refs: %s", owner_refs)
    owned_child["metadata"]["ownerReferences"] = owner_refs
    return owned_child


def make_owner_reference(owner: dict, controller: bool = True) -> dict:
    """Make an owner reference for the given object

    Args:
        owner:  dict
            The full manifest for the owning resource
        controller:  bool
            Whether the owner is the managing controller of the child

    Returns:
        owner_reference:  dict
            The dict entry for the `metadata.ownerReferences` entry of the owned
            object
    """
    metadata = owner.get("metadata", {})
    return {
        "apiVersion": owner.get("apiVersion"),
        "kind": owner.get("kind"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": controller,
        # The owner will not be deleted until this object completes its
        # deletion
        "blockOwnerDeletion": True,
    }


## Implementation Details ######################################################


def _validate_object_struct(obj: dict):
    """Ensure that kind, apiVersion and metadata.name are present"""
    assert "kind" in obj, "Got object without 'kind'"
    assert "apiVersion" in obj, "Got object without 'apiVersion'"
    metadata = obj.get("metadata")
    assert isinstance(metadata, dict), "Got object with non-dict 'metadata'"
    assert "name" in metadata, "Got object without 'metadata.name'"
