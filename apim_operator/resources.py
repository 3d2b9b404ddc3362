"""
Helpers to converge a single desired object against the store.

A desired object is created when absent, deleted when it carries the delete
tag, and otherwise handed to a mutator together with the existing object. The
mutator edits the existing object in place and reports whether it changed, in
which case the result is written back with update().
"""

# Standard
from enum import Enum
from typing import Callable, Optional
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from .client import ConvergenceClientBase, PropagationPolicy
from .constants import DELETE_PROPAGATION_POLICY_ANNOTATION, DELETE_TAG_ANNOTATION
from .exceptions import AlreadyExistsError
from .utils import get_annotation, merge_configs, resource_key

log = alog.use_channel("RSRCS")

# Signature of a mutator: (existing, desired) -> changed
MUTATOR = Callable[[dict, dict], bool]

# Top level sections copied from the desired object by the merge mutator
MERGED_SECTIONS = ("spec", "data")


class ResourceAction(Enum):
    """What reconcile_resource did"""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


def create_only_mutator(existing: dict, desired: dict) -> bool:
    """Never change an object after it was created"""
    return False


def merge_mutator(existing: dict, desired: dict) -> bool:
    """Deep merge the desired labels, annotations, spec and data onto the
    existing object. Fields set only on the existing object are kept.
    """
    before = copy.deepcopy(existing)
    existing_metadata = existing.setdefault("metadata", {})
    desired_metadata = desired.get("metadata") or {}
    for key in ("labels", "annotations"):
        if desired_metadata.get(key):
            existing_metadata[key] = merge_configs(
                existing_metadata.get(key) or {}, copy.deepcopy(desired_metadata[key])
            )
    for section in MERGED_SECTIONS:
        if section not in desired:
            continue
        if isinstance(desired[section], dict) and isinstance(
            existing.get(section), dict
        ):
            merge_configs(existing[section], copy.deepcopy(desired[section]))
        else:
            existing[section] = copy.deepcopy(desired[section])
    diff = DeepDiff(before, existing)
    if diff:
        log.debug3("Merge changed %s: %s", resource_key(existing), diff)
    return bool(diff)


def tag_for_deletion(
    obj: dict, propagation_policy: Optional[PropagationPolicy] = None
) -> dict:
    """Return a copy of the desired object marked to be deleted instead of
    applied
    """
    tagged = copy.deepcopy(obj)
    annotations = tagged.setdefault("metadata", {}).setdefault("annotations", {})
    annotations[DELETE_TAG_ANNOTATION] = "true"
    if propagation_policy is not None:
        annotations[DELETE_PROPAGATION_POLICY_ANNOTATION] = PropagationPolicy(
            propagation_policy
        ).value
    return tagged


def is_tagged_for_deletion(obj: dict) -> bool:
    return get_annotation(obj, DELETE_TAG_ANNOTATION) == "true"


def reconcile_resource(
    client: ConvergenceClientBase,
    desired: dict,
    mutator: MUTATOR = create_only_mutator,
) -> ResourceAction:
    """Converge a single desired object

    Args:
        client:  ConvergenceClientBase
            The client to read and write with
        desired:  dict
            The desired manifest
        mutator:  MUTATOR
            Function used to bring an existing object in line with desired

    Returns:
        action:  ResourceAction
            The write that was performed, if any
    """
    metadata = desired.get("metadata") or {}
    existing = client.get(
        desired["kind"],
        metadata.get("name"),
        namespace=metadata.get("namespace"),
        api_version=desired.get("apiVersion"),
    )

    if existing is None:
        if is_tagged_for_deletion(desired):
            log.debug3("Tagged object %s already absent", resource_key(desired))
            return ResourceAction.UNCHANGED
        log.info("Creating %s", resource_key(desired))
        try:
            client.create(desired)
        except AlreadyExistsError:
            log.debug("%s created concurrently", resource_key(desired))
            return ResourceAction.UNCHANGED
        return ResourceAction.CREATED

    if is_tagged_for_deletion(desired):
        policy = get_annotation(desired, DELETE_PROPAGATION_POLICY_ANNOTATION)
        log.info("Deleting %s (propagation %s)", resource_key(desired), policy)
        client.delete(
            existing,
            propagation_policy=PropagationPolicy(policy) if policy else None,
        )
        return ResourceAction.DELETED

    if mutator(existing, desired):
        log.info("Updating %s", resource_key(desired))
        client.update(existing)
        return ResourceAction.UPDATED

    log.debug3("No change for %s", resource_key(desired))
    return ResourceAction.UNCHANGED
