"""
The DryRunClient implements the ConvergenceClient interface against an
in-memory store instead of a cluster. It keeps the store semantics the
reconcilers rely on: generated uids, monotonically increasing resourceVersions
with conflict detection, create-only semantics for create, finalizer-aware and
cascading deletes, and watch notifications.
"""

# Standard
from datetime import datetime, timedelta
from queue import Empty, Queue
from threading import RLock
from typing import Callable, Dict, Iterator, List, Optional
import copy
import itertools
import os
import re
import uuid

# Third Party
import yaml

# First Party
import alog

# Local
from ..exceptions import AlreadyExistsError, ConflictError, NotFoundError
from ..managed_object import ManagedObject
from ..utils import now_timestamp, resource_key
from .base import (
    ConvergenceClientBase,
    KubeEventType,
    KubeWatchEvent,
    PropagationPolicy,
    object_identifiers,
)

log = alog.use_channel("DRY-RUN")

# Callback signature for registered watches
WATCH_CALLBACK = Callable[[KubeEventType, dict], None]


class DryRunClient(ConvergenceClientBase):
    """
    Convergence client which holds the state of the cluster in a local map
    keyed namespace -> kind -> apiVersion -> name
    """

    def __init__(
        self,
        resources: Optional[List[dict]] = None,
        resource_dir: Optional[str] = None,
    ):
        """Construct with an optional list of objects that already exist and
        an optional directory of yaml files holding more of them
        """
        self._cluster_content = {}
        self._lock = RLock()
        self._resource_versions = itertools.count(1)
        self._watches: Dict[str, List[WATCH_CALLBACK]] = {}
        for resource in (resources or []) + parse_resource_dir(resource_dir):
            self.create(resource)

    ## Interface ###############################################################

    def get(self, kind, name, namespace=None, api_version=None):
        log.debug2("DRY RUN get [%s/%s] in [%s]", kind, name, namespace)
        with self._lock:
            matches = [
                entries[name]
                for api_ver, entries in self._kind_entries(namespace, kind).items()
                if name in entries and api_version in (None, api_ver)
            ]
        log.debug3("Found %d matches for [%s/%s]", len(matches), kind, name)
        if len(matches) == 1:
            return copy.deepcopy(matches[0])
        return None

    def list(
        self,
        kind,
        namespace=None,
        api_version=None,
        label_selector=None,
        field_selector=None,
    ):  # pylint: disable=too-many-arguments
        log.debug2("DRY RUN list [%s] in [%s]", kind, namespace)
        namespaces = [namespace] if namespace is not None else None
        matches = []
        with self._lock:
            for ns_name, ns_entries in self._cluster_content.items():
                if namespaces is not None and ns_name not in namespaces:
                    continue
                for api_ver, entries in ns_entries.get(kind, {}).items():
                    if api_version not in (None, api_ver):
                        continue
                    for resource in entries.values():
                        labels = (resource.get("metadata") or {}).get("labels") or {}
                        if label_selector and not match_selector(
                            labels, label_selector
                        ):
                            continue
                        if field_selector and not match_selector(
                            _flatten(resource), field_selector
                        ):
                            continue
                        matches.append(copy.deepcopy(resource))
        log.debug3("Found %d objects of kind %s", len(matches), kind)
        return matches

    def create(self, obj):
        api_version, kind, name, namespace = object_identifiers(obj)
        log.debug("DRY RUN create [%s]", resource_key(obj))
        with self._lock:
            entries = self._entries(namespace, kind, api_version, create=True)
            if name in entries:
                raise AlreadyExistsError(f"{resource_key(obj)} already exists")
            stored = copy.deepcopy(obj)
            metadata = stored.setdefault("metadata", {})
            metadata["uid"] = str(uuid.uuid4())
            metadata["creationTimestamp"] = now_timestamp()
            metadata["resourceVersion"] = self._next_resource_version()
            entries[name] = stored
            result = copy.deepcopy(stored)
        self._notify(KubeEventType.ADDED, result)
        return result

    def update(self, obj):
        return self._write(obj, status_only=False)

    def update_status(self, obj):
        return self._write(obj, status_only=True)

    def delete(self, obj, propagation_policy=None):
        api_version, kind, name, namespace = object_identifiers(obj)
        log.debug(
            "DRY RUN delete [%s] with propagation %s",
            resource_key(obj),
            propagation_policy,
        )
        with self._lock:
            current = self._entries(namespace, kind, api_version).get(name)
            if current is None:
                return False
            metadata = current["metadata"]
            if metadata.get("finalizers"):
                log.debug2("Object has finalizers. Marking for deletion")
                metadata.setdefault("deletionTimestamp", now_timestamp())
                metadata["resourceVersion"] = self._next_resource_version()
                deleted = None
            else:
                deleted = self._remove(namespace, kind, current["apiVersion"], name)
        if deleted is None:
            self._notify(KubeEventType.MODIFIED, copy.deepcopy(current))
            return True
        self._notify(KubeEventType.DELETED, deleted)
        self._collect_dependents(deleted, propagation_policy)
        return True

    def watch_objects(
        self,
        kind,
        api_version=None,
        namespace=None,
        label_selector=None,
        timeout=15,
    ) -> Iterator[KubeWatchEvent]:  # pylint: disable=too-many-arguments
        """Watch the in-memory store by registering a callback that feeds a
        queue
        """
        event_queue = Queue()

        def enqueue(event_type: KubeEventType, manifest: dict):
            manifest_ns = (manifest.get("metadata") or {}).get("namespace")
            if namespace is not None and manifest_ns != namespace:
                return
            if api_version is not None and manifest.get("apiVersion") != api_version:
                return
            labels = (manifest.get("metadata") or {}).get("labels") or {}
            if label_selector and not match_selector(labels, label_selector):
                return
            event_queue.put(KubeWatchEvent(event_type, ManagedObject(manifest)))

        # Register before listing so no event between the two is lost
        self.register_watch(kind, enqueue)
        try:
            for manifest in self.list(
                kind,
                namespace=namespace,
                api_version=api_version,
                label_selector=label_selector,
            ):
                yield KubeWatchEvent(KubeEventType.ADDED, ManagedObject(manifest))

            end_time = datetime.max
            if timeout:
                end_time = datetime.now() + timedelta(seconds=timeout)
            while datetime.now() < end_time:
                remaining = (end_time - datetime.now()).total_seconds()
                try:
                    event = event_queue.get(timeout=max(min(remaining, 1), 0.01))
                except Empty:
                    continue
                log.debug2("Yielding event %s", event)
                yield event
        finally:
            self.unregister_watch(kind, enqueue)

    ## Dry Run Methods #########################################################

    def register_watch(self, kind: str, callback: WATCH_CALLBACK):
        """Register a callback for every change to objects of the given kind"""
        with self._lock:
            self._watches.setdefault(kind, []).append(callback)

    def unregister_watch(self, kind: str, callback: WATCH_CALLBACK):
        """Remove a previously registered callback"""
        with self._lock:
            callbacks = self._watches.get(kind, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def set_status_fields(self, kind: str, name: str, namespace: str, **fields):
        """Test hook to merge fields into an object's status without a
        resourceVersion check (e.g. to mark a job succeeded)
        """
        with self._lock:
            matches = [
                entries[name]
                for entries in self._kind_entries(namespace, kind).values()
                if name in entries
            ]
            assert len(matches) == 1, f"No unique {kind}/{name} in {namespace}"
            current = matches[0]
            current.setdefault("status", {}).update(copy.deepcopy(fields))
            current["metadata"]["resourceVersion"] = self._next_resource_version()
            result = copy.deepcopy(current)
        self._notify(KubeEventType.MODIFIED, result)
        return result

    ## Implementation Details ##################################################

    def _next_resource_version(self) -> str:
        return str(next(self._resource_versions))

    def _kind_entries(self, namespace, kind) -> dict:
        return self._cluster_content.get(namespace, {}).get(kind, {})

    def _entries(self, namespace, kind, api_version, create=False) -> dict:
        if create:
            return (
                self._cluster_content.setdefault(namespace, {})
                .setdefault(kind, {})
                .setdefault(api_version, {})
            )
        return self._kind_entries(namespace, kind).get(api_version, {})

    def _write(self, obj: dict, status_only: bool) -> dict:
        api_version, kind, name, namespace = object_identifiers(obj)
        log.debug(
            "DRY RUN %s [%s]",
            "update_status" if status_only else "update",
            resource_key(obj),
        )
        with self._lock:
            current = self._entries(namespace, kind, api_version).get(name)
            if current is None:
                raise NotFoundError(f"{resource_key(obj)} not found")
            expected_version = (obj.get("metadata") or {}).get("resourceVersion")
            current_version = current["metadata"]["resourceVersion"]
            if expected_version and expected_version != current_version:
                log.debug2(
                    "Stale resourceVersion %s != %s",
                    expected_version,
                    current_version,
                )
                raise ConflictError(
                    f"{resource_key(obj)} was modified (resourceVersion "
                    f"{expected_version} != {current_version})"
                )

            updated = copy.deepcopy(current)
            if status_only:
                updated["status"] = copy.deepcopy(obj.get("status"))
            else:
                updated = copy.deepcopy(obj)
                updated.pop("status", None)
                if "status" in current:
                    updated["status"] = copy.deepcopy(current["status"])
                metadata = updated.setdefault("metadata", {})
                for key in ("uid", "creationTimestamp", "deletionTimestamp"):
                    if key in current["metadata"]:
                        metadata[key] = current["metadata"][key]

            updated["metadata"]["resourceVersion"] = current_version
            if updated == current:
                log.debug2("No change for %s", resource_key(obj))
                return copy.deepcopy(current)

            updated["metadata"]["resourceVersion"] = self._next_resource_version()
            entries = self._entries(namespace, kind, api_version)
            entries[name] = updated

            # Clearing the finalizers of an object marked for deletion
            # completes the deletion
            if updated["metadata"].get("deletionTimestamp") and not updated[
                "metadata"
            ].get("finalizers"):
                deleted = self._remove(namespace, kind, api_version, name)
            else:
                deleted = None
            result = copy.deepcopy(updated)

        if deleted is not None:
            self._notify(KubeEventType.DELETED, deleted)
        else:
            self._notify(KubeEventType.MODIFIED, result)
        return result

    def _remove(self, namespace, kind, api_version, name) -> dict:
        removed = self._cluster_content[namespace][kind][api_version].pop(name)
        if not self._cluster_content[namespace][kind][api_version]:
            del self._cluster_content[namespace][kind][api_version]
        if not self._cluster_content[namespace][kind]:
            del self._cluster_content[namespace][kind]
        if not self._cluster_content[namespace]:
            del self._cluster_content[namespace]
        return removed

    def _collect_dependents(
        self, owner: dict, propagation_policy: Optional[PropagationPolicy]
    ):
        """Emulate the garbage collector for objects owned by a deleted object"""
        owner_uid = owner["metadata"]["uid"]
        with self._lock:
            dependents = [
                resource
                for ns_entries in self._cluster_content.values()
                for kind_entries in ns_entries.values()
                for entries in kind_entries.values()
                for resource in entries.values()
                if owner_uid
                in [
                    ref.get("uid")
                    for ref in resource["metadata"].get("ownerReferences", [])
                ]
            ]
        for dependent in dependents:
            if propagation_policy == PropagationPolicy.ORPHAN:
                log.debug2("Orphaning %s", resource_key(dependent))
                orphan = copy.deepcopy(dependent)
                orphan["metadata"]["ownerReferences"] = [
                    ref
                    for ref in orphan["metadata"]["ownerReferences"]
                    if ref.get("uid") != owner_uid
                ]
                self.update(orphan)
            else:
                log.debug2("Collecting dependent %s", resource_key(dependent))
                self.delete(dependent, propagation_policy)

    def _notify(self, event_type: KubeEventType, manifest: dict):
        with self._lock:
            callbacks = list(self._watches.get(manifest.get("kind"), []))
        for callback in callbacks:
            log.debug3("Calling watch callback for %s", resource_key(manifest))
            callback(event_type, copy.deepcopy(manifest))


## Selectors ###################################################################

# Terms are separated by commas that are not inside a parenthesized value set
_TERM_SPLIT = re.compile(r",(?![^()]*\))")
_SET_TERM = re.compile(r"^([^\s!=]+)\s+(in|notin)\s+\((.*)\)$")
_EQUALITY_TERM = re.compile(r"^([^\s!=]+)\s*(==|=|!=)\s*(.*)$")
_EXISTS_TERM = re.compile(r"^(!?)\s*([^\s!=]+)$")


def match_selector(values: dict, selector: str) -> bool:
    """Evaluate a kubernetes label or field selector against a flat dict of
    values. All comma separated terms must match.

    CITE: https://kubernetes.io/docs/concepts/overview/working-with-objects/labels/
    """
    for term in _TERM_SPLIT.split(selector):
        term = term.strip()
        if not term:
            continue
        if not _match_term(values, term):
            log.debug3("Term [%s] does not match %s", term, values)
            return False
    return True


def _match_term(values: dict, term: str) -> bool:
    set_match = _SET_TERM.match(term)
    if set_match:
        key, operator, options = set_match.groups()
        value = _as_str(values.get(key))
        in_set = value in [opt.strip() for opt in options.split(",")]
        return in_set if operator == "in" else not in_set

    equality_match = _EQUALITY_TERM.match(term)
    if equality_match:
        key, operator, expected = equality_match.groups()
        value = _as_str(values.get(key))
        if operator == "!=":
            return value != expected.strip()
        return value == expected.strip()

    exists_match = _EXISTS_TERM.match(term)
    if exists_match:
        negate, key = exists_match.groups()
        return (key in values) != bool(negate)

    log.warning("Unparseable selector term [%s]", term)
    return False


def _as_str(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def _flatten(dictionary: dict, prefix: str = "") -> dict:
    """Convert {a: {b: 1}, c: 2} into {"a.b": 1, "c": 2} for field selectors"""
    output = {}
    for key, value in dictionary.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict):
            output.update(_flatten(value, full_key))
        else:
            output[full_key] = value
    return output


## Resource files ##############################################################


def parse_resource_dir(resource_dir: Optional[str]) -> List[dict]:
    """If given, this will parse all yaml files found in the given directory"""
    all_resources = []
    if resource_dir is not None:
        for fname in sorted(os.listdir(resource_dir)):
            if fname.endswith(".yaml") or fname.endswith(".yml"):
                resource_path = os.path.join(resource_dir, fname)
                log.debug3("Reading resource file [%s]", resource_path)
                with open(resource_path, encoding="utf-8") as handle:
                    all_resources.extend(
                        doc for doc in yaml.safe_load_all(handle) if doc
                    )
    return all_resources
