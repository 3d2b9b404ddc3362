"""
This defines the base class for all ConvergenceClient types. A ConvergenceClient
is the operator's only path to the declarative store: every read and write a
reconcile performs goes through one.
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional
import abc

# Local
from ..managed_object import ManagedObject


class PropagationPolicy(Enum):
    """Deletion propagation policies understood by the store"""

    FOREGROUND = "Foreground"
    BACKGROUND = "Background"
    ORPHAN = "Orphan"


class KubeEventType(Enum):
    """Enum for all possible kubernetes event types"""

    DELETED = "DELETED"
    MODIFIED = "MODIFIED"
    ADDED = "ADDED"


@dataclass
class KubeWatchEvent:
    """The type, resource, and timestamp of a single watch event"""

    type: KubeEventType
    resource: ManagedObject
    timestamp: datetime = field(default_factory=datetime.now)


class ConvergenceClientBase(abc.ABC):
    """
    Base class for clients of the declarative store. Reads return plain dict
    manifests. Writes use optimistic concurrency: an update carrying a stale
    metadata.resourceVersion raises ConflictError and the caller requeues.
    """

    @abc.abstractmethod
    def get(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Optional[dict]:
        """Fetch a single object by name

        Args:
            kind:  str
                The kind of the object to fetch
            name:  str
                The name of the object to fetch
            namespace:  Optional[str]
                The namespace to search for the object
            api_version:  Optional[str]
                The api_version of the resource kind to fetch

        Returns:
            current_state:  Optional[dict]
                The dict representation of the object, or None if not present
        """

    @abc.abstractmethod
    def list(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> List[dict]:
        """List objects of a kind matching either/both selectors

        Args:
            kind:  str
                The kind of the objects to list
            namespace:  Optional[str]
                The namespace to search, or None for all namespaces
            api_version:  Optional[str]
                The api_version of the resource kind
            label_selector:  Optional[str]
                The label selector to filter the objects
            field_selector:  Optional[str]
                The field selector to filter the objects

        Returns:
            objects:  List[dict]
                The matching objects, or an empty list if none match
        """

    @abc.abstractmethod
    def create(self, obj: dict) -> dict:
        """Create a new object

        Args:
            obj:  dict
                The full manifest to create

        Returns:
            created:  dict
                The object as stored (with uid and resourceVersion)

        Raises:
            AlreadyExistsError: If an object with the same key exists
        """

    @abc.abstractmethod
    def update(self, obj: dict) -> dict:
        """Replace the object (excluding status)

        Args:
            obj:  dict
                The full manifest, carrying the resourceVersion it was read at

        Returns:
            updated:  dict
                The object as stored

        Raises:
            ConflictError: If the resourceVersion is stale
            NotFoundError: If the object does not exist
        """

    @abc.abstractmethod
    def update_status(self, obj: dict) -> dict:
        """Replace only the status of the object

        Args:
            obj:  dict
                The full manifest, carrying the resourceVersion it was read at
                and the desired status

        Returns:
            updated:  dict
                The object as stored

        Raises:
            ConflictError: If the resourceVersion is stale
            NotFoundError: If the object does not exist
        """

    @abc.abstractmethod
    def delete(
        self,
        obj: dict,
        propagation_policy: Optional[PropagationPolicy] = None,
    ) -> bool:
        """Delete the object if present

        Args:
            obj:  dict
                A manifest identifying the object (apiVersion, kind, name,
                namespace)
            propagation_policy:  Optional[PropagationPolicy]
                How dependents of the object are handled

        Returns:
            deleted:  bool
                True if the object existed and a delete was issued
        """

    @abc.abstractmethod
    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[KubeWatchEvent]:
        """Stream change events for a kind

        Args:
            kind:  str
                The kind of the objects to watch
            api_version:  Optional[str]
                The api_version of the resource kind
            namespace:  Optional[str]
                The namespace to watch, or None for all namespaces
            label_selector:  Optional[str]
                The label selector to filter the objects
            timeout:  Optional[float]
                Seconds after which the stream ends

        Returns:
            watch_stream:  Iterator[KubeWatchEvent]
                A stream of events, starting with ADDED for existing objects
        """


def object_identifiers(obj: dict):
    """Pull (api_version, kind, name, namespace) out of a manifest"""
    metadata = obj.get("metadata") or {}
    return (
        obj.get("apiVersion"),
        obj.get("kind"),
        metadata.get("name"),
        metadata.get("namespace"),
    )
