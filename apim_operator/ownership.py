"""
The OwnershipTracker maps a change event on any object back to the managed
resources that own it, so that the owners are reconciled. Ownership is read
from metadata.ownerReferences. Some children are owned through an intermediate
object (e.g. a Pod owned by the zync-que workload), so the walk follows a fixed
set of pass-through kinds up to a bounded depth.
"""

# Standard
from collections import deque
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union

# First Party
import alog

# Local
from .client import ConvergenceClientBase
from .managed_object import ManagedObject
from .utils import parse_api_version
from .work_queue import ReconcileRequest

log = alog.use_channel("OWNER")


@dataclass(frozen=True)
class PassThroughKind:
    """An intermediate owner kind whose own owners should be reconciled. If
    name is set, only the object with that name passes through.
    """

    group: str
    kind: str
    name: Optional[str] = None

    def matches(self, owner_reference: dict) -> bool:
        """Whether an owner reference points at this pass-through kind"""
        return (
            parse_group(owner_reference.get("apiVersion")) == self.group
            and owner_reference.get("kind") == self.kind
            and self.name in (None, owner_reference.get("name"))
        )


DEFAULT_PASS_THROUGH = (
    PassThroughKind("apps.openshift.io", "DeploymentConfig", "zync-que"),
    PassThroughKind("apps", "Deployment", "zync-que"),
)


def parse_group(api_version: Optional[str]) -> str:
    """The group of an apiVersion ("" for core objects)"""
    return parse_api_version(api_version)[0]


class OwnershipTracker:
    """Maps events on owned objects to reconcile requests for their owners"""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        client: ConvergenceClientBase,
        group: str,
        kind: str,
        pass_through: Optional[Iterable[PassThroughKind]] = None,
        max_depth: int = 1,
    ):
        """
        Args:
            client:  ConvergenceClientBase
                Client used to fetch intermediate owners
            group:  str
                The api group of the owner kind to map to
            kind:  str
                The owner kind to map to
            pass_through:  Optional[Iterable[PassThroughKind]]
                The intermediate kinds that are followed
            max_depth:  int
                The number of intermediate hops that may be followed
        """
        self.client = client
        self.group = group
        self.kind = kind
        self.pass_through = tuple(
            DEFAULT_PASS_THROUGH if pass_through is None else pass_through
        )
        self.max_depth = max_depth

    def map_event(self, obj: Union[dict, ManagedObject]) -> List[ReconcileRequest]:
        """Find the owners of the given object to enqueue

        Args:
            obj:  Union[dict, ManagedObject]
                The object from the watch event

        Returns:
            requests:  List[ReconcileRequest]
                The de-duplicated requests in discovery order
        """
        if isinstance(obj, ManagedObject):
            obj = obj.definition

        requests = []
        visited = set()
        frontier = deque([(obj, 0)])
        while frontier:
            current, depth = frontier.popleft()
            metadata = current.get("metadata") or {}
            namespace = metadata.get("namespace")
            if metadata.get("uid"):
                if metadata["uid"] in visited:
                    continue
                visited.add(metadata["uid"])

            for ref in metadata.get("ownerReferences") or []:
                if self._is_owner_kind(ref):
                    request = ReconcileRequest(ref.get("name"), namespace)
                    if request not in requests:
                        log.debug2("Mapped %s to owner %s", metadata.get("name"), request)
                        requests.append(request)
                elif depth < self.max_depth and any(
                    pass_through.matches(ref) for pass_through in self.pass_through
                ):
                    intermediate = self.client.get(
                        ref.get("kind"),
                        ref.get("name"),
                        namespace=namespace,
                        api_version=ref.get("apiVersion"),
                    )
                    if intermediate is None:
                        log.debug2(
                            "Intermediate owner %s/%s not found",
                            ref.get("kind"),
                            ref.get("name"),
                        )
                        continue
                    frontier.append((intermediate, depth + 1))
        return requests

    ## Implementation Details ##################################################

    def _is_owner_kind(self, owner_reference: dict) -> bool:
        return (
            parse_group(owner_reference.get("apiVersion")) == self.group
            and owner_reference.get("kind") == self.kind
        )
