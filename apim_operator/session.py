"""
This module holds the core session state for an individual reconciliation
"""

# Standard
from typing import Any, Optional
import copy

# First Party
import aconfig
import alog

# Local
from .client import ConvergenceClientBase, set_owner_reference
from .utils import nested_get, nested_set, resource_key

log = alog.use_channel("SESSION")


class Session:  # pylint: disable=too-many-public-methods
    """A session holds the state of one in-progress reconciliation: the managed
    object as most recently read or written, the client used for every store
    operation, and per-reconcile values such as the requirements snapshot
    """

    # We strictly define the set of attributes that a Session can have to
    # disallow arbitrary assignment
    __slots__ = [
        "__id",
        "__manifest",
        "__client",
        "__requirements",
    ]

    def __init__(
        self,
        reconciliation_id: str,
        manifest: dict,
        client: ConvergenceClientBase,
        requirements: Optional["RequirementsSnapshot"] = None,
    ):
        """Construct a session object to hold the state for a reconciliation

        Args:
            reconciliation_id:  str
                The unique ID for this reconciliation
            manifest:  dict
                The full manifest of the managed object being reconciled
            client:  ConvergenceClientBase
                The client used for all reads and writes
            requirements:  Optional[RequirementsSnapshot]
                The requirements snapshot read for this reconciliation
        """
        self._validate_manifest(manifest)
        self.__id = reconciliation_id
        self.__manifest = copy.deepcopy(manifest)
        self.__client = client
        self.__requirements = requirements

    ## Properties ##############################################################

    @property
    def id(self) -> str:  # pylint: disable=invalid-name
        """The unique reconciliation ID"""
        return self.__id

    @property
    def manifest(self) -> dict:
        """The managed object as most recently read or written"""
        return self.__manifest

    @property
    def spec(self) -> aconfig.Config:
        """The spec section of the manifest"""
        return aconfig.Config(
            self.__manifest.get("spec") or {}, override_env_vars=False
        )

    @property
    def metadata(self) -> dict:
        return self.__manifest["metadata"]

    @property
    def kind(self) -> str:
        return self.__manifest["kind"]

    @property
    def api_version(self) -> str:
        return self.__manifest["apiVersion"]

    @property
    def name(self) -> str:
        return self.metadata["name"]

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.get("namespace")

    @property
    def uid(self) -> Optional[str]:
        return self.metadata.get("uid")

    @property
    def status(self) -> dict:
        """The persisted status (empty dict if unset)"""
        return self.__manifest.get("status") or {}

    @property
    def client(self) -> ConvergenceClientBase:
        return self.__client

    @property
    def requirements(self) -> Optional["RequirementsSnapshot"]:
        """The requirements snapshot for this reconciliation, if one was read"""
        return self.__requirements

    @requirements.setter
    def requirements(self, requirements: Optional["RequirementsSnapshot"]):
        self.__requirements = requirements

    ## Store Helpers ###########################################################

    def get_status_field(self, key: str, dflt: Any = None) -> Any:
        """Read a status field using 'foo.bar' notation"""
        return nested_get(self.status, key, dflt)

    def set_status_fields(self, **fields) -> dict:
        """Persist the given status fields immediately. The stored object
        (with its new resourceVersion) replaces the session manifest.

        Raises:
            ConflictError: If the managed object changed since it was read
        """
        updated = copy.deepcopy(self.__manifest)
        status = updated.get("status") or {}
        updated["status"] = status
        for key, value in fields.items():
            nested_set(status, key, value)
        log.debug2("Setting status fields %s on %s", list(fields), resource_key(updated))
        self.__manifest = self.__client.update_status(updated)
        return self.__manifest

    def replace_manifest(self, manifest: dict):
        """Swap in a newer copy of the managed object after a write"""
        self._validate_manifest(manifest)
        self.__manifest = copy.deepcopy(manifest)

    def own(self, child: dict) -> dict:
        """Return a copy of the child owned by the managed object"""
        return set_owner_reference(self.__manifest, child)

    def get_object(
        self,
        kind: str,
        name: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> Optional[dict]:
        """Fetch an object from the session namespace unless one is given"""
        return self.__client.get(
            kind,
            name,
            namespace=namespace if namespace is not None else self.namespace,
            api_version=api_version,
        )

    ## Implementation Details ##################################################

    @staticmethod
    def _validate_manifest(manifest: dict):
        """Ensure that all required fields are present"""
        assert isinstance(manifest, dict), "Manifest must be a dict"
        assert "kind" in manifest, "Manifest missing kind"
        assert "apiVersion" in manifest, "Manifest missing apiVersion"
        assert "name" in (manifest.get("metadata") or {}), "Manifest missing name"
