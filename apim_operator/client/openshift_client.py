"""
This ConvergenceClient is responsible for delegating store operations to the
openshift library. It is the one that will be used when the operator is running
in the cluster or outside the cluster making live changes.
"""
# Standard
from typing import Callable, Iterator, Optional
import time

# Third Party
from kubernetes import client
from kubernetes.watch import Watch
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import ConflictError as ApiConflictError
from openshift.dynamic.exceptions import (
    ForbiddenError,
    InternalServerError,
    NotFoundError as ApiNotFoundError,
    ResourceNotFoundError,
    ResourceNotUniqueError,
    ServerTimeoutError,
    ServiceUnavailableError,
)
from openshift.dynamic.resource import Resource
import kubernetes
import urllib3

# First Party
import alog

# Local
from .. import config
from ..exceptions import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    assert_cluster,
)
from ..managed_object import ManagedObject
from ..utils import resource_key
from .base import (
    ConvergenceClientBase,
    KubeEventType,
    KubeWatchEvent,
    PropagationPolicy,
    object_identifiers,
)

log = alog.use_channel("OSFTC")

# See this document for value reasonings
# https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
SERVER_WATCH_TIMEOUT = 3600
CLIENT_WATCH_TIMEOUT = 30

# Failures that are worth retrying with backoff
TRANSIENT_ERRORS = (
    InternalServerError,
    ServerTimeoutError,
    ServiceUnavailableError,
    urllib3.exceptions.ProtocolError,
    urllib3.exceptions.ReadTimeoutError,
)


class OpenshiftClient(ConvergenceClientBase):
    """This ConvergenceClient uses the openshift DynamicClient to interact with
    the cluster
    """

    def __init__(self, dynamic_client: Optional[DynamicClient] = None):
        """
        Args:
            dynamic_client:  Optional[DynamicClient]
                A pre-built client. If not given, one is lazily built from the
                in-cluster config or the local kubeconfig.
        """
        log.debug("Initializing openshift client")
        self._client = dynamic_client

    @property
    def client(self) -> DynamicClient:
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    ## Interface ###############################################################

    def get(self, kind, name, namespace=None, api_version=None):
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            return None
        try:
            resource = self._with_retries(
                lambda: resource_handle.get(name=name, namespace=namespace)
            )
        except ApiNotFoundError:
            log.debug(
                "No object named [%s/%s] found in namespace [%s]",
                kind,
                name,
                namespace,
            )
            return None
        return resource.to_dict()

    def list(
        self,
        kind,
        namespace=None,
        api_version=None,
        label_selector=None,
        field_selector=None,
    ):  # pylint: disable=too-many-arguments
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            return []
        try:
            resource_list = self._with_retries(
                lambda: resource_handle.get(
                    namespace=namespace,
                    label_selector=label_selector,
                    field_selector=field_selector,
                )
            ).to_dict()
        except ForbiddenError:
            log.debug(
                "Listing objects of kind [%s] forbidden in namespace [%s]",
                kind,
                namespace,
            )
            return []

        # List items do not carry their own type information
        items = resource_list.get("items", [])
        for item in items:
            item.setdefault("apiVersion", resource_handle.group_version)
            item.setdefault("kind", resource_handle.kind)
        log.debug3("Found %d objects of kind %s", len(items), kind)
        return items

    def create(self, obj):
        resource_handle = self._get_required_handle(obj)
        namespace = obj.get("metadata", {}).get("namespace")
        log.debug2("Creating %s", resource_key(obj))
        try:
            return self._with_retries(
                lambda: resource_handle.create(body=obj, namespace=namespace)
            ).to_dict()
        except ApiConflictError as err:
            raise AlreadyExistsError(f"{resource_key(obj)} already exists") from err

    def update(self, obj):
        resource_handle = self._get_required_handle(obj)
        return self._replace(resource_handle.replace, obj)

    def update_status(self, obj):
        resource_handle = self._get_required_handle(obj)
        return self._replace(resource_handle.status.replace, obj)

    def delete(self, obj, propagation_policy=None):
        api_version, kind, name, namespace = object_identifiers(obj)
        resource_handle = self._get_resource_handle(kind, api_version)
        if not resource_handle:
            return False
        body = {"kind": "DeleteOptions", "apiVersion": "v1"}
        if propagation_policy is not None:
            body["propagationPolicy"] = PropagationPolicy(propagation_policy).value
        log.debug2(
            "Attempting to delete [%s] with options %s", resource_key(obj), body
        )
        try:
            self._with_retries(
                lambda: resource_handle.delete(
                    name=name, namespace=namespace, body=body
                )
            )
        except ApiNotFoundError as err:
            log.debug2("Valid error caught when deleting [%s/%s]: %s", kind, name, err)
            return False
        return True

    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind,
        api_version=None,
        namespace=None,
        label_selector=None,
        timeout=None,
        watch_manager: Optional[Watch] = None,
    ) -> Iterator[KubeWatchEvent]:
        watch_manager = watch_manager if watch_manager else Watch()
        resource_handle = self._get_resource_handle(kind, api_version)
        assert_cluster(
            resource_handle,
            f"Failed to fetch resource handle for {namespace}/{api_version}/{kind}",
        )
        resource_version = None
        end_time = time.time() + timeout if timeout else None
        while end_time is None or time.time() < end_time:
            try:
                for event_obj in watch_manager.stream(
                    resource_handle.get,
                    resource_version=resource_version,
                    namespace=namespace,
                    label_selector=label_selector,
                    serialize=False,
                    timeout_seconds=int(timeout) if timeout else SERVER_WATCH_TIMEOUT,
                    _request_timeout=CLIENT_WATCH_TIMEOUT,
                ):
                    event_resource = ManagedObject(event_obj["object"])
                    resource_version = event_resource.resource_version
                    yield KubeWatchEvent(
                        KubeEventType(event_obj["type"]), event_resource
                    )
            except client.exceptions.ApiException as exception:
                if exception.status != 410:
                    log.info("Unknown ApiException received, re-raising")
                    raise
                log.debug2("Resource age expired, restarting watch %s", kind)
                resource_version = None
            except urllib3.exceptions.ReadTimeoutError:
                log.debug4("Watch Socket closed, restarting watch %s", kind)
            except urllib3.exceptions.ProtocolError:
                log.debug2("Invalid Chunk from server, restarting watch %s", kind)

            if watch_manager._stop:  # pylint: disable=protected-access
                log.debug("Internal watch stopped. Stopping watch for %s", kind)
                return

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client():
        """Create a DynamicClient that will work based on where the operator is
        running
        """
        try:
            log.debug2("Running with in-cluster config")
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)
            api_client = kubernetes.client.ApiClient(kube_config)
            return DynamicClient(api_client)

        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    def _get_resource_handle(
        self, kind: str, api_version: Optional[str]
    ) -> Optional[Resource]:
        """Get the openshift resource handle for a specified kind and api_version"""
        resources = None
        try:
            resources = self.client.resources.get(kind=kind, api_version=api_version)
        except (ResourceNotFoundError, ResourceNotUniqueError):
            try:
                resources = self.client.resources.get(
                    short_names=[kind], api_version=api_version
                )
            except (ResourceNotFoundError, ResourceNotUniqueError):
                log.debug(
                    "No objects of kind [%s] found or multiple objects matching request found",
                    kind,
                )
        return resources

    def _get_required_handle(self, obj: dict) -> Resource:
        api_version, kind, _, _ = object_identifiers(obj)
        resource_handle = self._get_resource_handle(kind, api_version)
        assert_cluster(
            resource_handle, f"Failed to fetch resource handle for {api_version}/{kind}"
        )
        return resource_handle

    def _replace(self, replace_func: Callable, obj: dict) -> dict:
        namespace = obj.get("metadata", {}).get("namespace")
        log.debug2("Replacing %s", resource_key(obj))
        try:
            return self._with_retries(
                lambda: replace_func(body=obj, namespace=namespace)
            ).to_dict()
        except ApiConflictError as err:
            raise ConflictError(f"{resource_key(obj)} was modified") from err
        except ApiNotFoundError as err:
            raise NotFoundError(f"{resource_key(obj)} not found") from err

    @staticmethod
    def _with_retries(operation: Callable):
        """Run the operation, retrying transient failures with a linear backoff"""
        max_retries = config.client_retries
        for attempt in range(1, max_retries + 2):
            try:
                return operation()
            except TRANSIENT_ERRORS as err:
                if attempt > max_retries:
                    raise
                backoff_duration = config.retry_backoff_base_seconds * attempt
                log.debug2(
                    "Handling transient error (attempt %d): %s. Retrying in %fs",
                    attempt,
                    err,
                    backoff_duration,
                )
                time.sleep(backoff_duration)
