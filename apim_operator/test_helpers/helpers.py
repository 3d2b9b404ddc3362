"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from typing import Dict, List, Optional
from unittest import mock
import base64
import copy
import inspect
import json
import os

# First Party
import aconfig
import alog

# Local
from apim_operator import constants
from apim_operator.apimanager import ObjectBuilder
from apim_operator.backup import BackupObjectBuilder
from apim_operator.client import DryRunClient
from apim_operator.conditions import AVAILABLE_CONDITION, make_condition
from apim_operator.config import library_config as config_detail_dict
from apim_operator.defaults import compute_defaults
from apim_operator.jobs import JOB_API_VERSION, JOB_KIND, uid_based_job_name
from apim_operator.restore import SERIALIZED_APIMANAGER_KEY, RestoreObjectBuilder
from apim_operator.session import Session
from apim_operator.status import default_route_hosts

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json"
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_INSTANCE_NAME = "example-apimanager"
TEST_NAMESPACE = "test"
SOME_OTHER_NAMESPACE = "somewhere"
TEST_WILDCARD_DOMAIN = "example.com"


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion. Dict values replace whole nested sections.
    """
    # Override the configs and hang onto the old values
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
        if isinstance(val, dict):
            val = aconfig.Config(val, override_env_vars=False)
        config_detail_dict[key] = val

    # Yield to the context
    try:
        yield

    # Revert to the old values
    finally:
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


## Manifests ###################################################################


def setup_cr(
    kind=constants.APIMANAGER_KIND,
    api_version=constants.APPS_API_VERSION,
    spec=None,
    name=TEST_INSTANCE_NAME,
    namespace=TEST_NAMESPACE,
    annotations=None,
    status=None,
    **kwargs,
):
    """Build a managed resource manifest. Without explicit annotations the
    object is stamped with the running versions so no upgrade phase runs.
    """
    cr_dict = kwargs or {}
    cr_dict.setdefault("kind", kind)
    cr_dict.setdefault("apiVersion", api_version)
    metadata = cr_dict.setdefault("metadata", {})
    metadata.setdefault("name", name)
    metadata.setdefault("namespace", namespace)
    if annotations is None:
        annotations = {
            constants.OPERATOR_VERSION_ANNOTATION: config_detail_dict.operator_version,
            constants.RELEASE_VERSION_ANNOTATION: config_detail_dict.release_version,
        }
    if annotations:
        metadata["annotations"] = copy.deepcopy(annotations)
    cr_dict.setdefault("spec", {}).update(copy.deepcopy(spec or {}))
    if status is not None:
        cr_dict["status"] = copy.deepcopy(status)
    return cr_dict


def setup_defaulted_cr(**kwargs):
    """Build an APIManager manifest that already carries every default"""
    kwargs.setdefault("spec", {"wildcardDomain": TEST_WILDCARD_DOMAIN})
    return compute_defaults(setup_cr(**kwargs)).defaulted


def setup_session(manifest=None, client=None, **kwargs):
    """Create the manifest in a MockClient (unless given a stored one) and
    open a session on it
    """
    client = client or MockClient()
    manifest = manifest or setup_cr(**kwargs)
    if not (manifest.get("metadata") or {}).get("uid"):
        manifest = client.create(manifest)
    return Session("test-reconcile", manifest, client)


def make_deployment(name, owner=None, replicas=1, available=True):
    deployment = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name, "namespace": TEST_NAMESPACE},
        "spec": {"replicas": replicas},
        "status": {
            "availableReplicas": replicas if available else 0,
            "conditions": [
                {"type": "Available", "status": "True" if available else "False"}
            ],
        },
    }
    if owner is not None:
        deployment["metadata"]["ownerReferences"] = [
            {
                "apiVersion": owner["apiVersion"],
                "kind": owner["kind"],
                "name": owner["metadata"]["name"],
                "uid": owner["metadata"]["uid"],
            }
        ]
    return deployment


def make_route(name, host, admitted=True):
    return {
        "apiVersion": "route.openshift.io/v1",
        "kind": "Route",
        "metadata": {"name": name, "namespace": TEST_NAMESPACE},
        "spec": {"host": host},
        "status": {
            "ingress": [
                {
                    "conditions": [
                        {"type": "Admitted", "status": "True" if admitted else "False"}
                    ]
                }
            ]
        },
    }


def make_default_routes(spec, admitted=True):
    """One route for every host the installation is expected to serve"""
    return [
        make_route(f"route-{idx}", host, admitted=admitted)
        for idx, host in enumerate(default_route_hosts(spec))
    ]


def make_requirements_config_map(values=None, namespace=None):
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": constants.REQUIREMENTS_CONFIGMAP_NAME,
            "namespace": namespace or config_detail_dict.operator_namespace,
        },
        "data": values or {constants.RHT_THREESCALE_VERSION: "2.15"},
    }


def available_status(now="2024-01-01T00:00:00Z"):
    """A status that reports the instance available"""
    return {
        constants.STATUS_CONDITIONS: [
            make_condition(AVAILABLE_CONDITION, True, now=now)
        ]
    }


def make_job(name, namespace=TEST_NAMESPACE, completions=1):
    return {
        "apiVersion": JOB_API_VERSION,
        "kind": JOB_KIND,
        "metadata": {"name": name, "namespace": namespace},
        "spec": {
            "completions": completions,
            "template": {"spec": {"restartPolicy": "Never"}},
        },
    }


def complete_job(client, name, namespace=TEST_NAMESPACE, succeeded=1):
    """Simulate the job controller marking a job finished"""
    client.set_status_fields(
        JOB_KIND, name, namespace, succeeded=succeeded, active=0
    )


## Failable mocks ##############################################################


def get_failable_method(fail_flag, method, failure_return=False):
    log.debug4(
        "Setting up failable mock of [%s] with fail flag: %s", str(method), fail_flag
    )

    def failable_method(*args, **kwargs):
        log.debug4(
            "Running failable mock of [%s] with fail flag: %s", str(method), fail_flag
        )
        if isinstance(fail_flag, Exception) or (
            inspect.isclass(fail_flag) and issubclass(fail_flag, Exception)
        ):
            log.debug4("Raising in failable mock")
            raise fail_flag
        if callable(fail_flag):
            log.debug4("Calling callable fail flag")
            res = fail_flag()
            if res is not None:
                return res
        elif fail_flag == "assert":
            log.debug4("Asserting in failable mock")
            raise AssertionError(f"You told me to fail {method}!")
        elif fail_flag:
            log.debug4("Returning %s", failure_return)
            return failure_return
        log.debug4("Passing through (%s, **%s)", args, kwargs)
        res = method(*args, **kwargs)
        log.debug4("Passthrough res: %s", res)
        return res

    return failable_method


class FailOnce:
    """Helper callable that will fail once on the N'th call"""

    def __init__(self, fail_val, fail_number=1):
        self.call_count = 0
        self.fail_number = fail_number
        self.fail_val = fail_val

    def __call__(self, *_, **__):
        self.call_count += 1
        if self.call_count == self.fail_number:
            log.debug("Failing on call %d with %s", self.call_count, self.fail_val)
            if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
                raise self.fail_val("Raising!")
            return self.fail_val
        log.debug("Not failing on call %d", self.call_count)
        return None


class MockClient(DryRunClient):
    """The MockClient wraps a standard DryRunClient and adds configuration
    options to simulate failures in each of its operations. Every operation is
    a mock.Mock so tests can count the calls.
    """

    WRITE_METHODS = ("create", "update", "update_status", "delete")

    def __init__(  # pylint: disable=too-many-arguments
        self,
        get_fail=False,
        list_fail=False,
        create_fail=False,
        update_fail=False,
        update_status_fail=False,
        delete_fail=False,
        resources=None,
        resource_dir=None,
        auto_enable=True,
    ):
        super().__init__(resources=resources, resource_dir=resource_dir)
        self.get_fail = get_fail
        self.list_fail = list_fail
        self.create_fail = create_fail
        self.update_fail = update_fail
        self.update_status_fail = update_status_fail
        self.delete_fail = delete_fail

        # If auto-enabling, turn the mocks on now
        if auto_enable:
            self.enable_mocks()

    #######################
    ## Helpers for Tests ##
    #######################

    def enable_mocks(self):
        """Turn the mocks on"""
        self.get = mock.Mock(
            side_effect=get_failable_method(self.get_fail, super().get, None)
        )
        self.list = mock.Mock(
            side_effect=get_failable_method(self.list_fail, super().list, [])
        )
        self.create = mock.Mock(
            side_effect=get_failable_method(self.create_fail, super().create, {})
        )
        self.update = mock.Mock(
            side_effect=get_failable_method(self.update_fail, super().update, {})
        )
        self.update_status = mock.Mock(
            side_effect=get_failable_method(
                self.update_status_fail, super().update_status, {}
            )
        )
        self.delete = mock.Mock(
            side_effect=get_failable_method(self.delete_fail, super().delete, False)
        )

    def write_count(self) -> int:
        """Total number of write calls made through the mocks"""
        return sum(getattr(self, name).call_count for name in self.WRITE_METHODS)

    def reset_counts(self):
        for name in self.WRITE_METHODS + ("get", "list"):
            getattr(self, name).reset_mock()

    def get_obj(self, kind, name, namespace=TEST_NAMESPACE, api_version=None):
        return DryRunClient.get(self, kind, name, namespace, api_version)

    def has_obj(self, *args, **kwargs):
        return self.get_obj(*args, **kwargs) is not None


## Builders ####################################################################


class DummyObjectBuilder(ObjectBuilder):
    """ObjectBuilder that returns fixed manifests"""

    def __init__(
        self,
        components: Optional[Dict[str, List[dict]]] = None,
        deployment_names: Optional[List[str]] = None,
        secret_names: Optional[List[str]] = None,
        dependency_versions: Optional[Dict[str, str]] = None,
        components_error: Optional[Exception] = None,
    ):
        self._components = components or {}
        self._deployment_names = deployment_names or []
        self._secret_names = secret_names or []
        self._dependency_versions = dependency_versions or {}
        self.components_error = components_error

    def components(self, session):
        if self.components_error is not None:
            raise self.components_error
        return copy.deepcopy(self._components)

    def expected_deployment_names(self, session):
        return list(self._deployment_names)

    def watched_secret_names(self, session):
        return list(self._secret_names)

    def current_dependency_versions(self, session):
        return dict(self._dependency_versions)


class DummyBackupBuilder(BackupObjectBuilder):
    """Backup builder with one volume claim, one service account and the
    given number of jobs named after the backup uid
    """

    def __init__(self, job_prefixes=("backup-secrets", "backup-apimanager")):
        self.job_prefixes = list(job_prefixes)

    def destination_pvc(self, backup, apimanager):
        if not (backup.get("spec") or {}).get("backupDestination", {}).get(
            "persistentVolumeClaim"
        ):
            return None
        return {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": f"{backup['metadata']['name']}-pvc",
                "namespace": backup["metadata"]["namespace"],
            },
            "spec": {"resources": {"requests": {"storage": "2Gi"}}},
        }

    def permissions(self, backup):
        namespace = backup["metadata"]["namespace"]
        return [
            {
                "apiVersion": "v1",
                "kind": "ServiceAccount",
                "metadata": {"name": "apimanager-backup", "namespace": namespace},
            },
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "Role",
                "metadata": {"name": "apimanager-backup", "namespace": namespace},
                "rules": [],
            },
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "RoleBinding",
                "metadata": {"name": "apimanager-backup", "namespace": namespace},
            },
        ]

    def jobs(self, backup, apimanager):
        return [
            make_job(
                uid_based_job_name(prefix, backup["metadata"]["uid"]),
                namespace=backup["metadata"]["namespace"],
            )
            for prefix in self.job_prefixes
        ]


class DummyRestoreBuilder(RestoreObjectBuilder):
    """Restore builder with every job enabled"""

    SHARED_SECRET_NAME = "threescale-restore-secret"

    def _job(self, restore, prefix):
        return make_job(
            uid_based_job_name(prefix, restore["metadata"]["uid"]),
            namespace=restore["metadata"]["namespace"],
        )

    def restore_secrets_job(self, restore):
        return self._job(restore, "restore-secrets")

    def shared_secret_job(self, restore):
        return self._job(restore, "restore-apm-tosecret")

    def shared_secret_name(self, restore):
        return self.SHARED_SECRET_NAME

    def system_storage_pvc(self, restore, apimanager):
        return {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": self.system_storage_pvc_name(restore),
                "namespace": restore["metadata"]["namespace"],
            },
            "spec": {"resources": {"requests": {"storage": "100Mi"}}},
        }

    def restore_filestorage_job(self, restore):
        return self._job(restore, "restore-system-fs")

    def zync_resync_job(self, restore):
        return self._job(restore, "resync-zync-domains")


def make_shared_secret(apimanager, namespace=TEST_NAMESPACE):
    """The secret the shared secret job writes"""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {
            "name": DummyRestoreBuilder.SHARED_SECRET_NAME,
            "namespace": namespace,
        },
        "data": {
            SERIALIZED_APIMANAGER_KEY: base64.b64encode(
                json.dumps(apimanager).encode("utf-8")
            ).decode("utf-8")
        },
    }
