"""
Defaulting for the APIManager spec.

compute_defaults is pure: it returns the fully defaulted copy of the manifest
together with the json patch that leads there, and the caller decides whether
to persist it.
"""

# Standard
from dataclasses import dataclass
from typing import Any
import copy

# Third Party
import jsonpatch

# First Party
import alog

# Local
from .exceptions import assert_config
from .utils import nested_get

log = alog.use_channel("DFLTS")

## Default values ##############################################################

DEFAULT_APP_LABEL = "3scale-api-management"
DEFAULT_TENANT_NAME = "3scale"
DEFAULT_RESOURCE_REQUIREMENTS_ENABLED = True

DEFAULT_APICAST_MANAGEMENT_API = "status"
DEFAULT_APICAST_OPENSSL_VERIFY = False
DEFAULT_APICAST_RESPONSE_CODES = True
DEFAULT_APICAST_REGISTRY_URL = "http://apicast-staging:8090/policies"


@dataclass
class DefaultsDiff:
    """The defaulted manifest and the patch from the input to it"""

    defaulted: dict
    patch: jsonpatch.JsonPatch

    @property
    def changed(self) -> bool:
        return len(self.patch.patch) > 0


def compute_defaults(manifest: dict) -> DefaultsDiff:
    """Compute the defaulted copy of an APIManager manifest

    Args:
        manifest:  dict
            The manifest as read from the store

    Returns:
        diff:  DefaultsDiff
            The defaulted manifest and the patch that produces it

    Raises:
        ConfigError: If the spec selects two file storages or two system
            databases at once
    """
    defaulted = copy.deepcopy(manifest)
    spec = defaulted.get("spec") or {}
    defaulted["spec"] = spec

    _set_common_defaults(spec)
    _set_backend_defaults(spec)
    _set_apicast_defaults(spec)
    _set_system_defaults(spec)
    _set_zync_defaults(spec)

    patch = jsonpatch.make_patch(manifest, defaulted)
    if patch.patch:
        log.debug2("Defaults patch: %s", patch.to_string())
    return DefaultsDiff(defaulted=defaulted, patch=patch)


def is_external_system_database(spec: dict) -> bool:
    """Whether the system database is managed outside of the installation.
    externalComponents takes precedence over the older highAvailability flag.
    """
    if spec.get("externalComponents") is not None:
        return bool(nested_get(spec, "externalComponents.system.database", False))
    return bool(nested_get(spec, "highAvailability.enabled", False))


## Implementation Details ######################################################


def _set_default(dct: dict, key: str, value: Any):
    """Set the value if the key is missing or null"""
    if dct.get(key) is None:
        dct[key] = value


def _section(dct: dict, key: str) -> dict:
    """Get a nested section, creating it if missing or null"""
    _set_default(dct, key, {})
    return dct[key]


def _set_common_defaults(spec: dict):
    _set_default(spec, "appLabel", DEFAULT_APP_LABEL)
    _set_default(spec, "tenantName", DEFAULT_TENANT_NAME)
    _set_default(
        spec, "resourceRequirementsEnabled", DEFAULT_RESOURCE_REQUIREMENTS_ENABLED
    )


def _set_backend_defaults(spec: dict):
    backend = _section(spec, "backend")
    for key in ("listenerSpec", "cronSpec", "workerSpec"):
        _section(backend, key)


def _set_apicast_defaults(spec: dict):
    apicast = _section(spec, "apicast")
    _set_default(apicast, "managementAPI", DEFAULT_APICAST_MANAGEMENT_API)
    _set_default(apicast, "openSSLVerify", DEFAULT_APICAST_OPENSSL_VERIFY)
    _set_default(apicast, "responseCodes", DEFAULT_APICAST_RESPONSE_CODES)
    _set_default(apicast, "registryURL", DEFAULT_APICAST_REGISTRY_URL)
    _section(apicast, "stagingSpec")
    _section(apicast, "productionSpec")


def _set_system_defaults(spec: dict):
    system = _section(spec, "system")

    file_storage = system.get("fileStorage") or {}
    assert_config(
        not (
            file_storage.get("persistentVolumeClaim") is not None
            and file_storage.get("simpleStorageService") is not None
        ),
        "Only one FileStorage can be chosen at the same time",
    )

    if is_external_system_database(spec):
        if system.pop("database", None) is not None:
            log.debug2("Dropping database spec for external system database")
    else:
        database = system.get("database") or {}
        assert_config(
            not (
                database.get("mysql") is not None
                and database.get("postgresql") is not None
            ),
            "Only one System Database can be chosen at the same time",
        )

    for key in ("appSpec", "sidekiqSpec", "searchdSpec"):
        _section(system, key)


def _set_zync_defaults(spec: dict):
    zync = _section(spec, "zync")
    _section(zync, "appSpec")
    _section(zync, "queSpec")
