"""
Common utilities shared across the operator
"""

# Standard
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

# First Party
import alog

# Local
from . import constants

log = alog.use_channel("OPUTL")

# Sentinel for missing dict values
__MISSING__ = "__MISSING__"

## Dicts #######################################################################


def merge_configs(base, overrides) -> dict:
    """Helper to perform a deep merge of the overrides into the base. The merge
    is done in place, but the resulting dict is also returned for convenience.

    If both the base and overrides have a key and both values are dicts,
    recurse, otherwise set the base value to the override value.

    Args:
        base:  dict
            The base config that will be updated with the overrides
        overrides:  dict
            The override config

    Returns:
        merged:  dict
            The merged results of overrides merged onto base
    """
    for key, value in overrides.items():
        if (
            key not in base
            or not isinstance(base[key], dict)
            or not isinstance(value, dict)
        ):
            base[key] = value
        else:
            base[key] = merge_configs(base[key], value)

    return base


def nested_set(dct: dict, key: str, val: Any):
    """Helper to set values in a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict into which the key will be set
        key:  str
            Key that may contain '.' notation indicating dict nesting
        val:  Any
            The value to place at the nested key
    """
    parts = key.split(constants.NESTED_DICT_DELIM)
    for i, part in enumerate(parts[:-1]):
        dct = dct.setdefault(part, {})
        if not isinstance(dct, dict):
            raise TypeError(
                f"Intermediate key {constants.NESTED_DICT_DELIM.join(parts[:i + 1])} is not a dict"
            )
    dct[parts[-1]] = val


def nested_get(dct: dict, key: str, dflt=None) -> Any:
    """Helper to get values from a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict to read from
        key:  str
            Key that may contain '.' notation indicating dict nesting

    Returns:
        val:  Any
            Whatever is found at the given key or dflt if the key is not found.
            This includes missing intermediate dicts.
    """
    parts = key.split(constants.NESTED_DICT_DELIM)
    for i, part in enumerate(parts[:-1]):
        dct = dct.get(part, __MISSING__)
        if dct is __MISSING__ or dct is None:
            return dflt
        if not isinstance(dct, dict):
            raise TypeError(
                f"Intermediate key {constants.NESTED_DICT_DELIM.join(parts[:i + 1])} is not a dict"
            )
    return dct.get(parts[-1], dflt)


## Manifests ###################################################################


def parse_api_version(api_version: Optional[str]) -> Tuple[str, str]:
    """Split an apiVersion into (group, version). Core resources (e.g. "v1")
    have an empty group.
    """
    if not api_version:
        return "", ""
    if "/" not in api_version:
        return "", api_version
    group, version = api_version.rsplit("/", 1)
    return group, version


def get_annotation(manifest: dict, name: str, dflt=None) -> Any:
    """Read a single annotation from a manifest"""
    annotations = (manifest.get("metadata") or {}).get("annotations") or {}
    return annotations.get(name, dflt)


def resource_key(manifest: dict) -> str:
    """Human readable identifier used in log lines"""
    metadata = manifest.get("metadata") or {}
    return "{}/{}/{}/{}".format(  # pylint: disable=consider-using-f-string
        metadata.get("namespace"),
        manifest.get("apiVersion"),
        manifest.get("kind"),
        metadata.get("name"),
    )


def now_timestamp() -> str:
    """The current UTC time in the format used for status timestamps"""
    return datetime.now(timezone.utc).strftime(constants.TIMESTAMP_FORMAT)


## General #####################################################################


class classproperty:  # pylint: disable=invalid-name,too-few-public-methods
    """@classmethod+@property
    CITE: https://stackoverflow.com/a/22729414
    """

    def __init__(self, func):
        self.func = classmethod(func)

    def __get__(self, *args):
        return self.func.__get__(*args)()
