"""
Version handling for the upgrade phase.

The managed object records the operator version and the platform release that
last reconciled it in two annotations. A mismatch with the running operator
triggers the controller's upgrade steps, after which both annotations are
rewritten.
"""

# Standard
from typing import Optional, Tuple
import copy

# First Party
import alog

# Local
from .constants import OPERATOR_VERSION_ANNOTATION, RELEASE_VERSION_ANNOTATION
from .exceptions import assert_config
from .utils import get_annotation

log = alog.use_channel("UPGRD")


def needs_upgrade(manifest: dict, operator_version: str) -> bool:
    """Whether the object was last reconciled by a different operator version"""
    installed = get_annotation(manifest, OPERATOR_VERSION_ANNOTATION)
    if installed != operator_version:
        log.info("Upgrade %s -> %s", installed, operator_version)
        return True
    return False


def update_version_annotations(
    manifest: dict, operator_version: str, release_version: str
) -> dict:
    """Return a copy of the manifest stamped with the running versions"""
    updated = copy.deepcopy(manifest)
    annotations = updated.setdefault("metadata", {}).get("annotations") or {}
    annotations[OPERATOR_VERSION_ANNOTATION] = operator_version
    annotations[RELEASE_VERSION_ANNOTATION] = release_version
    updated["metadata"]["annotations"] = annotations
    return updated


def installed_release(manifest: dict) -> Optional[str]:
    """The platform release recorded on the object, if any"""
    return get_annotation(manifest, RELEASE_VERSION_ANNOTATION) or None


def is_fresh_install(manifest: dict) -> bool:
    """An object that was never stamped with a release is a fresh install"""
    return installed_release(manifest) is None


def major_minor(version: str) -> str:
    """Truncate a version to major.minor"""
    major, minor, _ = parse_version(version)
    return f"{major}.{minor}"


def parse_version(version: str) -> Tuple[int, int, int]:
    """Parse a major[.minor[.patch]] string. Missing parts are zero.

    Raises:
        ConfigError: If any part is not an integer
    """
    parts = str(version).strip().lstrip("v").split(".")
    assert_config(
        1 <= len(parts) <= 3 and all(part.isdigit() for part in parts),
        f"Invalid version [{version}]",
    )
    parts += ["0"] * (3 - len(parts))
    return int(parts[0]), int(parts[1]), int(parts[2])


def compare_versions(required: str, current: str) -> bool:
    """Whether the current version satisfies the required (minimum) version,
    comparing major, then minor, then patch
    """
    return parse_version(current) >= parse_version(required)


def is_multi_minor_hop(installed: str, incoming: str) -> bool:
    """Whether moving from the installed release to the incoming one skips a
    minor version (or changes the major version)
    """
    installed_major, installed_minor, _ = parse_version(installed)
    incoming_major, incoming_minor, _ = parse_version(incoming)
    if installed_major != incoming_major:
        return True
    return incoming_minor - installed_minor > 1
