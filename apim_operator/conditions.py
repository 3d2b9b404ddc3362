"""
This module holds the pure functions used to maintain the list of status
conditions on a managed resource.

Two kinds of conditions share one list:

* Primary conditions (Available, Preflights) are keyed by "type". Setting one
  replaces the existing entry of that type and keeps its lastTransitionTime
  when the status value did not change.
* Secondary (warning) conditions are keyed by "reason". Several warnings share
  the type "Warning" and each one is either present or absent.

None of the functions here mutate their inputs.
"""

# Standard
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
import copy
import json

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from .constants import STATUS_CONDITIONS
from .utils import now_timestamp

log = alog.use_channel("CONDS")

## Public ######################################################################

# Condition status values
CONDITION_TRUE = "True"
CONDITION_FALSE = "False"
CONDITION_UNKNOWN = "Unknown"

# Primary condition types
AVAILABLE_CONDITION = "Available"
PREFLIGHTS_CONDITION = "Preflights"

# Type shared by all secondary conditions
WARNING_CONDITION = "Warning"

# The key in the condition used for the timestamp
TIMESTAMP_KEY = "lastTransitionTime"


@dataclass(frozen=True)
class WarningCondition:
    """A secondary condition that is either present or absent"""

    reason: str
    message: str
    type: str = WARNING_CONDITION

    def to_condition(self, now: Optional[str] = None) -> dict:
        """Build the condition dict, always with status True"""
        return make_condition(
            self.type, CONDITION_TRUE, self.reason, self.message, now=now
        )


def make_condition(
    condition_type: str,
    status,
    reason: str = "",
    message: str = "",
    now: Optional[str] = None,
) -> dict:
    """Build a single condition dict

    Args:
        condition_type:  str
            The "type" of the condition
        status:  Union[bool, str]
            The status value. Bools are converted to "True"/"False".
        reason:  str
            CamelCase reason for the status
        message:  str
            Human readable detail
        now:  Optional[str]
            Override for the transition timestamp

    Returns:
        condition:  dict
            The condition with all of its keys populated
    """
    if isinstance(status, bool):
        status = CONDITION_TRUE if status else CONDITION_FALSE
    assert status in (
        CONDITION_TRUE,
        CONDITION_FALSE,
        CONDITION_UNKNOWN,
    ), f"Invalid condition status {status}"
    return {
        "type": condition_type,
        "status": status,
        "reason": reason,
        "message": message,
        TIMESTAMP_KEY: now or now_timestamp(),
    }


def set_primary_condition(conditions: List[dict], condition: dict) -> List[dict]:
    """Replace the condition of the same type, keeping the previous transition
    time if the status value is unchanged

    Args:
        conditions:  List[dict]
            The current list of conditions
        condition:  dict
            The desired primary condition

    Returns:
        updated_conditions:  List[dict]
            A new list holding exactly one entry for the condition's type
    """
    condition = copy.deepcopy(condition)
    existing = get_condition(condition["type"], conditions)
    if existing and existing.get("status") == condition["status"]:
        condition[TIMESTAMP_KEY] = existing.get(TIMESTAMP_KEY, condition[TIMESTAMP_KEY])
    elif existing:
        log.debug2(
            "Condition %s transitioned %s -> %s",
            condition["type"],
            existing.get("status"),
            condition["status"],
        )

    updated = [
        copy.deepcopy(cond)
        for cond in conditions
        if cond.get("type") != condition["type"]
    ]
    updated.append(condition)
    return updated


def toggle_secondary_condition(
    conditions: List[dict],
    warning: WarningCondition,
    applies: bool,
    now: Optional[str] = None,
) -> List[dict]:
    """Add or remove the warning keyed by its reason

    An absent warning that applies is added with a fresh timestamp. A present
    warning that no longer applies is removed. A present warning that still
    applies is left untouched.
    """
    present = get_condition_by_reason(warning.reason, conditions)
    if applies and not present:
        log.debug2("Adding warning %s", warning.reason)
        return copy.deepcopy(conditions) + [warning.to_condition(now=now)]
    if not applies and present:
        log.debug2("Removing warning %s", warning.reason)
        return [
            copy.deepcopy(cond)
            for cond in conditions
            if cond.get("reason") != warning.reason
        ]
    return copy.deepcopy(conditions)


def compute_conditions(
    existing: List[dict],
    primaries: Iterable[dict],
    warnings: Iterable[Tuple[WarningCondition, bool]],
    now: Optional[str] = None,
) -> List[dict]:
    """Apply a set of primary conditions and warning toggles to the existing
    list

    Args:
        existing:  List[dict]
            The persisted conditions
        primaries:  Iterable[dict]
            Desired primary conditions
        warnings:  Iterable[Tuple[WarningCondition, bool]]
            Each warning paired with whether it currently applies
        now:  Optional[str]
            Override for the timestamp of fresh entries

    Returns:
        conditions:  List[dict]
            The new list of conditions
    """
    conditions = copy.deepcopy(existing or [])
    for primary in primaries:
        conditions = set_primary_condition(conditions, primary)
    for warning, applies in warnings:
        conditions = toggle_secondary_condition(conditions, warning, applies, now=now)
    return conditions


def serialize_conditions(conditions: List[dict]) -> str:
    """Canonical json form of the conditions. Sorting is by (type, reason)
    since warnings share a type.
    """
    return json.dumps(_sorted(conditions), sort_keys=True)


def conditions_changed(current: List[dict], new: List[dict]) -> bool:
    """Whether two condition lists differ in anything but order"""
    return serialize_conditions(current or []) != serialize_conditions(new or [])


def status_changed(current_status: Optional[dict], new_status: Optional[dict]) -> bool:
    """Compare two status objects to determine if a write is needed

    Args:
        current_status:  Optional[dict]
            The raw status dict from the persisted object
        new_status:  Optional[dict]
            The proposed new status

    Returns:
        status_changed:  bool
            True if there is any difference once conditions are put into their
            canonical order
    """
    if not isinstance(current_status, dict) or not isinstance(new_status, dict):
        return current_status != new_status
    return bool(DeepDiff(_normalize(current_status), _normalize(new_status)))


def get_condition(type_name: str, conditions: List[dict]) -> dict:
    """Extract the given condition type from a list of conditions

    Returns:
        condition:  dict
            The condition object if found, empty dict otherwise
    """
    matches = [cond for cond in conditions or [] if cond.get("type") == type_name]
    if matches:
        assert len(matches) == 1, f"Found multiple condition entries for {type_name}"
        return matches[0]
    return {}


def get_condition_by_reason(reason: str, conditions: List[dict]) -> dict:
    """Extract a condition by its reason. Empty dict if not found."""
    for cond in conditions or []:
        if cond.get("reason") == reason:
            return cond
    return {}


def is_condition_true(type_name: str, conditions: List[dict]) -> bool:
    return get_condition(type_name, conditions).get("status") == CONDITION_TRUE


## Implementation Details ######################################################


def _sorted(conditions: List[dict]) -> List[dict]:
    return sorted(
        conditions or [], key=lambda cond: (cond.get("type", ""), cond.get("reason", ""))
    )


def _normalize(status: dict) -> dict:
    normalized = copy.deepcopy(status)
    if STATUS_CONDITIONS in normalized:
        normalized[STATUS_CONDITIONS] = _sorted(normalized[STATUS_CONDITIONS])
    return normalized
