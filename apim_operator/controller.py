"""
The Controller class describes how one managed kind converges: which defaults
it applies, which steps run on upgrade, which steps bring the spec to its
desired state and how its status is computed. The ReconcileManager drives these
hooks through the reconcile phases.
"""

# Standard
from typing import Optional
import abc

# Third Party
import jsonpatch

# First Party
import alog

# Local
from .conditions import AVAILABLE_CONDITION, is_condition_true
from .constants import STATUS_CONDITIONS
from .defaults import DefaultsDiff
from .session import Session
from .steps import StepResult, StepSequencer
from .utils import classproperty

log = alog.use_channel("CTRLR")


class Controller(abc.ABC):
    """Base class for the controller of a single managed kind

    Derived classes must set the group, version, and kind class attributes
    and implement spec_steps and compute_status.
    """

    group: str = None
    version: str = None
    kind: str = None

    @classproperty
    def api_version(cls) -> str:  # pylint: disable=no-self-argument
        """The full apiVersion of the managed kind"""
        return f"{cls.group}/{cls.version}"

    def __init__(self):
        # Make sure the class properties are present and not empty
        assert self.group, "Controller.group must be a non-empty string"
        assert self.version, "Controller.version must be a non-empty string"
        assert self.kind, "Controller.kind must be a non-empty string"

    def __str__(self):
        """Stringify with the GVK"""
        return f"Controller({self.group}/{self.version}/{self.kind})"

    ## Abstract Interface ######################################################

    @abc.abstractmethod
    def spec_steps(self, session: Session) -> StepSequencer:
        """Build the ordered steps that converge the owned resources

        Args:
            session:  Session
                The session for this reconciliation

        Returns:
            steps:  StepSequencer
                The sequence to run in the spec phase
        """

    @abc.abstractmethod
    def compute_status(self, session: Session) -> dict:
        """Compute the full desired status from the current state of the store

        Args:
            session:  Session
                The session for this reconciliation

        Returns:
            status:  dict
                The complete new status of the managed object
        """

    ## Optional Hooks ##########################################################

    def compute_defaults(self, manifest: dict) -> DefaultsDiff:
        """Compute the defaulted manifest. The base implementation applies no
        defaults.
        """
        return DefaultsDiff(defaulted=manifest, patch=jsonpatch.JsonPatch([]))

    def upgrade_steps(self, session: Session) -> StepSequencer:
        """Steps to migrate an object reconciled by an older operator version"""
        return StepSequencer([], name="upgrade")

    def prepare(self, session: Session) -> Optional[StepResult]:
        """Called before the upgrade and spec phases. A requeue result skips
        both but status is still computed.
        """

    def is_available(self, status: dict) -> bool:
        """Whether the computed status reports the object available"""
        return is_condition_true(AVAILABLE_CONDITION, status.get(STATUS_CONDITIONS))
