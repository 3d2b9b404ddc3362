"""
Package exports
"""

# Local
from . import conditions, config, status
from .apimanager import APIManagerController, ObjectBuilder
from .backup import BackupObjectBuilder, BackupReconciler
from .client import ConvergenceClientBase, DryRunClient, OpenshiftClient
from .controller import Controller
from .exceptions import (
    assert_cluster,
    assert_config,
    assert_precondition,
    assert_verified,
)
from .jobs import JobOrchestrator
from .ownership import OwnershipTracker, PassThroughKind
from .reconcile import (
    ReconcileManager,
    ReconcilerBase,
    ReconciliationResult,
    ReconcileRequest,
)
from .restore import RestoreObjectBuilder, RestoreReconciler
from .runner import ControllerRunner, WatchSpec
from .session import Session
from .steps import Step, StepResult, StepSequencer
from .upgrade_gate import SubscriptionReconciler, UpgradeGate
