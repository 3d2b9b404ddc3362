"""
The ConvergenceClient is the abstraction in charge of interacting with the
declarative store to read, create, update and delete objects.
"""

# Local
from .base import (
    ConvergenceClientBase,
    KubeEventType,
    KubeWatchEvent,
    PropagationPolicy,
)
from .dry_run_client import DryRunClient
from .openshift_client import OpenshiftClient
from .owner_references import make_owner_reference, set_owner_reference
