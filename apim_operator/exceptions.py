"""
This module implements custom exceptions
"""

## Base Error ##################################################################


class OperatorError(Exception):
    """Base class for all operator exceptions"""

    def __init__(self, message: str, is_fatal_error: bool):
        """Construct with a flag indicating whether this is a fatal error. This
        will be a static property of all children.
        """
        super().__init__(message)
        self._is_fatal_error = is_fatal_error

    @property
    def is_fatal_error(self):
        """Property indicating whether or not this error should abort the
        current reconcile pass with backoff
        """
        return self._is_fatal_error


## Fatal Errors ################################################################


class OperatorFatalError(OperatorError):
    """An OperatorFatalError indicates an unexpected failure during a
    reconciliation that will not resolve without a change to the inputs
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=True)


class ConfigError(OperatorFatalError):
    """Exception caused while assembling a desired resource from invalid
    user-provided configuration
    """


class ClusterError(OperatorFatalError):
    """Exception caused when a cluster operation fails in an unexpected way"""


## Expected Errors #############################################################


class OperatorExpectedError(OperatorError):
    """An OperatorExpectedError indicates a failure condition that should
    terminate the current pass but is expected to resolve on a later one
    """

    def __init__(self, message: str = ""):
        super().__init__(message=message, is_fatal_error=False)


class PreconditionError(OperatorExpectedError):
    """Exception caused when an expected precondition is not met"""


class VerificationError(OperatorExpectedError):
    """Exception caused when a resource does not reach a desired state"""


class ConflictError(OperatorExpectedError):
    """A write targeted a stale resourceVersion and was rejected"""


class AlreadyExistsError(OperatorExpectedError):
    """A create targeted an object that is already present"""


class NotFoundError(OperatorExpectedError):
    """A write targeted an object that is not present"""


class PollTimeoutError(OperatorExpectedError):
    """A bounded wait loop ran out of time before its condition held"""


## Assertions ##################################################################


def assert_precondition(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a PreconditionError. This
    should be used when a step requires that a precondition is met before
    continuing.
    """
    if not condition:
        raise PreconditionError(message)


def assert_verified(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a VerificationError"""
    if not condition:
        raise VerificationError(message)


def assert_config(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ConfigError. This should be
    used when validating the spec of the managed resource.
    """
    if not condition:
        raise ConfigError(message)


def assert_cluster(condition: bool, message: str = ""):
    """Replacement for assert() which will throw a ClusterError. This should
    be used when an operation in the cluster (such as fetching an object that
    must exist) fails.
    """
    if not condition:
        raise ClusterError(message)
