"""
Module to validate values in a loaded config against a parallel validation
config. Each leaf of the validation config is a dict with a "type" key and
type-specific constraint keys, for example:

    requeue_after_seconds:
      type: number
      min: 0
"""

# Standard
from typing import Any, Dict, List, Optional, Type
import abc

# First Party
import aconfig
import alog

# Local
from .. import constants
from ..utils import nested_get  # pylint: disable=cyclic-import

log = alog.use_channel("CONFG")


################################################################################
## Public ######################################################################
################################################################################


def get_invalid_params(
    config: aconfig.Config,
    validation_config: aconfig.Config,
) -> List[str]:
    """Get a list of any params that are invalid

    Args:
        config:  aconfig.Config
            The parsed config with any override values
        validation_config:  aconfig.Config
            The parallel config holding validation setup

    Returns:
        invalid_params:  List[str]
            A list of all nested keys for parameters that fail validation
    """
    invalid_params = []
    for key, parameter in _parse_validation_config(validation_config).items():
        if not parameter.validate(nested_get(config, key)):
            log.warning("Found invalid config key [%s]", key)
            invalid_params.append(key)
    return invalid_params


################################################################################
## Implementation ##############################################################
################################################################################

# pylint: disable=too-few-public-methods

_PARAMETER_TYPES: Dict[str, Type["_Parameter"]] = {}


def _register(param_class):
    """Class decorator adding a parameter type to the lookup table"""
    _PARAMETER_TYPES[param_class.TYPE_KEY] = param_class
    return param_class


class _Parameter(abc.ABC):
    """A single validated parameter"""

    TYPE_KEY = None
    TYPES = ()

    def __init__(self, optional: bool = False):
        self.optional = optional

    def validate(self, value: Any) -> bool:
        """Check the type and then the type-specific constraints"""
        if self.optional and value is None:
            return True
        # bool is an int subclass, so only bool parameters accept it
        if isinstance(value, bool) and bool not in self.TYPES:
            log.warning("Invalid bool value for %s parameter", self.TYPE_KEY)
            return False
        if not isinstance(value, self.TYPES):
            log.warning("Invalid type <%s>", type(value))
            return False
        valid = self._check(value)
        if not valid:
            log.warning("Invalid value [%s]", value)
        return valid

    @abc.abstractmethod
    def _check(self, value: Any) -> bool:
        """Type-specific value constraints"""


@_register
class _NumberParameter(_Parameter):
    """A number with optional inclusive bounds. The min/max names match the
    keys used in the validation yaml.
    """

    TYPE_KEY = "number"
    TYPES = (int, float)

    def __init__(
        self,
        *,
        min: Optional[float] = None,  # pylint: disable=redefined-builtin
        max: Optional[float] = None,  # pylint: disable=redefined-builtin
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._min = min
        self._max = max

    def _check(self, value) -> bool:
        return (self._min is None or value >= self._min) and (
            self._max is None or value <= self._max
        )


@_register
class _IntParameter(_NumberParameter):
    TYPE_KEY = "int"
    TYPES = (int,)


@_register
class _FloatParameter(_NumberParameter):
    TYPE_KEY = "float"
    TYPES = (float,)


@_register
class _StrParameter(_Parameter):
    """A string with optional length bounds"""

    TYPE_KEY = "str"
    TYPES = (str,)

    def __init__(
        self,
        *,
        min_len: Optional[int] = None,
        max_len: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self._min_len = min_len
        self._max_len = max_len

    def _check(self, value) -> bool:
        return (self._min_len is None or len(value) >= self._min_len) and (
            self._max_len is None or len(value) <= self._max_len
        )


@_register
class _BoolParameter(_Parameter):
    TYPE_KEY = "bool"
    TYPES = (bool,)

    def _check(self, value) -> bool:
        return True


@_register
class _EnumParameter(_Parameter):
    """One of a fixed set of str/int values"""

    TYPE_KEY = "enum"
    TYPES = (str, int, type(None))

    def __init__(self, *, values: List[Any], **kwargs):
        super().__init__(**kwargs)
        assert (
            isinstance(values, list) and values
        ), "Must specify at least one enum value!"
        self.values = values

    def _check(self, value) -> bool:
        return value in self.values


@_register
class _ListParameter(_StrParameter):
    """A list with optional length bounds"""

    TYPE_KEY = "list"
    TYPES = (list,)


# pylint: enable=too-few-public-methods


def _parse_validation_config(
    validation_config: dict,
    prefix_parts: Optional[List[str]] = None,
) -> Dict[str, _Parameter]:
    """Recursively parse the validation config into a flat dict from nested
    key to parameter. A dict with a known "type" is a parameter, any other dict
    is recursed into.
    """
    parameters = {}
    prefix_parts = prefix_parts or []
    for key, val in validation_config.items():
        if not isinstance(val, dict):
            continue
        key_parts = prefix_parts + [key]
        nested_key = constants.NESTED_DICT_DELIM.join(key_parts)
        param_class = _PARAMETER_TYPES.get(val.get("type"))
        if param_class is not None:
            log.debug3("Found parameter at %s", nested_key)
            kwargs = {k: v for k, v in val.items() if k != "type"}
            parameters[nested_key] = param_class(**kwargs)
        else:
            log.debug3("Recursing into %s", nested_key)
            parameters.update(_parse_validation_config(val, key_parts))
    return parameters
