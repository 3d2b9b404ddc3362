"""
Tests for the library config and its validation
"""

# Third Party
import pytest

# First Party
import aconfig

# Local
from apim_operator import config
from apim_operator.config.validation import get_invalid_params
from apim_operator.test_helpers.helpers import configure_logging, library_config

configure_logging()


def make_validation(**entries):
    return aconfig.Config(entries, override_env_vars=False)


def test_library_config_loaded():
    """Make sure the packaged config is readable through the module"""
    assert config.requeue_after_seconds > 0
    assert config.upgrade_gate.pending_threshold == 1
    with pytest.raises(AttributeError):
        config.not_a_config_key  # pylint: disable=pointless-statement


def test_library_config_override():
    with library_config(job_poll_seconds=1, upgrade_gate={"requeue_seconds": 2}):
        assert config.job_poll_seconds == 1
        assert config.upgrade_gate.requeue_seconds == 2
    assert config.job_poll_seconds == 5
    assert config.upgrade_gate.requeue_seconds == 60


def test_packaged_config_valid():
    # Standard
    import os  # pylint: disable=import-outside-toplevel

    validation = aconfig.Config.from_yaml(
        os.path.join(os.path.dirname(config.__file__), "config_validation.yaml"),
        override_env_vars=False,
    )
    assert get_invalid_params(config.library_config, validation) == []


@pytest.mark.parametrize(
    ["validation", "value", "valid"],
    [
        ({"type": "number", "min": 0}, 5, True),
        ({"type": "number", "min": 0}, -1, False),
        ({"type": "number"}, True, False),
        ({"type": "int", "max": 3}, 2.0, False),
        ({"type": "str", "min_len": 1}, "", False),
        ({"type": "bool"}, False, True),
        ({"type": "enum", "values": ["a", "b"]}, "c", False),
        ({"type": "enum", "values": ["a", "b"]}, "a", True),
        ({"type": "list", "max_len": 1}, [1, 2], False),
        ({"type": "str", "optional": True}, None, True),
    ],
)
def test_validation_types(validation, value, valid):
    invalid = get_invalid_params(
        aconfig.Config({"key": value}, override_env_vars=False),
        make_validation(key=validation),
    )
    assert (invalid == []) is valid


def test_validation_nested_keys():
    invalid = get_invalid_params(
        aconfig.Config({"outer": {"inner": -1}}, override_env_vars=False),
        make_validation(outer={"inner": {"type": "number", "min": 0}}),
    )
    assert invalid == ["outer.inner"]
