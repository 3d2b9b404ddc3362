"""
Tests for the common utilities
"""

# Third Party
import pytest

# Local
from apim_operator import utils
from apim_operator.test_helpers.helpers import configure_logging

configure_logging()


## merge_configs ###############################################################


def test_merge_configs_nested():
    base = {"a": {"b": 1, "c": 2}, "d": 3}
    merged = utils.merge_configs(base, {"a": {"b": 10}, "e": 4})
    assert merged == {"a": {"b": 10, "c": 2}, "d": 3, "e": 4}
    assert merged is base


def test_merge_configs_replaces_non_dicts():
    assert utils.merge_configs({"a": {"b": 1}}, {"a": [1]}) == {"a": [1]}


## nested_get / nested_set #####################################################


def test_nested_get():
    dct = {"a": {"b": {"c": 1}}, "x": None}
    assert utils.nested_get(dct, "a.b.c") == 1
    assert utils.nested_get(dct, "a.missing.c", "dflt") == "dflt"
    assert utils.nested_get(dct, "x.y") is None


def test_nested_get_non_dict_intermediate():
    with pytest.raises(TypeError):
        utils.nested_get({"a": 1}, "a.b")


def test_nested_set():
    dct = {}
    utils.nested_set(dct, "a.b.c", 1)
    assert dct == {"a": {"b": {"c": 1}}}
    with pytest.raises(TypeError):
        utils.nested_set({"a": 1}, "a.b", 2)


## Manifests ###################################################################


@pytest.mark.parametrize(
    ["api_version", "expected"],
    [
        ("apps/v1", ("apps", "v1")),
        ("v1", ("", "v1")),
        ("apps.3scale.net/v1alpha1", ("apps.3scale.net", "v1alpha1")),
        (None, ("", "")),
    ],
)
def test_parse_api_version(api_version, expected):
    assert utils.parse_api_version(api_version) == expected


def test_get_annotation_and_resource_key():
    manifest = {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "s", "namespace": "ns", "annotations": {"a": "b"}},
    }
    assert utils.get_annotation(manifest, "a") == "b"
    assert utils.get_annotation(manifest, "missing", "x") == "x"
    assert utils.get_annotation({}, "a") is None
    assert utils.resource_key(manifest) == "ns/v1/Secret/s"


def test_now_timestamp_format():
    stamp = utils.now_timestamp()
    assert stamp.endswith("Z")
    assert len(stamp) == len("2024-01-01T00:00:00Z")


def test_classproperty():
    class Example:
        name = "x"

        @utils.classproperty
        def upper(cls):  # pylint: disable=no-self-argument
            return cls.name.upper()

    assert Example.upper == "X"
