"""Convert YAML documents into plain JSON-compatible Python values.

Scalars are interpreted from their text alone: a leading integer wins,
then a leading floating-point number, then ``true``/``false``; anything
else stays a string.
"""

from __future__ import annotations

import math
import re
from typing import IO, Any, Union

import yaml

_NULL_TAG = "tag:yaml.org,2002:null"
_INT_MIN = -(2**31)
_INT_MAX = 2**31 - 1
_INT_PREFIX = re.compile(r"\s*([+-]?\d+)")
_FLOAT_PREFIX = re.compile(
    r"\s*([+-]?(?:(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?|inf(?:inity)?|nan))",
    re.IGNORECASE,
)


def _scalar(text: str) -> Any:
    match = _INT_PREFIX.match(text)
    if match:
        number = int(match.group(1))
        if _INT_MIN <= number <= _INT_MAX:
            return number
    match = _FLOAT_PREFIX.match(text)
    if match:
        literal = match.group(1)
        number = float(literal)
        if not (math.isinf(number) and "inf" not in literal.lower()):
            return number
    if text == "true":
        return True
    if text == "false":
        return False
    return text


def _key(node: yaml.Node) -> str:
    if not isinstance(node, yaml.ScalarNode):
        raise TypeError("mapping keys must be scalars")
    return node.value


def yaml_to_json(node: yaml.Node) -> Any:
    """Recursively convert a composed YAML node into dicts, lists and scalars."""
    if isinstance(node, yaml.ScalarNode):
        if node.tag == _NULL_TAG:
            return None
        return _scalar(node.value)
    if isinstance(node, yaml.SequenceNode):
        return [yaml_to_json(item) for item in node.value]
    if isinstance(node, yaml.MappingNode):
        return {_key(key): yaml_to_json(value) for key, value in node.value}
    return None


def load_yaml(text: Union[str, IO[str]]) -> Any:
    """Parse the first YAML document in ``text`` and convert it.

    Returns None for an empty document; malformed YAML raises
    ``yaml.YAMLError``.
    """
    node = next(iter(yaml.compose_all(text, Loader=yaml.SafeLoader)), None)
    if node is None:
        return None
    return yaml_to_json(node)