from __future__ import annotations

import ipaddress
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from detection.errors import InvalidModifierError, RuleParseError

logger = logging.getLogger(__name__)

OPERATORS = ("contains", "startswith", "endswith", "re", "gt", "gte", "lt", "lte", "cidr")
FLAGS = ("all",)

_NUMERIC_OPERATORS = {
    "gt": lambda a, b: a > b,
    "gte": lambda a, b: a >= b,
    "lt": lambda a, b: a < b,
    "lte": lambda a, b: a <= b,
}


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_number(value: Any) -> Optional[float]:
    """Parse a numeric operand; None when the value is not a finite number."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip())
        except ValueError:
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _wildcard_to_regex(pattern: str) -> re.Pattern:
    body = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(f"^{body}$", re.IGNORECASE | re.DOTALL)


def _parse_ipv4_network(block: str) -> Optional[ipaddress.IPv4Network]:
    try:
        return ipaddress.IPv4Network(block.strip(), strict=False)
    except ValueError:
        return None


def _parse_ipv4_address(value: str) -> Optional[ipaddress.IPv4Address]:
    try:
        return ipaddress.IPv4Address(value.strip())
    except ValueError:
        return None


def split_field_key(raw_key: str) -> Tuple[str, Tuple[str, ...]]:
    """Split `Field|mod1|mod2` into the field name and lower-cased modifiers."""
    parts = raw_key.split("|")
    field = parts[0].strip()
    modifiers = tuple(p.strip().lower() for p in parts[1:] if p.strip())
    return field, modifiers


@dataclass(frozen=True)
class FieldCriterion:
    """
    One `field|modifier: expected` entry of a selection, compiled once.

    A list of expected values matches when any of them matches, or when all
    of them match if the `all` flag is present.
    """
    key: str
    field: str
    operator: str
    expected: Tuple[Any, ...]
    require_all: bool = False
    compiled_regex: Tuple[Optional[re.Pattern], ...] = ()
    compiled_networks: Tuple[Optional[ipaddress.IPv4Network], ...] = ()

    def _match_one(self, actual: Any, index: int) -> bool:
        expected = self.expected[index]
        op = self.operator

        if op == "eq":
            pattern = self.compiled_regex[index]
            if pattern is not None:
                return pattern.match(_coerce_str(actual)) is not None
            return _coerce_str(actual) == _coerce_str(expected)

        if op == "contains":
            return _coerce_str(expected).lower() in _coerce_str(actual).lower()
        if op == "startswith":
            return _coerce_str(actual).lower().startswith(_coerce_str(expected).lower())
        if op == "endswith":
            return _coerce_str(actual).lower().endswith(_coerce_str(expected).lower())

        if op == "re":
            return self.compiled_regex[index].search(_coerce_str(actual)) is not None

        if op in _NUMERIC_OPERATORS:
            left = _to_number(actual)
            right = _to_number(expected)
            if left is None or right is None:
                return False
            return _NUMERIC_OPERATORS[op](left, right)

        if op == "cidr":
            network = self.compiled_networks[index]
            if network is None or not isinstance(actual, str):
                return False
            address = _parse_ipv4_address(actual)
            return address is not None and address in network

        return False

    def matches(self, actual: Any) -> bool:
        """Evaluate against a resolved field value; None means the field is absent."""
        if actual is None or not self.expected:
            return False
        results = (self._match_one(actual, i) for i in range(len(self.expected)))
        if self.require_all:
            return all(results)
        return any(results)


def compile_criterion(raw_key: str, raw_value: Any) -> FieldCriterion:
    """
    Build a FieldCriterion from a selection entry.

    Raises InvalidModifierError for unknown or conflicting modifiers and
    RuleParseError for regular expressions that do not compile. Malformed
    CIDR blocks are not an error: the affected value simply never matches.
    """
    field, modifiers = split_field_key(str(raw_key))
    if not field:
        raise InvalidModifierError(f"Selection key {raw_key!r} has no field name")

    operators: List[str] = []
    require_all = False
    for mod in modifiers:
        if mod in OPERATORS:
            operators.append(mod)
        elif mod in FLAGS:
            require_all = True
        else:
            raise InvalidModifierError(f"Unknown modifier {mod!r} in {raw_key!r}")
    if len(operators) > 1:
        raise InvalidModifierError(f"Conflicting modifiers {operators} in {raw_key!r}")
    operator = operators[0] if operators else "eq"

    values = raw_value if isinstance(raw_value, (list, tuple)) else [raw_value]
    expected = tuple(values)

    compiled_regex: List[Optional[re.Pattern]] = []
    compiled_networks: List[Optional[ipaddress.IPv4Network]] = []

    if operator == "re":
        for value in expected:
            try:
                compiled_regex.append(re.compile(_coerce_str(value), re.IGNORECASE))
            except re.error as e:
                raise RuleParseError(f"Invalid regex {_coerce_str(value)!r} in {raw_key!r}: {e}") from e
    elif operator == "eq":
        for value in expected:
            text = _coerce_str(value)
            compiled_regex.append(_wildcard_to_regex(text) if "*" in text else None)
    elif operator == "cidr":
        for value in expected:
            network = _parse_ipv4_network(_coerce_str(value))
            if network is None:
                logger.warning(f"Invalid IPv4 CIDR block {_coerce_str(value)!r} in {raw_key!r}; it will never match")
            compiled_networks.append(network)

    return FieldCriterion(
        key=str(raw_key),
        field=field,
        operator=operator,
        expected=expected,
        require_all=require_all,
        compiled_regex=tuple(compiled_regex),
        compiled_networks=tuple(compiled_networks),
    )
