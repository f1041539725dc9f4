"""
Modifier Pipeline

Turns a field modifier chain (e.g. CommandLine|base64|contains) into a
comparator that renders one backend comparison:
    commandline like '%ZXZpbA==%'

A valid chain is zero or more value modifiers followed by at most one
comparator. Registries are immutable and passed to the evaluators, so the
case-sensitive and case-insensitive variants are just different tables.
"""

import base64
import ipaddress
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from ..errors import UnsupportedConstructError

Comparator = Callable[[str, Any], str]
ValueModifier = Callable[[Any, Optional[str]], Any]

NULL_TEXT = "null"

_PARAMETER_RE = re.compile(r'^([A-Za-z0-9_]+)\((.*)\)$', re.DOTALL)


def as_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode('utf-8')


def as_text(value: Any) -> str:
    """
    Text form of a (possibly transformed) value; None renders empty.
    """
    if value is None:
        return ""
    if isinstance(value, bytes):
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError:
            return value.decode('latin-1')
    return str(value)


def quote(value: str) -> str:
    return value.replace("'", "\\'")


def split_modifier(modifier: str) -> Tuple[str, Optional[str]]:
    """
    Split 'xor(0x10)' into ('xor', '0x10'); plain names have no parameter.
    """
    match = _PARAMETER_RE.match(modifier)
    if not match:
        return modifier, None
    parameter = match.group(2).strip()
    if len(parameter) >= 2 and parameter[0] == parameter[-1] == '"':
        parameter = parameter[1:-1]
    return match.group(1), parameter


def split_all_modifier(modifiers: Sequence[str]) -> Tuple[List[str], bool]:
    """
    Strip a trailing 'all' modifier.

    Returns:
        Tuple of (remaining modifiers, whether values must all match)
    """
    modifiers = list(modifiers)
    if modifiers and modifiers[-1] == 'all':
        return modifiers[:-1], True
    return modifiers, False


@dataclass(frozen=True)
class ModifierRegistry:
    """
    Immutable table of comparators and value modifiers.

    Args:
        name: Label used in log messages
        comparators: Terminal comparators by modifier name
        value_modifiers: Value transforms by modifier name
        default_comparator: Used when the chain has no comparator
        parameterized: Value modifiers that accept a "(...)" parameter
    """
    name: str
    comparators: Mapping[str, Comparator]
    value_modifiers: Mapping[str, ValueModifier]
    default_comparator: Comparator
    parameterized: FrozenSet[str] = field(default_factory=frozenset)

    def get_comparator(self, modifiers: Sequence[str]) -> Comparator:
        """
        Compose a modifier chain into a single comparator.

        Args:
            modifiers: Modifier names in rule order

        Returns:
            Function (field, value) -> comparison string

        Raises:
            UnsupportedConstructError: Unknown modifier, or a comparator
                that is not the last modifier
        """
        transforms = []
        comparator = self.default_comparator
        for position, modifier in enumerate(modifiers):
            name, parameter = split_modifier(modifier)
            if parameter is not None and name not in self.parameterized:
                raise UnsupportedConstructError(f"unknown modifier {modifier}")
            if name in self.comparators:
                if position < len(modifiers) - 1:
                    raise UnsupportedConstructError(
                        f"comparator modifier {modifier} must be the last modifier")
                comparator = self.comparators[name]
            elif name in self.value_modifiers:
                transforms.append((self.value_modifiers[name], parameter))
            else:
                raise UnsupportedConstructError(f"unknown modifier {modifier}")

        if not modifiers:
            return comparator

        # Only the bare default comparator sees None; any other chain gets the literal 'null'.
        def compare(field: str, value: Any) -> str:
            if value is None:
                value = NULL_TEXT
            for transform, parameter in transforms:
                value = transform(value, parameter)
            return comparator(field, value)

        return compare


def _comparison_value(value: Any, fold_case: bool) -> str:
    text = quote(as_text(value))
    return text.lower() if fold_case else text


def equals_comparator(fold_case: bool, operator: str = "=") -> Comparator:
    """
    field = 'value'; a null value compares against the empty string.
    """
    def compare(field: str, value: Any) -> str:
        if value is None:
            return f"{field.lower()} {operator} ''"
        return f"{field.lower()} {operator} '{_comparison_value(value, fold_case)}'"
    return compare


def like_comparator(template: str, fold_case: bool) -> Comparator:
    """
    field like '<template>' where the template holds '{}' for the value.
    """
    def compare(field: str, value: Any) -> str:
        pattern = template.format(_comparison_value(value, fold_case))
        return f"{field.lower()} like '{pattern}'"
    return compare


def operator_comparator(operator: str) -> Comparator:
    def compare(field: str, value: Any) -> str:
        return f"{field.lower()} {operator} '{quote(as_text(value))}'"
    return compare


def _regex_comparator(field: str, value: Any) -> str:
    return f"{field.lower()} rlike '{quote(as_text(value))}'"


def cidr_to_regex(value: str) -> str:
    """
    Expand an IPv4 CIDR into an anchored regex over dotted octets.

    Octets fully covered by the prefix stay literal, the rest match any
    1-3 digit number: 192.168.0.0/24 → ^192\\.168\\.0\\.\\d{1,3}$

    Raises:
        UnsupportedConstructError: For IPv6 or malformed networks
    """
    try:
        network = ipaddress.ip_network(value.strip(), strict=False)
    except ValueError as e:
        raise UnsupportedConstructError(f"invalid CIDR value '{value}': {e}")
    if network.version != 4:
        raise UnsupportedConstructError(f"only IPv4 is supported for cidr, got '{value}'")

    octets = str(network.network_address).split('.')
    fixed = network.prefixlen // 8
    parts = octets[:fixed] + [r'\d{1,3}'] * (4 - fixed)
    return '^' + r'\.'.join(parts) + '$'


def _cidr_comparator(field: str, value: Any) -> str:
    return f"{field.lower()} rlike '{cidr_to_regex(as_text(value))}'"


def encode_base64(value: Any, alphabet: Optional[str] = None) -> str:
    encoded = base64.b64encode(as_bytes(value)).decode('ascii')
    if alphabet:
        if len(alphabet) != 64:
            raise UnsupportedConstructError("base64 alphabet must have 64 characters")
        standard = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/'
        encoded = encoded.rstrip('=').translate(str.maketrans(standard, alphabet))
    return encoded


def _base64(value: Any, parameter: Optional[str]) -> str:
    return encode_base64(value)


def _wide(value: Any, parameter: Optional[str]) -> bytes:
    return as_text(value).encode('utf-16-le')


def _utf16be(value: Any, parameter: Optional[str]) -> bytes:
    return as_text(value).encode('utf-16-be')


def _utf16(value: Any, parameter: Optional[str]) -> bytes:
    return b'\xff\xfe' + as_text(value).encode('utf-16-le')


def _unchanged(value: Any, parameter: Optional[str]) -> Any:
    return value


SIGMA_VALUE_MODIFIERS = MappingProxyType({
    'base64': _base64,
    'wide': _wide,
    'utf16le': _wide,
    'utf16be': _utf16be,
    'utf16': _utf16,
    'expand': _unchanged,
})


def _sigma_comparators(fold_case: bool) -> Mapping[str, Comparator]:
    return MappingProxyType({
        'contains': like_comparator('%{}%', fold_case),
        'endswith': like_comparator('%{}', fold_case),
        'startswith': like_comparator('{}%', fold_case),
        're': _regex_comparator,
        'cidr': _cidr_comparator,
        'gt': operator_comparator('>'),
        'gte': operator_comparator('>='),
        'lt': operator_comparator('<'),
        'lte': operator_comparator('<='),
    })


SIGMA_MODIFIERS = ModifierRegistry(
    name='sigma',
    comparators=_sigma_comparators(fold_case=True),
    value_modifiers=SIGMA_VALUE_MODIFIERS,
    default_comparator=equals_comparator(fold_case=True),
)

SIGMA_CASE_SENSITIVE_MODIFIERS = ModifierRegistry(
    name='sigma-case-sensitive',
    comparators=_sigma_comparators(fold_case=False),
    value_modifiers=SIGMA_VALUE_MODIFIERS,
    default_comparator=equals_comparator(fold_case=False),
)
