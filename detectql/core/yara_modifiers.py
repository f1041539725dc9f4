"""
YARA String Modifiers

Modifier registry for YARA text strings. Values keep their case unless a
modifier folds it (nocase, the i* comparators); field names are always
lower-cased.
"""

from types import MappingProxyType
from typing import Any, Optional

from .modifiers import (
    ModifierRegistry, as_bytes, as_text, encode_base64, equals_comparator,
    like_comparator, operator_comparator,
)
from ..errors import UnsupportedConstructError

DEFAULT_XOR_KEY = 0x01


def _nocase(value: Any, parameter: Optional[str]) -> str:
    return as_text(value).lower()


def _unchanged(value: Any, parameter: Optional[str]) -> Any:
    return value


def _wide(value: Any, parameter: Optional[str]) -> bytes:
    return as_text(value).encode('utf-16-le')


def _xor_key(parameter: Optional[str]) -> int:
    if parameter is None or parameter == "":
        return DEFAULT_XOR_KEY
    if '-' in parameter:
        raise UnsupportedConstructError(f"xor key ranges are not supported: xor({parameter})")
    try:
        key = int(parameter, 0)
    except ValueError:
        raise UnsupportedConstructError(f"invalid xor key: xor({parameter})")
    if not 0 <= key <= 255:
        raise UnsupportedConstructError(f"xor key out of range: xor({parameter})")
    return key


def _xor(value: Any, parameter: Optional[str]) -> bytes:
    key = _xor_key(parameter)
    return bytes(byte ^ key for byte in as_bytes(value))


def _base64(value: Any, parameter: Optional[str]) -> str:
    return encode_base64(value, parameter)


def _base64wide(value: Any, parameter: Optional[str]) -> str:
    return encode_base64(_wide(value, None), parameter)


YARA_MODIFIERS = ModifierRegistry(
    name='yara',
    comparators=MappingProxyType({
        'contains': like_comparator('%{}%', fold_case=False),
        'icontains': like_comparator('%{}%', fold_case=True),
        'startswith': like_comparator('{}%', fold_case=False),
        'istartswith': like_comparator('{}%', fold_case=True),
        'endswith': like_comparator('%{}', fold_case=False),
        'iendswith': like_comparator('%{}', fold_case=True),
        'gt': operator_comparator('>'),
        'ge': operator_comparator('>='),
        'lt': operator_comparator('<'),
        'le': operator_comparator('<='),
        'eq': equals_comparator(fold_case=False),
        'fullword': equals_comparator(fold_case=False),
        'iequals': equals_comparator(fold_case=True),
        'neq': equals_comparator(fold_case=False, operator='!='),
    }),
    value_modifiers=MappingProxyType({
        'nocase': _nocase,
        'ascii': _unchanged,
        'private': _unchanged,
        'wide': _wide,
        'xor': _xor,
        'base64': _base64,
        'base64wide': _base64wide,
    }),
    default_comparator=like_comparator('%{}%', fold_case=False),
    parameterized=frozenset({'xor', 'base64', 'base64wide'}),
)


def prioritize_fullword(modifiers):
    """
    Move 'fullword' to the end of the list so it acts as the comparator.
    """
    rest = [modifier for modifier in modifiers if modifier != 'fullword']
    if len(rest) == len(modifiers):
        return list(modifiers)
    return rest + ['fullword']
