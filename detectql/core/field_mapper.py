"""
Field Mapper

Layers configuration documents over a rule: accumulates field mappings,
resolves the applicable indexes and extra conditions from log-source
mappings, and applies log-source rewrites.
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Tuple

from .sigma_config import Config, LogsourceMapping
from .sigma_parser import Logsource, Search
from ..errors import PlaceholderExpansionError

PlaceholderExpander = Callable[[str], Awaitable[List[str]]]


@dataclass(frozen=True)
class ResolvedLogsource:
    """
    Result of resolving a rule's log source against an ordered config list.
    """
    logsource: Logsource
    indexes: Tuple[str, ...] = ()
    conditions: Tuple[Search, ...] = ()


def calculate_field_mappings(configs: Sequence) -> Dict[str, List[str]]:
    """
    Merge the field mappings of all configs, in the given order.

    Targets of later configs are appended to those of earlier ones. Duplicate
    targets are kept.

    Args:
        configs: Configs exposing a field_mappings dict

    Returns:
        Mapping of rule field name to backend field names
    """
    mappings: Dict[str, List[str]] = {}
    for config in configs:
        for name, targets in config.field_mappings.items():
            mappings.setdefault(name, []).extend(targets)
    return mappings


def matches_logsource(mapping: LogsourceMapping, logsource: Logsource) -> bool:
    """
    Check whether every non-empty match field of a mapping equals the log source.
    """
    for key in ('category', 'product', 'service'):
        expected = getattr(mapping, key)
        if expected and expected != getattr(logsource, key):
            return False
    return True


def rewrite_logsource(logsource: Logsource, rewrite: Logsource) -> Logsource:
    """
    Overwrite category/product/service with the non-empty fields of a rewrite.
    """
    changes = {
        key: getattr(rewrite, key)
        for key in ('category', 'product', 'service')
        if getattr(rewrite, key)
    }
    if not changes:
        return logsource
    return replace(logsource, **changes)


def resolve_logsource(logsource: Logsource, configs: Sequence[Config]) -> ResolvedLogsource:
    """
    Resolve indexes, extra conditions and rewrites for a log source.

    Configs apply in the order given; each one sees the log source as
    rewritten by the configs (and mappings) before it. A config with no
    matching mapping contributes its default index, if any.

    Args:
        logsource: The rule's log source
        configs: Ordered configs

    Returns:
        ResolvedLogsource with the final log source, indexes and conditions
    """
    indexes: List[str] = []
    conditions: List[Search] = []

    for config in configs:
        matched = False
        for name, mapping in config.logsources.items():
            if not matches_logsource(mapping, logsource):
                continue
            matched = True
            logging.debug(f"Config '{config.title}' log source '{name}' matches {logsource}")
            logsource = rewrite_logsource(logsource, mapping.rewrite)
            indexes.extend(mapping.indexes)
            if mapping.conditions is not None:
                conditions.append(mapping.conditions)

        if not matched and config.default_index:
            logging.debug(f"Config '{config.title}' has no matching log source, using default index")
            indexes.append(config.default_index)

    return ResolvedLogsource(logsource, tuple(indexes), tuple(conditions))


class FieldMapper:
    """
    Looks up backend field names for rule fields.
    """

    def __init__(self, mappings: Dict[str, List[str]]):
        self.mappings = mappings

    @classmethod
    def from_configs(cls, configs: Sequence) -> "FieldMapper":
        return cls(calculate_field_mappings(configs))

    def get_fields(self, field: str) -> List[str]:
        """
        Backend fields for a rule field, or the field itself if unmapped.
        """
        targets = self.mappings.get(field)
        if targets:
            return list(targets)
        return [field]

    def get_first_field(self, field: str) -> str:
        return self.get_fields(field)[0]


def is_placeholder(value: Any) -> bool:
    return isinstance(value, str) and len(value) > 2 and value.startswith('%') and value.endswith('%')


def collect_placeholders(configs: Sequence) -> Dict[str, List[str]]:
    """
    Merge the placeholders sections of configs (Sigma or YARA).

    Values of the same placeholder from several configs are concatenated in
    config order.
    """
    placeholders: Dict[str, List[str]] = {}
    for config in configs:
        for name, values in config.placeholders.items():
            placeholders.setdefault(name, []).extend(values)
    return placeholders


def lookup_placeholder(placeholders: Dict[str, List[str]], name: str) -> List[str]:
    if name not in placeholders:
        raise PlaceholderExpansionError(f"no values configured for placeholder '{name}'")
    return list(placeholders[name])


def config_placeholder_expander(configs: Sequence) -> PlaceholderExpander:
    """
    Build a placeholder expander from the placeholders section of configs.
    """
    placeholders = collect_placeholders(configs)

    async def expand(name: str) -> List[str]:
        return lookup_placeholder(placeholders, name)

    return expand
