"""
Sigma Config Parser

Parses backend configuration documents: field mappings, log-source mappings
with their indexes, extra conditions and rewrites, default index and
placeholder values.

Example:
    title: Windows
    order: 10
    backends: [eql]
    fieldmappings:
      CommandLine: process.command_line
      User: [user.name, winlog.user.name]
    logsources:
      sysmon:
        product: windows
        service: sysmon
        index: winlogbeat-*
        conditions:
          EventChannel: Microsoft-Windows-Sysmon/Operational
        rewrite:
          service: sysmon-operational
    defaultindex: logs-*
    placeholders:
      admins: [root, administrator]
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

import yaml

from .sigma_parser import Logsource, NodeReader, Search, parse_logsource, parse_search
from ..errors import ParseError


@dataclass
class LogsourceMapping:
    """
    Matches rules by category/product/service; empty fields match anything.
    """
    category: str = ""
    product: str = ""
    service: str = ""
    definition: str = ""
    indexes: List[str] = field(default_factory=list)
    conditions: Optional[Search] = None
    rewrite: Logsource = field(default_factory=Logsource)


@dataclass
class Config:
    title: str = ""
    order: int = 0
    backends: List[str] = field(default_factory=list)
    field_mappings: Dict[str, List[str]] = field(default_factory=dict)
    logsources: Dict[str, LogsourceMapping] = field(default_factory=dict)
    default_index: str = ""
    placeholders: Dict[str, List[str]] = field(default_factory=dict)


def _parse_logsource_mapping(reader: NodeReader, node: yaml.Node) -> LogsourceMapping:
    mapping = LogsourceMapping()
    for key, value in reader.mapping(node, "logsource mapping"):
        if key in ('category', 'product', 'service', 'definition'):
            setattr(mapping, key, reader.string(value))
        elif key == 'index':
            mapping.indexes = reader.string_list(value)
        elif key == 'conditions':
            mapping.conditions = parse_search(reader, value)
        elif key == 'rewrite':
            mapping.rewrite = parse_logsource(reader, value)
    return mapping


def _parse_order(reader: NodeReader, node: yaml.Node) -> int:
    value = reader.value(node)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ParseError(f"order must be an integer, got {value!r}")


def parse_config(contents: Union[bytes, str]) -> Config:
    """
    Parse a Sigma config document.

    Args:
        contents: Raw YAML document

    Returns:
        Parsed Config

    Raises:
        ParseError: If the document is not a valid config
    """
    reader = NodeReader(contents)
    try:
        config = Config()
        for key, value in reader.mapping(reader.root(), "config"):
            if key == 'title':
                config.title = reader.string(value)
            elif key == 'order':
                config.order = _parse_order(reader, value)
            elif key == 'backends':
                config.backends = reader.string_list(value)
            elif key == 'fieldmappings':
                for name, targets in reader.mapping(value, "fieldmappings"):
                    config.field_mappings[name] = reader.string_list(targets)
            elif key == 'logsources':
                for name, mapping in reader.mapping(value, "logsources"):
                    config.logsources[name] = _parse_logsource_mapping(reader, mapping)
            elif key == 'defaultindex':
                config.default_index = reader.string(value)
            elif key == 'placeholders':
                for name, values in reader.mapping(value, "placeholders"):
                    config.placeholders[name] = reader.string_list(values)
        return config
    except yaml.YAMLError as e:
        raise ParseError(f"invalid config YAML: {e}") from e
    finally:
        reader.dispose()
