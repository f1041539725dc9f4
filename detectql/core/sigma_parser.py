"""
Sigma Rule Parser

Parses Sigma YAML detection rules into a typed Rule: metadata, log source,
named searches and the parsed conditions. YAML nodes are walked directly so
that conditions keep their source position for diagnostics.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from .condition_parser import parse_condition
from .sigma_ast import Condition
from ..errors import GrammarError, ParseError


@dataclass(frozen=True)
class Logsource:
    category: str = ""
    product: str = ""
    service: str = ""
    definition: str = ""
    additional_fields: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass
class RelatedRule:
    id: str
    type: str


@dataclass
class FieldMatcher:
    """
    One "Field|mod1|mod2: values" entry of a search.
    """
    field: str
    modifiers: List[str]
    values: List[Any]


@dataclass
class EventMatcher:
    field_matchers: List[FieldMatcher]


@dataclass
class Search:
    """
    A named search: either a keyword list or one or more event matchers.
    """
    keywords: List[Any] = field(default_factory=list)
    event_matchers: List[EventMatcher] = field(default_factory=list)


@dataclass
class Detection:
    searches: Dict[str, Search] = field(default_factory=dict)
    conditions: List[Condition] = field(default_factory=list)
    timeframe: Optional[str] = None


@dataclass
class Rule:
    title: str = ""
    id: str = ""
    related: List[RelatedRule] = field(default_factory=list)
    status: str = ""
    description: str = ""
    author: str = ""
    level: str = ""
    references: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    logsource: Logsource = field(default_factory=Logsource)
    detection: Detection = field(default_factory=Detection)
    additional_fields: Dict[str, Any] = field(default_factory=dict)


_BOOL_TAG = 'tag:yaml.org,2002:bool'


class NodeReader:
    """
    Builds typed values from composed PyYAML nodes.

    Wraps a SafeLoader so plain values are constructed exactly as
    yaml.safe_load would, while mappings and sequences stay walkable.
    """

    def __init__(self, contents: Union[bytes, str]):
        self.loader = yaml.SafeLoader(contents)

    def root(self) -> yaml.MappingNode:
        node = self.loader.get_single_node()
        if not isinstance(node, yaml.MappingNode):
            raise ParseError("expected a YAML mapping at the document root")
        return node

    def dispose(self):
        self.loader.dispose()

    def value(self, node: yaml.Node) -> Any:
        return self.loader.construct_object(node, deep=True)

    def scalar(self, node: yaml.Node) -> Any:
        """
        Construct a matching value, keeping YAML 1.1 words like yes/no/on/off as text.
        """
        if isinstance(node, yaml.ScalarNode) and node.tag == _BOOL_TAG \
                and node.value.lower() not in ('true', 'false'):
            return node.value
        return self.value(node)

    def string(self, node: yaml.Node) -> str:
        value = self.value(node)
        return "" if value is None else str(value)

    def string_list(self, node: yaml.Node) -> List[str]:
        """
        Read a scalar or a sequence of scalars as a list of strings.
        """
        if isinstance(node, yaml.SequenceNode):
            return [self.string(item) for item in node.value]
        if isinstance(node, yaml.ScalarNode):
            value = self.value(node)
            return [] if value is None else [str(value)]
        raise ParseError(f"line {_line(node)}: expected a scalar or a list")

    def mapping(self, node: yaml.Node, what: str) -> List[Tuple[str, yaml.Node]]:
        if isinstance(node, yaml.ScalarNode) and self.value(node) is None:
            return []
        if not isinstance(node, yaml.MappingNode):
            raise ParseError(f"line {_line(node)}: expected {what} to be a map")
        return [(self.string(key), value) for key, value in node.value]


def _line(node: yaml.Node) -> int:
    return node.start_mark.line + 1


def parse_logsource(reader: NodeReader, node: yaml.Node) -> Logsource:
    known = {}
    extra = {}
    for key, value in reader.mapping(node, "logsource"):
        if key in ('category', 'product', 'service', 'definition'):
            known[key] = reader.string(value)
        else:
            extra[key] = reader.value(value)
    return Logsource(additional_fields=extra, **known)


def parse_field_with_modifiers(field_name: str) -> Tuple[str, List[str]]:
    """
    Parse field name and extract modifiers.

    Example: 'ProcessName|endswith' → ('ProcessName', ['endswith'])
    """
    if '|' not in field_name:
        return field_name, []

    parts = field_name.split('|')
    return parts[0], parts[1:]


def _parse_event_matcher(reader: NodeReader, node: yaml.MappingNode) -> EventMatcher:
    matchers = []
    for key, value in reader.mapping(node, "event matcher"):
        field_name, modifiers = parse_field_with_modifiers(key)
        if isinstance(value, yaml.SequenceNode):
            values = [reader.scalar(item) for item in value.value]
        else:
            values = [reader.scalar(value)]
        matchers.append(FieldMatcher(field_name, modifiers, values))
    return EventMatcher(matchers)


def parse_search(reader: NodeReader, node: yaml.Node) -> Search:
    """
    Parse a search: a map (one event matcher), a list of maps (several event
    matchers) or a list of scalars (keywords).
    """
    if isinstance(node, yaml.MappingNode):
        return Search(event_matchers=[_parse_event_matcher(reader, node)])

    if isinstance(node, yaml.SequenceNode):
        if not node.value:
            raise ParseError(f"line {_line(node)}: search cannot be an empty list")
        first = node.value[0]
        if isinstance(first, yaml.ScalarNode):
            return Search(keywords=[reader.scalar(item) for item in node.value])
        if isinstance(first, yaml.MappingNode):
            matchers = []
            for item in node.value:
                if not isinstance(item, yaml.MappingNode):
                    raise ParseError(f"line {_line(item)}: expected every list entry to be a map")
                matchers.append(_parse_event_matcher(reader, item))
            return Search(event_matchers=matchers)
        raise ParseError(f"line {_line(first)}: expected a list of scalars or maps")

    raise ParseError(f"line {_line(node)}: expected a map or list, got a scalar")


def _parse_condition_node(reader: NodeReader, node: yaml.ScalarNode) -> Condition:
    text = reader.string(node)
    mark = node.start_mark
    try:
        return parse_condition(text, mark.line, mark.column)
    except GrammarError as e:
        error = GrammarError(f"line {mark.line + 1}: {e}")
        error.condition = e.condition
        error.position = e.position
        raise error from e


def _parse_conditions(reader: NodeReader, node: yaml.Node) -> List[Condition]:
    if isinstance(node, yaml.ScalarNode):
        return [_parse_condition_node(reader, node)]
    if isinstance(node, yaml.SequenceNode):
        conditions = []
        for item in node.value:
            if not isinstance(item, yaml.ScalarNode):
                raise ParseError(f"line {_line(item)}: expected condition to be a string")
            conditions.append(_parse_condition_node(reader, item))
        return conditions
    raise ParseError(f"line {_line(node)}: expected a scalar or a list of conditions")


def _parse_detection(reader: NodeReader, node: yaml.Node) -> Detection:
    detection = Detection()
    for key, value in reader.mapping(node, "detection"):
        if key == 'condition':
            detection.conditions = _parse_conditions(reader, value)
        elif key == 'timeframe':
            detection.timeframe = reader.string(value)
        else:
            detection.searches[key] = parse_search(reader, value)
    return detection


def _parse_related(reader: NodeReader, node: yaml.Node) -> List[RelatedRule]:
    if not isinstance(node, yaml.SequenceNode):
        raise ParseError(f"line {_line(node)}: expected related to be a list")
    related = []
    for item in node.value:
        entry = dict(reader.mapping(item, "related rule"))
        related.append(RelatedRule(
            id=reader.string(entry['id']) if 'id' in entry else "",
            type=reader.string(entry['type']) if 'type' in entry else "",
        ))
    return related


_STRING_FIELDS = ('title', 'id', 'status', 'description', 'author', 'level')


def parse_rule(contents: Union[bytes, str]) -> Rule:
    """
    Parse a Sigma rule document.

    Args:
        contents: Raw YAML document

    Returns:
        Parsed Rule

    Raises:
        ParseError: If the document is not a valid rule
        GrammarError: If a condition is malformed
    """
    reader = NodeReader(contents)
    try:
        rule = Rule()
        for key, value in reader.mapping(reader.root(), "rule"):
            if key in _STRING_FIELDS:
                setattr(rule, key, reader.string(value))
            elif key in ('references', 'tags'):
                setattr(rule, key, reader.string_list(value))
            elif key == 'related':
                rule.related = _parse_related(reader, value)
            elif key == 'logsource':
                rule.logsource = parse_logsource(reader, value)
            elif key == 'detection':
                rule.detection = _parse_detection(reader, value)
            else:
                rule.additional_fields[key] = reader.value(value)
        return rule
    except yaml.YAMLError as e:
        raise ParseError(f"invalid rule YAML: {e}") from e
    finally:
        reader.dispose()
