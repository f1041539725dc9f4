"""
YARA Rule Parser

Reads YARA rule files with plyara and turns each rule into a typed YaraRule:
meta entries, text/hex/regex strings and the parsed condition tree. Also
parses the YAML config documents used when compiling YARA rules.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Union

import plyara
import yaml

from .sigma_parser import NodeReader
from .yara_ast import (
    Alternative, BytesSequence, HexTokens, Jump, Meta, Regexp, StringKind, YaraRule, YaraString,
)
from .yara_condition import parse_regexp, parse_yara_condition
from ..errors import GrammarError, ParseError

_HEX_DIGITS = '0123456789abcdefABCDEF'


class _HexParser:
    """
    Parses the body of a hex string: bytes, nibble wildcards, ~negation,
    [n-m] jumps and ( A | B ) alternations.
    """

    def __init__(self, text: str):
        self.text = text
        self.position = 0

    def _skip_space(self):
        while self.position < len(self.text):
            if self.text[self.position].isspace():
                self.position += 1
            elif self.text.startswith('//', self.position):
                end = self.text.find('\n', self.position)
                self.position = len(self.text) if end < 0 else end
            elif self.text.startswith('/*', self.position):
                end = self.text.find('*/', self.position)
                if end < 0:
                    raise ParseError("unterminated comment in hex string")
                self.position = end + 2
            else:
                return

    def _current(self) -> str:
        self._skip_space()
        return self.text[self.position] if self.position < len(self.text) else ''

    def parse(self) -> HexTokens:
        tokens = self._parse_tokens(nested=False)
        if self._current():
            raise ParseError(f"unexpected '{self._current()}' in hex string {{{self.text}}}")
        return tokens

    def _parse_tokens(self, nested: bool) -> HexTokens:
        tokens = HexTokens()
        sequence = None
        while True:
            char = self._current()
            if not char or (nested and char in '|)'):
                return tokens
            if char == '[':
                sequence = None
                tokens.tokens.append(self._parse_jump())
            elif char == '(':
                sequence = None
                tokens.tokens.append(self._parse_alternative())
            else:
                if sequence is None:
                    sequence = BytesSequence()
                    tokens.tokens.append(sequence)
                self._parse_byte(sequence)

    def _parse_byte(self, sequence: BytesSequence):
        negated = False
        if self._current() == '~':
            negated = True
            self.position += 1
        pair = self.text[self.position:self.position + 2]
        if len(pair) != 2 or any(char not in _HEX_DIGITS + '?' for char in pair):
            raise ParseError(f"invalid byte '{pair}' in hex string {{{self.text}}}")
        self.position += 2

        value = 0
        mask = 0
        if pair[0] != '?':
            value |= int(pair[0], 16) << 4
            mask |= 0xF0
        if pair[1] != '?':
            value |= int(pair[1], 16)
            mask |= 0x0F
        sequence.value.append(value)
        sequence.mask.append(mask)
        sequence.nots.append(negated)

    def _parse_jump(self) -> Jump:
        end = self.text.find(']', self.position)
        if end < 0:
            raise ParseError(f"unterminated jump in hex string {{{self.text}}}")
        body = self.text[self.position + 1:end].replace(' ', '')
        self.position = end + 1
        try:
            if '-' not in body:
                return Jump(int(body), int(body))
            start, _, stop = body.partition('-')
            return Jump(int(start) if start else None, int(stop) if stop else None)
        except ValueError:
            raise ParseError(f"invalid jump [{body}] in hex string {{{self.text}}}")

    def _parse_alternative(self) -> Alternative:
        self.position += 1
        alternatives = []
        while True:
            alternatives.append(self._parse_tokens(nested=True))
            char = self._current()
            self.position += 1
            if char == ')':
                return Alternative(alternatives)
            if char != '|':
                raise ParseError(f"unterminated alternation in hex string {{{self.text}}}")


def parse_hex_string(text: str) -> HexTokens:
    """
    Parse a hex string such as '{ 4D 5A [2-4] ( 90 | ?? ) ~00 }'.
    """
    body = text.strip()
    if body.startswith('{') and body.endswith('}'):
        body = body[1:-1]
    return _HexParser(body).parse()


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1]
    return value


def _build_string(entry: Dict[str, Any]) -> YaraString:
    name = entry['name']
    identifier = name[1:] if name.startswith('$') else name
    modifiers = list(entry.get('modifiers') or [])
    kind = StringKind(entry.get('type', 'text'))
    value = str(entry.get('value', ''))

    if kind == StringKind.HEX:
        return YaraString(identifier, kind, hex=parse_hex_string(value), modifiers=modifiers)
    if kind == StringKind.REGEXP:
        value = value.strip()
        regexp = parse_regexp(value) if value.startswith('/') else Regexp(value)
        return YaraString(identifier, kind, regexp=regexp, modifiers=modifiers)
    return YaraString(identifier, kind, text=_strip_quotes(value), modifiers=modifiers)


def _condition_text(entry: Dict[str, Any]) -> str:
    raw = entry.get('raw_condition')
    if raw:
        raw = raw.strip()
        if raw.startswith('condition'):
            raw = raw[len('condition'):].lstrip()
            if raw.startswith(':'):
                raw = raw[1:]
        return raw.strip()
    return ' '.join(entry.get('condition_terms', []))


def _build_rule(entry: Dict[str, Any]) -> YaraRule:
    name = entry.get('rule_name', '')
    meta = []
    for item in entry.get('metadata', []):
        for key, value in item.items():
            meta.append(Meta(key, value))

    try:
        condition = parse_yara_condition(_condition_text(entry))
    except GrammarError as e:
        raise ParseError(f"rule {name}: {e}") from e

    return YaraRule(
        name=name,
        condition=condition,
        tags=list(entry.get('tags', [])),
        scopes=list(entry.get('scopes', [])),
        imports=list(entry.get('imports', [])),
        meta=meta,
        strings=[_build_string(item) for item in entry.get('strings', [])],
    )


def parse_yara_rules(contents: Union[bytes, str]) -> List[YaraRule]:
    """
    Parse every rule of a YARA document.

    Args:
        contents: Raw YARA source

    Returns:
        List of YaraRule in document order

    Raises:
        ParseError: If plyara rejects the document or a rule is malformed
    """
    if isinstance(contents, bytes):
        contents = contents.decode('utf-8')

    parser = plyara.Plyara()
    try:
        parsed = parser.parse_string(contents)
    except Exception as e:
        raise ParseError(f"invalid YARA document: {e}") from e

    logging.debug(f"plyara returned {len(parsed)} rules")
    return [_build_rule(entry) for entry in parsed]


@dataclass
class YaraConfig:
    title: str = ""
    order: int = 0
    backends: List[str] = field(default_factory=list)
    field_mappings: Dict[str, List[str]] = field(default_factory=dict)
    logsource: str = ""
    placeholders: Dict[str, List[str]] = field(default_factory=dict)


def parse_yara_config(contents: Union[bytes, str]) -> YaraConfig:
    """
    Parse a YARA config document (title, order, backends, fieldmappings,
    logsource, placeholders).

    Raises:
        ParseError: If the document is not a valid config
    """
    reader = NodeReader(contents)
    try:
        config = YaraConfig()
        for key, value in reader.mapping(reader.root(), "config"):
            if key == 'title':
                config.title = reader.string(value)
            elif key == 'order':
                config.order = int(reader.value(value) or 0)
            elif key == 'backends':
                config.backends = reader.string_list(value)
            elif key == 'fieldmappings':
                for name, targets in reader.mapping(value, "fieldmappings"):
                    config.field_mappings[name] = reader.string_list(targets)
            elif key == 'logsource':
                config.logsource = reader.string(value)
            elif key == 'placeholders':
                for name, values in reader.mapping(value, "placeholders"):
                    config.placeholders[name] = reader.string_list(values)
        return config
    except yaml.YAMLError as e:
        raise ParseError(f"invalid config YAML: {e}") from e
    except (TypeError, ValueError) as e:
        raise ParseError(f"invalid config: {e}") from e
    finally:
        reader.dispose()
