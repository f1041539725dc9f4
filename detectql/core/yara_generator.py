"""
YARA Query Generator

Compiles a YARA rule into a backend query. Each string becomes a comparison
over its mapped fields, the condition tree is printed back with precedence
aware parenthesization, plain "<quantifier> of <strings>" expressions are
expanded into boolean combinations, and string references are replaced by
their comparisons.

Example:
    rule demo { strings: $a = "evil" $b = "bad" condition: 2 of them }
    → sourcetype='*' eql select * from _source_ where (a like '%evil%' and b like '%bad%')
"""

import fnmatch
import itertools
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, List, Sequence

from .field_mapper import FieldMapper, collect_placeholders, is_placeholder, lookup_placeholder
from .modifiers import ModifierRegistry
from .yara_ast import (
    AndExpression, BinaryExpression, BoolValue, BytesSequence, DoubleValue, Expression,
    ForInExpression, ForKeyword, ForOfExpression, HexTokens, Identifier, IdentifierArguments,
    IdentifierIndex, IntegerEnumeration, IntegerFunction, Jump, Alternative, KeywordValue,
    NotExpression, NumberValue, OrExpression, PercentageExpression, PRECEDENCE_AND,
    PRECEDENCE_NOT, Range, Regexp, RuleEnumeration, StringCount, StringIdentifier,
    StringKind, StringLength, StringOffset, StringSet, Text, UnaryExpression, YaraRule,
    YaraString, get_precedence,
)
from .yara_modifiers import YARA_MODIFIERS, prioritize_fullword
from .yara_parser import YaraConfig
from ..errors import EvaluationError


@dataclass
class YaraEvaluationResult:
    meta_results: Dict[str, str] = field(default_factory=dict)
    strings_results: Dict[str, str] = field(default_factory=dict)
    condition_result: str = ""
    query_result: str = ""


def serialize_hex(hex_tokens: HexTokens) -> str:
    """
    Print hex tokens back to YARA syntax, e.g. '{ 4D 5A [2-4] ( 90 | ?0 ) }'.

    Raises:
        EvaluationError: On inconsistent byte/mask lengths or an unknown mask
    """
    return "{ " + _serialize_hex_tokens(hex_tokens) + "}"


def _serialize_hex_tokens(hex_tokens: HexTokens) -> str:
    parts = []
    for token in hex_tokens.tokens:
        if isinstance(token, BytesSequence):
            parts.append(_serialize_bytes(token))
        elif isinstance(token, Jump):
            parts.append(_serialize_jump(token))
        elif isinstance(token, Alternative):
            alternatives = [_serialize_hex_tokens(alternative) for alternative in token.alternatives]
            parts.append("( " + "| ".join(alternatives) + ") ")
        else:
            raise EvaluationError(f"unhandled hex token {type(token).__name__}")
    return "".join(parts)


def _serialize_bytes(sequence: BytesSequence) -> str:
    if not len(sequence.value) == len(sequence.mask) == len(sequence.nots):
        raise EvaluationError(
            f"hex byte sequence has {len(sequence.value)} values, {len(sequence.mask)} masks "
            f"and {len(sequence.nots)} negations")
    parts = []
    for value, mask, negated in zip(sequence.value, sequence.mask, sequence.nots):
        prefix = "~" if negated else ""
        if mask == 0x00:
            parts.append(f"{prefix}?? ")
        elif mask == 0x0F:
            parts.append(f"{prefix}?{value & 0x0F:X} ")
        elif mask == 0xF0:
            parts.append(f"{prefix}{(value & 0xF0) >> 4:X}? ")
        elif mask == 0xFF:
            parts.append(f"{prefix}{value:02X} ")
        else:
            raise EvaluationError(f"unsupported hex byte mask {mask:#04x}")
    return "".join(parts)


def _serialize_jump(jump: Jump) -> str:
    if jump.start is not None and jump.start == jump.end:
        return f"[{jump.start}] "
    start = "" if jump.start is None else str(jump.start)
    end = "" if jump.end is None else str(jump.end)
    return f"[{start}-{end}] "


def serialize_regexp(regexp: Regexp) -> str:
    flags = ("i" if regexp.case_insensitive else "") + ("s" if regexp.dot_all else "")
    return f"/{regexp.text}/{flags}"


def combine_or(names: Sequence[str]) -> str:
    return "(" + " or ".join(names) + ")"


def combine_and(names: Sequence[str]) -> str:
    return "(" + " and ".join(names) + ")"


def k_of_n(names: Sequence[str], k: int) -> str:
    """
    Expand "k of names" into a boolean expression.

    k=1 gives an OR over all names, k=n an AND; otherwise every k-sized
    combination (in index order) becomes an AND, and those are ORed.

    Raises:
        EvaluationError: If k is not between 1 and len(names)
    """
    n = len(names)
    if k < 1:
        raise EvaluationError(f"invalid string count {k} in 'of' expression")
    if k > n:
        raise EvaluationError(f"cannot match {k} of {n} strings")
    if k == 1:
        return combine_or(names)
    if k == n:
        return combine_and(names)
    combinations = itertools.combinations(range(n), k)
    return combine_or([combine_and([names[i] for i in combination]) for combination in combinations])


def substitute_string_identifiers(condition: str, fragments: Dict[str, str]) -> str:
    """
    Replace $name references with their fragments, longest name first.
    """
    names = sorted((name for name in fragments if name), key=len, reverse=True)
    if not names:
        return condition
    pattern = re.compile(r"\$(" + "|".join(re.escape(name) for name in names) + r")(?![A-Za-z0-9_])")
    return pattern.sub(lambda match: fragments[match.group(1)], condition)


class ExpressionSerializer:
    """
    Prints a YARA expression tree, expanding plain "of" quantifiers over the
    rule's declared strings.
    """

    def __init__(self, string_identifiers: Sequence[str]):
        self.string_identifiers = ["$" + identifier for identifier in string_identifiers]

    def serialize(self, node: Expression) -> str:
        if isinstance(node, BoolValue):
            return "true" if node.value else "false"
        if isinstance(node, NumberValue):
            return str(node.value)
        if isinstance(node, DoubleValue):
            return f"{node.value:f}"
        if isinstance(node, Text):
            return f'"{node.value}"'
        if isinstance(node, Regexp):
            return serialize_regexp(node)
        if isinstance(node, KeywordValue):
            return node.keyword.value
        if isinstance(node, StringIdentifier):
            return "$" + node.name
        if isinstance(node, StringCount):
            text = "#" + node.name
            if node.range is not None:
                text += " in " + self.serialize(node.range)
            return text
        if isinstance(node, (StringOffset, StringLength)):
            text = ("@" if isinstance(node, StringOffset) else "!") + node.name
            if node.index is not None:
                text += "[" + self.serialize(node.index) + "]"
            return text
        if isinstance(node, OrExpression):
            return self._serialize_terms(node.terms, " or ")
        if isinstance(node, AndExpression):
            return self._serialize_terms(node.terms, " and ")
        if isinstance(node, NotExpression):
            return "not " + self._wrap_below(node.expression, PRECEDENCE_NOT)
        if isinstance(node, UnaryExpression):
            return node.operator.value + self._wrap_below(node.expression, PRECEDENCE_NOT)
        if isinstance(node, BinaryExpression):
            return self._serialize_binary(node)
        if isinstance(node, Range):
            return f"({self.serialize(node.start)}..{self.serialize(node.end)})"
        if isinstance(node, Identifier):
            return self._serialize_identifier(node)
        if isinstance(node, IntegerFunction):
            return f"{node.function}({self.serialize(node.argument)})"
        if isinstance(node, PercentageExpression):
            return self.serialize(node.expression) + "%"
        if isinstance(node, IntegerEnumeration):
            return "(" + ", ".join(self.serialize(value) for value in node.values) + ")"
        if isinstance(node, ForInExpression):
            return (f"for {self._serialize_quantifier(node.quantifier)} {','.join(node.identifiers)} "
                    f"in {self.serialize(node.iterator)} : ({self.serialize(node.expression)})")
        if isinstance(node, ForOfExpression):
            return self._serialize_for_of(node)
        raise EvaluationError(f"unhandled expression type {type(node).__name__}")

    def _wrap_below(self, node: Expression, precedence: int) -> str:
        text = self.serialize(node)
        if get_precedence(node) < precedence:
            return f"({text})"
        return text

    def _serialize_terms(self, terms: List[Expression], joiner: str) -> str:
        parts = []
        for term in terms:
            text = self.serialize(term)
            if get_precedence(term) < PRECEDENCE_AND:
                text = f"( {text} )"
            parts.append(text)
        return joiner.join(parts)

    def _serialize_binary(self, node: BinaryExpression) -> str:
        """
        Binary operators parse left-associatively, so a right operand of the
        same precedence only comes from explicit parentheses. It is wrapped
        again to keep the printed expression parsing into the same tree, e.g.
        a - (b - c) and a + (b + c).
        """
        precedence = get_precedence(node)
        left = self._wrap_below(node.left, precedence)
        right = self.serialize(node.right)
        right_precedence = get_precedence(node.right)
        if right_precedence < precedence or (
                right_precedence == precedence and isinstance(node.right, BinaryExpression)):
            right = f"({right})"
        return f"{left} {node.operator.value} {right}"

    def _serialize_identifier(self, node: Identifier) -> str:
        parts = []
        for item in node.items:
            if isinstance(item, IdentifierIndex):
                parts.append("[" + self.serialize(item.index) + "]")
            elif isinstance(item, IdentifierArguments):
                parts.append("(" + ", ".join(self.serialize(arg) for arg in item.arguments) + ")")
            elif parts:
                parts.append("." + item)
            else:
                parts.append(item)
        return "".join(parts)

    def _serialize_quantifier(self, quantifier) -> str:
        if isinstance(quantifier, ForKeyword):
            return quantifier.value
        return self.serialize(quantifier)

    def _expand_wildcard(self, name: str) -> List[str]:
        return fnmatch.filter(self.string_identifiers, "$" + name + "*")

    def _serialize_string_set(self, string_set: StringSet) -> str:
        if string_set.items is None:
            return "them"
        items = []
        for item in string_set.items:
            if item.wildcard:
                items.extend(self._expand_wildcard(item.name) or ["$" + item.name + "*"])
            else:
                items.append("$" + item.name)
        return "(" + ", ".join(items) + ")"

    def _serialize_rule_enumeration(self, enumeration: RuleEnumeration) -> str:
        items = [item.name + ("*" if item.wildcard else "") for item in enumeration.items]
        return "(" + ", ".join(items) + ")"

    def _string_set_names(self, string_set: StringSet) -> List[str]:
        if string_set.items is None:
            names = list(self.string_identifiers)
        else:
            names = []
            for item in string_set.items:
                if item.wildcard:
                    matches = self._expand_wildcard(item.name)
                    if not matches:
                        raise EvaluationError(f"string identifier '${item.name}*' not found in the list")
                    names.extend(matches)
                elif "$" + item.name in self.string_identifiers:
                    names.append("$" + item.name)
                else:
                    raise EvaluationError(f"string identifier '${item.name}' not found in the list")
        names = list(dict.fromkeys(names))
        if not names:
            raise EvaluationError("rule has no strings to quantify over")
        return names

    def _serialize_for_of(self, node: ForOfExpression) -> str:
        expandable = (node.string_set is not None and not node.with_for and node.range is None
                      and node.at is None and node.expression is None)
        if expandable:
            expanded = self._expand_for_of(node)
            if expanded is not None:
                return expanded

        text = "for " if node.with_for else ""
        text += self._serialize_quantifier(node.quantifier) + " of "
        if node.string_set is not None:
            text += self._serialize_string_set(node.string_set)
        else:
            text += self._serialize_rule_enumeration(node.rule_enumeration)
        if node.range is not None:
            text += " in " + self.serialize(node.range)
        if node.at is not None:
            text += " at " + self.serialize(node.at)
        if node.expression is not None:
            text += " : (" + self.serialize(node.expression) + ")"
        return text

    def _expand_for_of(self, node: ForOfExpression):
        quantifier = node.quantifier
        if isinstance(quantifier, ForKeyword):
            names = self._string_set_names(node.string_set)
            if quantifier == ForKeyword.ANY:
                return combine_or(names)
            if quantifier == ForKeyword.ALL:
                return combine_and(names)
            return "not " + combine_or(names)
        if isinstance(quantifier, NumberValue):
            names = self._string_set_names(node.string_set)
            return k_of_n(names, quantifier.value)
        if isinstance(quantifier, PercentageExpression) and isinstance(quantifier.expression, NumberValue):
            names = self._string_set_names(node.string_set)
            return k_of_n(names, math.ceil(len(names) * quantifier.expression.value / 100))
        return None


class YaraRuleEvaluator:
    """
    Compiles one YARA rule against an ordered list of YARA configs.
    """

    def __init__(self, rule: YaraRule, configs: Sequence[YaraConfig] = (),
                 modifiers: ModifierRegistry = YARA_MODIFIERS):
        self.rule = rule
        self.configs = list(configs)
        self.modifiers = modifiers
        self.field_mapper = FieldMapper.from_configs(self.configs)
        self.placeholders = collect_placeholders(self.configs)
        self.logsource = "*"
        for config in self.configs:
            if config.logsource:
                self.logsource = config.logsource

    def alters(self) -> YaraEvaluationResult:
        """
        Compile the rule.

        Returns:
            YaraEvaluationResult with meta, string fragments, condition and query

        Raises:
            EvaluationError: On unrenderable nodes or impossible quantifiers
            UnsupportedConstructError: On unknown string modifiers
            PlaceholderExpansionError: On a %placeholder% string no config defines
        """
        result = YaraEvaluationResult()
        for meta in self.rule.meta:
            value = meta.value
            result.meta_results[meta.key] = ("true" if value else "false") if isinstance(value, bool) else str(value)

        for string in self.rule.strings:
            result.strings_results[string.identifier] = self.evaluate_string(string)

        serializer = ExpressionSerializer([string.identifier for string in self.rule.strings])
        condition = serializer.serialize(self.rule.condition)
        logging.debug(f"YARA rule {self.rule.name} condition: {condition}")

        result.condition_result = substitute_string_identifiers(condition, result.strings_results)
        result.query_result = (f"sourcetype='{self.logsource}' eql select * from _source_ where "
                               f"{result.condition_result}")
        return result

    def evaluate_string(self, string: YaraString) -> str:
        """
        Render one string definition as a comparison over its mapped fields.

        A text string written as %name% stands for every value the configs
        list under that placeholder.
        """
        fields = self.field_mapper.get_fields(string.identifier)
        if string.kind == StringKind.TEXT:
            comparator = self.modifiers.get_comparator(prioritize_fullword(string.modifiers))
            values = [string.text]
            if is_placeholder(string.text):
                values = lookup_placeholder(self.placeholders, string.text[1:-1])
            comparisons = [comparator(target, value) for target in fields for value in values]
            if not comparisons:
                raise EvaluationError(f"string ${string.identifier} has no values")
        elif string.kind == StringKind.HEX:
            pattern = serialize_hex(string.hex)
            comparisons = [f"{target.lower()} = {pattern}" for target in fields]
        elif string.kind == StringKind.REGEXP:
            pattern = serialize_regexp(string.regexp)
            comparisons = [f"{target.lower()} = {pattern}" for target in fields]
        else:
            raise EvaluationError(f"unhandled string kind {string.kind}")

        if len(comparisons) > 1:
            return "(" + " or ".join(comparisons) + ")"
        return comparisons[0]
