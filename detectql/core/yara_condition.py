"""
YARA Condition Parser

Parses the text of a YARA rule condition into the expression tree of
yara_ast. Precedence follows YARA: or < and < not < relational/string
operators < bitwise < shifts < additive < multiplicative < unary.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from .yara_ast import (
    AndExpression, BinaryExpression, BinaryOperator, BoolValue, DoubleValue, Expression,
    ForInExpression, ForKeyword, ForOfExpression, Identifier, IdentifierArguments,
    IdentifierIndex, IntegerEnumeration, IntegerFunction, Iterator, Keyword, KeywordValue,
    NotExpression, NumberValue, OPERATOR_PRECEDENCE, OrExpression, PercentageExpression,
    Quantifier, Range, Regexp, RuleEnumeration, RuleEnumerationItem, StringCount,
    StringEnumerationItem, StringIdentifier, StringLength, StringOffset, StringSet, Text,
    UnaryExpression, UnaryOperator,
)
from ..errors import GrammarError


@dataclass(frozen=True)
class YaraToken:
    kind: str
    value: str
    position: int


_TOKEN_RE = re.compile(r"""
    (?P<space>\s+)
  | (?P<comment>//[^\n]*|/\*.*?\*/)
  | (?P<text>"(?:[^"\\\n]|\\.)*")
  | (?P<regex>/(?:[^/\\\n]|\\.)+/[is]*)
  | (?P<string_id>\$[A-Za-z0-9_]*\*?)
  | (?P<string_count>\#[A-Za-z0-9_]*)
  | (?P<string_offset>@[A-Za-z0-9_]*)
  | (?P<string_length>!(?!=)[A-Za-z0-9_]*)
  | (?P<double>\d+\.\d+)
  | (?P<number>0x[0-9A-Fa-f]+|0o[0-7]+|\d+(?:KB|MB)?)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>\.\.|==|!=|<=|>=|<<|>>|[-<>+*\\%&|^~()\[\],:.])
""", re.VERBOSE | re.DOTALL)

_INTEGER_FUNCTIONS = {
    f"{sign}int{bits}{endian}"
    for sign in ('', 'u') for bits in (8, 16, 32) for endian in ('', 'be')
}

_WORD_OPERATORS = {
    'matches', 'contains', 'icontains', 'iequals',
    'startswith', 'istartswith', 'endswith', 'iendswith',
}

_SYMBOL_OPERATORS = {
    '|', '^', '&', '==', '!=', '<', '<=', '>', '>=', '<<', '>>', '+', '-', '*', '\\', '%',
}

# "at" and "in" only follow a string identifier and are parsed with it.
_PARSE_PRECEDENCE = {
    operator: OPERATOR_PRECEDENCE[operator]
    for operator in BinaryOperator
    if operator not in (BinaryOperator.AT, BinaryOperator.IN)
}

_FOR_KEYWORDS = {keyword.value: keyword for keyword in ForKeyword}


def tokenize_condition(text: str) -> List[YaraToken]:
    tokens = []
    position = 0
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match:
            raise GrammarError(f"unexpected character '{text[position]}'", text, position)
        if match.lastgroup not in ('space', 'comment'):
            tokens.append(YaraToken(match.lastgroup, match.group(), position))
        position = match.end()
    tokens.append(YaraToken('eof', '', len(text)))
    return tokens


def parse_number(text: str) -> int:
    if text.startswith('0x'):
        return int(text, 16)
    if text.startswith('0o'):
        return int(text[2:], 8)
    if text.endswith('KB'):
        return int(text[:-2]) * 1024
    if text.endswith('MB'):
        return int(text[:-2]) * 1024 * 1024
    return int(text)


def parse_regexp(text: str) -> Regexp:
    """
    Split '/abc/is' into its pattern and flags.
    """
    end = text.rfind('/')
    if not text.startswith('/') or end <= 0:
        raise GrammarError(f"invalid regular expression {text}")
    flags = text[end + 1:]
    return Regexp(text[1:end], case_insensitive='i' in flags, dot_all='s' in flags)


class YaraConditionParser:
    """
    Recursive-descent parser over condition tokens.
    """

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize_condition(text)
        self.index = 0

    def parse(self) -> Expression:
        expression = self._parse_expression()
        self._expect('eof')
        return expression

    def _peek(self, offset: int = 0) -> YaraToken:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def _advance(self) -> YaraToken:
        token = self._peek()
        if token.kind != 'eof':
            self.index += 1
        return token

    def _is(self, value: str, offset: int = 0) -> bool:
        token = self._peek(offset)
        return token.kind in ('op', 'ident') and token.value == value

    def _accept(self, value: str) -> bool:
        if self._is(value):
            self._advance()
            return True
        return False

    def _expect(self, kind: str, value: Optional[str] = None) -> YaraToken:
        token = self._peek()
        if token.kind != kind or (value is not None and token.value != value):
            self._fail(f"expected {value or kind}", token)
        return self._advance()

    def _expect_value(self, value: str) -> YaraToken:
        token = self._peek()
        if not self._is(value):
            self._fail(f"expected '{value}'", token)
        return self._advance()

    def _fail(self, message: str, token: YaraToken):
        found = token.value or 'end of condition'
        raise GrammarError(f"{message}, found '{found}'", self.text, token.position)

    def _parse_expression(self) -> Expression:
        terms = [self._parse_and()]
        while self._accept('or'):
            terms.append(self._parse_and())
        return terms[0] if len(terms) == 1 else OrExpression(terms)

    def _parse_and(self) -> Expression:
        terms = [self._parse_not()]
        while self._accept('and'):
            terms.append(self._parse_not())
        return terms[0] if len(terms) == 1 else AndExpression(terms)

    def _parse_not(self) -> Expression:
        if self._accept('not'):
            return NotExpression(self._parse_not())
        if self._accept('defined'):
            return UnaryExpression(UnaryOperator.DEFINED, self._parse_not())
        return self._parse_binary(1)

    def _binary_operator(self) -> Optional[BinaryOperator]:
        token = self._peek()
        if token.kind == 'ident' and token.value in _WORD_OPERATORS:
            return BinaryOperator(token.value)
        if token.kind == 'op' and token.value in _SYMBOL_OPERATORS:
            if token.value == '%' and self._is('of', 1):
                return None
            return BinaryOperator(token.value)
        return None

    def _parse_binary(self, min_precedence: int) -> Expression:
        left = self._parse_unary()
        while True:
            operator = self._binary_operator()
            if operator is None or _PARSE_PRECEDENCE[operator] < min_precedence:
                return left
            self._advance()
            right = self._parse_binary(_PARSE_PRECEDENCE[operator] + 1)
            left = BinaryExpression(operator, left, right)

    def _parse_unary(self) -> Expression:
        if self._accept('-'):
            return UnaryExpression(UnaryOperator.UNARY_MINUS, self._parse_unary())
        if self._accept('~'):
            return UnaryExpression(UnaryOperator.BITWISE_NOT, self._parse_unary())
        return self._parse_primary()

    def _parse_primary(self) -> Expression:
        token = self._peek()

        if token.kind == 'op' and token.value == '(':
            self._advance()
            expression = self._parse_expression()
            self._expect_value(')')
            return expression

        if token.kind in ('number', 'double'):
            self._advance()
            if token.kind == 'double':
                return DoubleValue(float(token.value))
            number = NumberValue(parse_number(token.value))
            if self._is('of'):
                return self._parse_of(number)
            if self._is('%') and self._is('of', 1):
                self._advance()
                return self._parse_of(PercentageExpression(number))
            return number

        if token.kind == 'text':
            self._advance()
            return Text(token.value[1:-1])

        if token.kind == 'regex':
            self._advance()
            return parse_regexp(token.value)

        if token.kind == 'string_id':
            self._advance()
            node = StringIdentifier(token.value[1:])
            if self._accept('at'):
                return BinaryExpression(BinaryOperator.AT, node, self._parse_unary())
            if self._accept('in'):
                return BinaryExpression(BinaryOperator.IN, node, self._parse_range())
            return node

        if token.kind == 'string_count':
            self._advance()
            count = StringCount(token.value[1:])
            if self._accept('in'):
                count.range = self._parse_range()
            return count

        if token.kind in ('string_offset', 'string_length'):
            self._advance()
            index = None
            if self._accept('['):
                index = self._parse_expression()
                self._expect_value(']')
            if token.kind == 'string_offset':
                return StringOffset(token.value[1:], index)
            return StringLength(token.value[1:], index)

        if token.kind == 'ident':
            word = token.value
            if word in ('true', 'false'):
                self._advance()
                return BoolValue(word == 'true')
            if word in ('filesize', 'entrypoint'):
                self._advance()
                return KeywordValue(Keyword(word))
            if word in _FOR_KEYWORDS:
                self._advance()
                return self._parse_of(_FOR_KEYWORDS[word])
            if word == 'for':
                self._advance()
                return self._parse_for()
            if word in _INTEGER_FUNCTIONS and self._is('(', 1):
                self._advance()
                self._advance()
                argument = self._parse_expression()
                self._expect_value(')')
                return IntegerFunction(word, argument)
            return self._parse_identifier()

        self._fail("expected expression", token)

    def _parse_identifier(self) -> Identifier:
        items = [self._expect('ident').value]
        while True:
            if self._accept('.'):
                items.append(self._expect('ident').value)
            elif self._accept('['):
                items.append(IdentifierIndex(self._parse_expression()))
                self._expect_value(']')
            elif self._accept('('):
                arguments = []
                if not self._accept(')'):
                    arguments.append(self._parse_expression())
                    while self._accept(','):
                        arguments.append(self._parse_expression())
                    self._expect_value(')')
                items.append(IdentifierArguments(arguments))
            else:
                return Identifier(items)

    def _parse_range(self) -> Range:
        self._expect_value('(')
        start = self._parse_binary(1)
        self._expect_value('..')
        end = self._parse_binary(1)
        self._expect_value(')')
        return Range(start, end)

    def _parse_quantifier(self) -> Quantifier:
        token = self._peek()
        if token.kind == 'ident' and token.value in _FOR_KEYWORDS:
            self._advance()
            return _FOR_KEYWORDS[token.value]
        if token.kind == 'number':
            self._advance()
            number = NumberValue(parse_number(token.value))
            if self._is('%') and self._is('of', 1):
                self._advance()
                return PercentageExpression(number)
            return number
        return self._parse_unary()

    def _parse_of(self, quantifier: Quantifier) -> ForOfExpression:
        self._expect_value('of')
        node = ForOfExpression(quantifier)
        if self._accept('them'):
            node.string_set = StringSet()
        else:
            self._expect_value('(')
            if self._peek().kind == 'string_id':
                node.string_set = StringSet(self._parse_string_items())
            else:
                node.rule_enumeration = RuleEnumeration(self._parse_rule_items())
            self._expect_value(')')

        if self._accept('in'):
            node.range = self._parse_range()
        elif self._accept('at'):
            node.at = self._parse_unary()
        return node

    def _parse_string_items(self) -> List[StringEnumerationItem]:
        items = []
        while True:
            value = self._expect('string_id').value[1:]
            if value.endswith('*'):
                items.append(StringEnumerationItem(value[:-1], wildcard=True))
            else:
                items.append(StringEnumerationItem(value))
            if not self._accept(','):
                return items

    def _parse_rule_items(self) -> List[RuleEnumerationItem]:
        items = []
        while True:
            name = self._expect('ident').value
            wildcard = self._accept('*')
            items.append(RuleEnumerationItem(name, wildcard))
            if not self._accept(','):
                return items

    def _parse_for(self) -> Expression:
        quantifier = self._parse_quantifier()
        if self._is('of'):
            node = self._parse_of(quantifier)
            node.with_for = True
            node.expression = self._parse_body()
            return node

        identifiers = [self._expect('ident').value]
        while self._accept(','):
            identifiers.append(self._expect('ident').value)
        self._expect_value('in')
        iterator = self._parse_iterator()
        return ForInExpression(quantifier, identifiers, iterator, self._parse_body())

    def _parse_body(self) -> Expression:
        self._expect_value(':')
        self._expect_value('(')
        expression = self._parse_expression()
        self._expect_value(')')
        return expression

    def _parse_iterator(self) -> Iterator:
        if not self._accept('('):
            return self._parse_identifier()
        first = self._parse_binary(1)
        if self._accept('..'):
            end = self._parse_binary(1)
            self._expect_value(')')
            return Range(first, end)
        values = [first]
        while self._accept(','):
            values.append(self._parse_binary(1))
        self._expect_value(')')
        return IntegerEnumeration(values)


def parse_yara_condition(text: str) -> Expression:
    """
    Parse a YARA condition.

    Args:
        text: Condition text without the "condition:" label

    Returns:
        Root expression

    Raises:
        GrammarError: If the condition is malformed
    """
    return YaraConditionParser(text).parse()
