"""
Condition Parser

Recursive-descent parser for Sigma conditions.

Grammar (lowest precedence first):
    Condition   := Disjunction ("|" Aggregation)?
    Disjunction := Conjunction ("or" Conjunction)*
    Conjunction := Term ("and" Term)*
    Term        := "not" Term | OneAllOf | Identifier | "(" Disjunction ")"
    Aggregation := func ("(" field? ")")? ("by" field)? op threshold
                 | "near" Disjunction
"""

from typing import Optional

from .condition_lexer import Token, TokenType, tokenize
from .sigma_ast import (
    AGGREGATION_FUNCTIONS, AggregationExpr, AllOfIdentifier, AllOfPattern,
    AllOfThem, And, Comparison, ComparisonOp, Condition, Near, Not,
    OneOfIdentifier, OneOfPattern, OneOfThem, Or, SearchExpr, SearchIdentifier,
)
from ..errors import GrammarError, UnsupportedConstructError


class ConditionParser:
    """
    Parses one condition string into a Condition.
    """

    def __init__(self, condition: str):
        self.condition = condition
        self.tokens = tokenize(condition)
        self.index = 0

    def parse(self, line: int = 0, column: int = 0) -> Condition:
        search = self._parse_disjunction()
        aggregation = None
        if self._accept(TokenType.PIPE):
            aggregation = self._parse_aggregation()
        self._expect(TokenType.EOF)
        return Condition(search, aggregation, line, column)

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _advance(self) -> Token:
        token = self.tokens[self.index]
        if token.type != TokenType.EOF:
            self.index += 1
        return token

    def _accept(self, token_type: TokenType) -> Optional[Token]:
        if self._peek().type == token_type:
            return self._advance()
        return None

    def _expect(self, token_type: TokenType) -> Token:
        token = self._peek()
        if token.type != token_type:
            self._fail(f"expected {token_type.value}", token)
        return self._advance()

    def _fail(self, message: str, token: Token):
        found = token.value or token.type.value
        raise GrammarError(f"{message}, found '{found}'", self.condition, token.position)

    def _parse_disjunction(self) -> SearchExpr:
        nodes = [self._parse_conjunction()]
        while self._accept(TokenType.OR):
            nodes.append(self._parse_conjunction())
        if len(nodes) == 1:
            return nodes[0]
        return Or(tuple(nodes))

    def _parse_conjunction(self) -> SearchExpr:
        nodes = [self._parse_term()]
        while self._accept(TokenType.AND):
            nodes.append(self._parse_term())
        if len(nodes) == 1:
            return nodes[0]
        return And(tuple(nodes))

    def _parse_term(self) -> SearchExpr:
        token = self._peek()
        if token.type == TokenType.NOT:
            self._advance()
            return Not(self._parse_term())
        if token.type == TokenType.LPAREN:
            self._advance()
            node = self._parse_disjunction()
            self._expect(TokenType.RPAREN)
            return node
        if token.type == TokenType.ONE_OF_THEM:
            self._advance()
            return OneOfThem()
        if token.type == TokenType.ALL_OF_THEM:
            self._advance()
            return AllOfThem()
        if token.type in (TokenType.ONE_OF, TokenType.ALL_OF):
            self._advance()
            return self._parse_one_all_of(token.type == TokenType.ONE_OF)
        if token.type == TokenType.IDENTIFIER:
            self._advance()
            return SearchIdentifier(token.value)
        self._fail("expected search identifier", token)

    def _parse_one_all_of(self, one: bool) -> SearchExpr:
        token = self._advance()
        if token.type == TokenType.IDENTIFIER:
            return OneOfIdentifier(token.value) if one else AllOfIdentifier(token.value)
        if token.type == TokenType.PATTERN:
            return OneOfPattern(token.value) if one else AllOfPattern(token.value)
        self._fail("expected search identifier or pattern", token)

    def _parse_aggregation(self) -> AggregationExpr:
        token = self._expect(TokenType.IDENTIFIER)
        name = token.value.lower()
        if name == 'near':
            return Near(self._parse_disjunction())

        func_class = AGGREGATION_FUNCTIONS.get(name)
        if func_class is None:
            self._fail("expected aggregation function", token)

        field = ""
        if self._accept(TokenType.LPAREN):
            if self._peek().type == TokenType.IDENTIFIER:
                field = self._advance().value
            self._expect(TokenType.RPAREN)

        grouped_by = ""
        if self._peek().type == TokenType.IDENTIFIER and self._peek().value.lower() == 'by':
            self._advance()
            grouped_by = self._expect(TokenType.IDENTIFIER).value

        func = func_class(field, grouped_by)
        op_token = self._accept(TokenType.COMPARISON)
        if op_token is None:
            if self._peek().type == TokenType.EOF:
                raise UnsupportedConstructError("non comparison aggregations not yet supported")
            self._fail("expected comparison operator", self._peek())
        threshold = self._expect(TokenType.NUMBER)
        return Comparison(func, ComparisonOp(op_token.value), float(threshold.value))


def parse_condition(condition: str, line: int = 0, column: int = 0) -> Condition:
    """
    Parse a Sigma condition string.

    Args:
        condition: Condition text, e.g. "selection and not filter"
        line: 0-based line of the condition in its source document
        column: 0-based column of the condition in its source document

    Returns:
        Parsed Condition

    Raises:
        GrammarError: If the condition is malformed
        UnsupportedConstructError: For aggregations without a comparison
    """
    return ConditionParser(condition).parse(line, column)
