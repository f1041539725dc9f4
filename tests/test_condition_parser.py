"""Tests for the Sigma condition lexer and parser."""

import pytest

from detectql.core.condition_lexer import TokenType, tokenize
from detectql.core.condition_parser import parse_condition
from detectql.core.sigma_ast import (
    AllOfIdentifier, AllOfPattern, AllOfThem, And, Comparison, ComparisonOp, Count,
    Max, Near, Not, OneOfPattern, OneOfThem, Or, SearchIdentifier,
)
from detectql.errors import GrammarError, UnsupportedConstructError


def _types(condition):
    return [token.type for token in tokenize(condition)]


class TestLexer:

    def test_keywords_are_case_insensitive(self):
        assert _types("ALL  OF them or 1 of sel*") == [
            TokenType.ALL_OF_THEM, TokenType.OR, TokenType.ONE_OF,
            TokenType.PATTERN, TokenType.EOF,
        ]

    def test_operator_prefixes_stay_identifiers(self):
        assert _types("note and order") == [
            TokenType.IDENTIFIER, TokenType.AND, TokenType.IDENTIFIER, TokenType.EOF,
        ]

    def test_aggregation_tokens(self):
        tokens = tokenize("sel | count(User) by Host >= 10")
        assert [t.type for t in tokens] == [
            TokenType.IDENTIFIER, TokenType.PIPE, TokenType.IDENTIFIER, TokenType.LPAREN,
            TokenType.IDENTIFIER, TokenType.RPAREN, TokenType.IDENTIFIER, TokenType.IDENTIFIER,
            TokenType.COMPARISON, TokenType.NUMBER, TokenType.EOF,
        ]
        assert tokens[8].value == ">="
        assert tokens[9].value == "10"

    def test_unknown_character_reports_offset(self):
        with pytest.raises(GrammarError) as excinfo:
            tokenize("sel # x")
        assert excinfo.value.position == 4
        assert excinfo.value.condition == "sel # x"


class TestParser:

    def test_and_binds_tighter_than_or(self):
        condition = parse_condition("a or b and not c")
        assert condition.search == Or((
            SearchIdentifier("a"),
            And((SearchIdentifier("b"), Not(SearchIdentifier("c")))),
        ))

    def test_single_children_collapse(self):
        assert parse_condition("((a))").search == SearchIdentifier("a")

    def test_one_and_all_of(self):
        condition = parse_condition("1 of selection* and all of filter and all of them or 1 of them")
        assert condition.search == Or((
            And((OneOfPattern("selection*"), AllOfIdentifier("filter"), AllOfThem())),
            OneOfThem(),
        ))

    def test_all_of_pattern(self):
        assert parse_condition("all of sel_*").search == AllOfPattern("sel_*")

    def test_count_aggregation(self):
        condition = parse_condition("selection | count(dst_ip) by src_ip > 10")
        assert condition.search == SearchIdentifier("selection")
        assert condition.aggregation == Comparison(
            Count("dst_ip", "src_ip"), ComparisonOp.GREATER_THAN, 10.0)

    def test_aggregation_words_are_case_insensitive(self):
        condition = parse_condition("sel | COUNT() BY host >= 3")
        assert condition.aggregation == Comparison(
            Count("", "host"), ComparisonOp.GREATER_THAN_EQUAL, 3.0)

    def test_near_aggregation(self):
        condition = parse_condition("sel | near other and third")
        assert condition.aggregation == Near(
            And((SearchIdentifier("other"), SearchIdentifier("third"))))

    def test_position_is_ignored_by_equality(self):
        located = parse_condition("a and b", line=3, column=4)
        assert located.line == 3
        assert located.column == 4
        assert located == parse_condition("a and b")

    @pytest.mark.parametrize("text", [
        "selection and not filter",
        "1 of selection* and not all of filter*",
        "(a or b) and c",
        "not (a and b) or c",
        "all of them",
        "sel | count(User) by Host > 5",
        "sel | count() = 1",
        "sel | near other and third",
    ])
    def test_printed_condition_parses_to_same_tree(self, text):
        condition = parse_condition(text)
        assert parse_condition(str(condition)) == condition

    def test_threshold_printing(self):
        assert str(Comparison(Max("Size"), ComparisonOp.LESS_THAN_EQUAL, 2.5)) == "max(Size) <= 2.5"
        assert str(Comparison(Count(), ComparisonOp.EQUAL, 1.0)) == "count() = 1"

    def test_missing_operand_reports_position(self):
        with pytest.raises(GrammarError) as excinfo:
            parse_condition("selection and")
        assert excinfo.value.position == 13

    def test_unbalanced_parenthesis(self):
        with pytest.raises(GrammarError):
            parse_condition("(a or b")

    def test_aggregation_without_comparison(self):
        with pytest.raises(UnsupportedConstructError, match="non comparison aggregations"):
            parse_condition("sel | count()")

    def test_aggregation_missing_group_field(self):
        with pytest.raises(GrammarError):
            parse_condition("sel | count() by > 5")

    def test_unknown_aggregation_function(self):
        with pytest.raises(GrammarError):
            parse_condition("sel | median(x) > 5")
