"""Tests for the YARA condition parser."""

import pytest

from detectql.core.yara_ast import (
    AndExpression, BinaryExpression, BinaryOperator, ForInExpression, ForKeyword,
    ForOfExpression, Identifier, IdentifierIndex, IntegerFunction, Keyword, KeywordValue,
    NotExpression, NumberValue, OrExpression, PercentageExpression, Range, StringCount,
    StringEnumerationItem, StringIdentifier, StringOffset, StringSet, Text,
)
from detectql.core.yara_condition import parse_number, parse_regexp, parse_yara_condition
from detectql.errors import GrammarError


def test_boolean_structure():
    assert parse_yara_condition("$a or $b and not $c") == OrExpression([
        StringIdentifier("a"),
        AndExpression([StringIdentifier("b"), NotExpression(StringIdentifier("c"))]),
    ])


def test_parentheses_group():
    assert parse_yara_condition("($a or $b) and $c") == AndExpression([
        OrExpression([StringIdentifier("a"), StringIdentifier("b")]),
        StringIdentifier("c"),
    ])


def test_count_of_them():
    assert parse_yara_condition("2 of them") == ForOfExpression(NumberValue(2), StringSet())


def test_percentage_of_wildcard():
    assert parse_yara_condition("50% of ($a*)") == ForOfExpression(
        PercentageExpression(NumberValue(50)),
        StringSet([StringEnumerationItem("a", wildcard=True)]),
    )


def test_keyword_quantifier_with_range():
    assert parse_yara_condition("any of ($a, $b) in (0..100)") == ForOfExpression(
        ForKeyword.ANY,
        StringSet([StringEnumerationItem("a"), StringEnumerationItem("b")]),
        range=Range(NumberValue(0), NumberValue(100)),
    )


def test_filesize_units():
    assert parse_yara_condition("filesize < 100KB") == BinaryExpression(
        BinaryOperator.LT, KeywordValue(Keyword.FILESIZE), NumberValue(102400))


def test_arithmetic_precedence():
    assert parse_yara_condition("1 + 2 * 3") == BinaryExpression(
        BinaryOperator.PLUS, NumberValue(1),
        BinaryExpression(BinaryOperator.TIMES, NumberValue(2), NumberValue(3)),
    )


def test_subtraction_is_left_associative():
    assert parse_yara_condition("1 - 2 - 3") == BinaryExpression(
        BinaryOperator.MINUS,
        BinaryExpression(BinaryOperator.MINUS, NumberValue(1), NumberValue(2)),
        NumberValue(3),
    )


def test_string_at_offset():
    assert parse_yara_condition("$a at 0x100") == BinaryExpression(
        BinaryOperator.AT, StringIdentifier("a"), NumberValue(256))


def test_string_count_in_range():
    assert parse_yara_condition("#a in (0..100) > 2") == BinaryExpression(
        BinaryOperator.GT,
        StringCount("a", Range(NumberValue(0), NumberValue(100))),
        NumberValue(2),
    )


def test_module_identifier():
    assert parse_yara_condition('pe.sections[0].name == ".text"') == BinaryExpression(
        BinaryOperator.EQ,
        Identifier(["pe", "sections", IdentifierIndex(NumberValue(0)), "name"]),
        Text(".text"),
    )


def test_for_in_loop():
    assert parse_yara_condition("for all i in (1..3) : (@a[i] > 0)") == ForInExpression(
        ForKeyword.ALL,
        ["i"],
        Range(NumberValue(1), NumberValue(3)),
        BinaryExpression(BinaryOperator.GT, StringOffset("a", Identifier(["i"])), NumberValue(0)),
    )


def test_for_of_with_body():
    node = parse_yara_condition("for any of ($a, $b) : ($ at 0)")
    assert node.with_for
    assert node.expression == BinaryExpression(BinaryOperator.AT, StringIdentifier(""), NumberValue(0))


def test_integer_function():
    assert parse_yara_condition("uint16(0) == 0x5A4D") == BinaryExpression(
        BinaryOperator.EQ, IntegerFunction("uint16", NumberValue(0)), NumberValue(23117))


def test_comments_are_ignored():
    assert parse_yara_condition("$a /* first */ and // second\n $b") == AndExpression(
        [StringIdentifier("a"), StringIdentifier("b")])


@pytest.mark.parametrize("text, expected", [
    ("10", 10),
    ("0x10", 16),
    ("0o17", 15),
    ("2KB", 2048),
    ("1MB", 1048576),
])
def test_parse_number(text, expected):
    assert parse_number(text) == expected


def test_parse_regexp_flags():
    regexp = parse_regexp("/ab+c/is")
    assert regexp.text == "ab+c"
    assert regexp.case_insensitive
    assert regexp.dot_all


@pytest.mark.parametrize("text", [
    "$a and",
    "($a or $b",
    "$a #b",
    "any of",
    "for all i in (1..3) : @a[i]",
])
def test_grammar_errors(text):
    with pytest.raises(GrammarError):
        parse_yara_condition(text)


def test_unexpected_character_position():
    with pytest.raises(GrammarError) as excinfo:
        parse_yara_condition("$a ? $b")
    assert excinfo.value.position == 3
