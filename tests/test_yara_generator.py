"""Tests for compiling YARA rules into queries."""

import textwrap

import pytest

from detectql.core.yara_ast import (
    BytesSequence, HexTokens, Meta, Regexp, StringKind, YaraRule, YaraString,
)
from detectql.core.yara_condition import parse_yara_condition
from detectql.core.yara_generator import (
    ExpressionSerializer, YaraRuleEvaluator, k_of_n, serialize_hex, substitute_string_identifiers,
)
from detectql.core.yara_parser import YaraConfig, parse_hex_string, parse_yara_config, parse_yara_rules
from detectql.errors import EvaluationError, ParseError, PlaceholderExpansionError


def text_string(identifier, text, modifiers=None):
    return YaraString(identifier, StringKind.TEXT, text=text, modifiers=modifiers or [])


def make_rule(condition, strings, meta=None):
    return YaraRule("demo", parse_yara_condition(condition), meta=meta or [], strings=strings)


def serialize(condition, identifiers=("a", "b", "c")):
    return ExpressionSerializer(identifiers).serialize(parse_yara_condition(condition))


class TestKOfN:

    def test_two_of_three(self):
        assert k_of_n(["$a", "$b", "$c"], 2) == "(($a and $b) or ($a and $c) or ($b and $c))"

    def test_edges(self):
        assert k_of_n(["$a", "$b", "$c"], 1) == "($a or $b or $c)"
        assert k_of_n(["$a", "$b", "$c"], 3) == "($a and $b and $c)"

    @pytest.mark.parametrize("k", [0, 4])
    def test_out_of_range(self, k):
        with pytest.raises(EvaluationError):
            k_of_n(["$a", "$b", "$c"], k)


class TestSubstitution:

    def test_longest_name_first(self):
        fragments = {"a": "a like '%y%'", "a1": "a1 like '%x%'"}
        assert substitute_string_identifiers("$a1 and $a", fragments) == "a1 like '%x%' and a like '%y%'"

    def test_single_pass(self):
        fragments = {"a": "a = '$b'", "b": "b = 'z'"}
        assert substitute_string_identifiers("$a or $b", fragments) == "a = '$b' or b = 'z'"


class TestQuantifiers:

    def test_n_of_them(self):
        rule = make_rule("2 of them", [text_string("a", "evil"), text_string("b", "bad")])
        result = YaraRuleEvaluator(rule).alters()
        assert result.condition_result == "(a like '%evil%' and b like '%bad%')"
        assert result.query_result == (
            "sourcetype='*' eql select * from _source_ where (a like '%evil%' and b like '%bad%')")

    def test_keyword_quantifiers(self):
        assert serialize("any of them", ["a", "b"]) == "($a or $b)"
        assert serialize("all of them", ["a", "b"]) == "($a and $b)"
        assert serialize("none of them", ["a", "b"]) == "not ($a or $b)"

    def test_wildcard(self):
        assert serialize("any of ($a*)", ["a1", "a2", "b"]) == "($a1 or $a2)"

    def test_missing_identifier(self):
        with pytest.raises(EvaluationError, match=r"string identifier '\$c' not found in the list"):
            serialize("any of ($a, $c)", ["a", "b"])

    def test_percentage(self):
        assert serialize("50% of them") == "(($a and $b) or ($a and $c) or ($b and $c))"

    def test_too_many(self):
        with pytest.raises(EvaluationError):
            serialize("4 of them")


class TestPrecedence:

    def test_or_inside_and(self):
        assert serialize("($a or $b) and $c") == "( $a or $b ) and $c"

    def test_arithmetic_grouping(self):
        assert serialize("(1 + 2) * 3 == 9") == "(1 + 2) * 3 == 9"
        assert serialize("1 + 2 * 3") == "1 + 2 * 3"

    def test_right_nested_subtraction(self):
        assert serialize("1 - (2 - 3)") == "1 - (2 - 3)"
        assert serialize("1 - 2 - 3") == "1 - 2 - 3"

    def test_same_precedence_operators(self):
        assert serialize("1 + 2 - 3") == "1 + 2 - 3"
        assert serialize("1 + (2 + 3)") == "1 + (2 + 3)"

    @pytest.mark.parametrize("condition", [
        'pe.x == (pe.y contains "a")',
        'pe.y contains "a" == pe.x',
        'pe.x != (pe.y matches /ab+c/)',
        'pe.x == (pe.y istartswith "a")',
    ])
    def test_string_predicates_print_back(self, condition):
        assert serialize(condition) == condition
        assert parse_yara_condition(serialize(condition)) == parse_yara_condition(condition)

    def test_not_wraps_compound(self):
        assert serialize("not ($a and $b)") == "not ($a and $b)"
        assert serialize("not $a") == "not $a"


class TestRawForms:

    def test_for_of_with_body(self):
        assert serialize("for any of ($a, $b) : ($ at 0)") == "for any of ($a, $b) : ($ at 0)"

    def test_of_with_range(self):
        assert serialize("any of them in (0..100)") == "any of them in (0..100)"

    def test_for_in(self):
        assert serialize("for all i in (1..3) : (@a[i] > 0)") == "for all i in (1..3) : (@a[i] > 0)"

    def test_module_calls(self):
        assert serialize("math.entropy(0, filesize) >= 7") == "math.entropy(0, filesize) >= 7"
        assert serialize("uint16(0) == 23117") == "uint16(0) == 23117"


class TestHex:

    @pytest.mark.parametrize("text", [
        "{ 4D 5A [2-4] ( 90 | ?0 ) ~00 [3] }",
        "{ 9? ?? }",
        "{ 4D [-] 5A [5-] 00 }",
    ])
    def test_print_back(self, text):
        assert serialize_hex(parse_hex_string(text)) == text

    def test_inconsistent_lengths(self):
        with pytest.raises(EvaluationError):
            serialize_hex(HexTokens([BytesSequence([0x4D], [], [])]))

    def test_unknown_mask(self):
        with pytest.raises(EvaluationError):
            serialize_hex(HexTokens([BytesSequence([0x4D], [0x12], [False])]))

    def test_invalid_hex_string(self):
        with pytest.raises(ParseError):
            parse_hex_string("{ 4D 5 }")


class TestStrings:

    def test_hex_and_regex_strings(self):
        rule = make_rule("$h or $r", [
            YaraString("h", StringKind.HEX, hex=parse_hex_string("{ 4D 5A }")),
            YaraString("r", StringKind.REGEXP, regexp=Regexp("ab+c", case_insensitive=True)),
        ])
        result = YaraRuleEvaluator(rule).alters()
        assert result.strings_results == {"h": "h = { 4D 5A }", "r": "r = /ab+c/i"}
        assert result.condition_result == "h = { 4D 5A } or r = /ab+c/i"

    def test_modifiers(self):
        rule = make_rule("$a and $b", [
            text_string("a", "Evil", ["nocase"]),
            text_string("b", "Evil", ["fullword"]),
        ])
        result = YaraRuleEvaluator(rule).alters()
        assert result.strings_results == {"a": "a like '%evil%'", "b": "b = 'Evil'"}

    def test_config_mapping_and_logsource(self):
        config = YaraConfig(title="y", field_mappings={"a": ["data.a", "data.b"]}, logsource="sysmon")
        rule = make_rule("$a", [text_string("a", "evil")])
        result = YaraRuleEvaluator(rule, [config]).alters()
        assert result.query_result == (
            "sourcetype='sysmon' eql select * from _source_ where "
            "(data.a like '%evil%' or data.b like '%evil%')")

    def test_placeholder_values_from_configs(self):
        configs = [
            YaraConfig(title="base", placeholders={"bad": ["evil"]}),
            YaraConfig(title="extra", placeholders={"bad": ["worse"]}),
        ]
        rule = make_rule("$a", [text_string("a", "%bad%")])
        result = YaraRuleEvaluator(rule, configs).alters()
        assert result.strings_results == {"a": "(a like '%evil%' or a like '%worse%')"}

    def test_unknown_placeholder(self):
        rule = make_rule("$a", [text_string("a", "%bad%")])
        with pytest.raises(PlaceholderExpansionError):
            YaraRuleEvaluator(rule).alters()

    def test_empty_placeholder(self):
        config = YaraConfig(title="y", placeholders={"bad": []})
        rule = make_rule("$a", [text_string("a", "%bad%")])
        with pytest.raises(EvaluationError, match="has no values"):
            YaraRuleEvaluator(rule, [config]).alters()

    def test_meta_values(self):
        rule = make_rule("$a", [text_string("a", "x")], meta=[
            Meta("author", "someone"), Meta("enabled", True), Meta("version", 2)])
        result = YaraRuleEvaluator(rule).alters()
        assert result.meta_results == {"author": "someone", "enabled": "true", "version": "2"}


DEMO_RULE = textwrap.dedent("""\
    rule demo : tag1
    {
        meta:
            author = "someone"
        strings:
            $a = "evil"
            $h = { 4D 5A }
        condition:
            $a and $h
    }
""")


class TestParseYaraRules:

    def test_plyara_document(self):
        rules = parse_yara_rules(DEMO_RULE)
        assert len(rules) == 1
        rule = rules[0]
        assert rule.name == "demo"
        assert rule.tags == ["tag1"]
        assert rule.meta == [Meta("author", "someone")]
        assert [(s.identifier, s.kind) for s in rule.strings] == [
            ("a", StringKind.TEXT), ("h", StringKind.HEX)]
        assert rule.strings[0].text == "evil"

        result = YaraRuleEvaluator(rule).alters()
        assert result.query_result == (
            "sourcetype='*' eql select * from _source_ where a like '%evil%' and h = { 4D 5A }")

    def test_invalid_document(self):
        with pytest.raises(ParseError):
            parse_yara_rules("rule {")

    def test_config(self):
        config = parse_yara_config(textwrap.dedent("""\
            title: yara
            order: 2
            logsource: sysmon
            fieldmappings:
                a: data.a
            placeholders:
                bad:
                    - evil
        """))
        assert config.title == "yara"
        assert config.order == 2
        assert config.logsource == "sysmon"
        assert config.field_mappings == {"a": ["data.a"]}
        assert config.placeholders == {"bad": ["evil"]}
