"""Tests for the Sigma and YARA modifier registries."""

import pytest

from detectql.core.modifiers import (
    SIGMA_CASE_SENSITIVE_MODIFIERS, SIGMA_MODIFIERS, cidr_to_regex, encode_base64,
    split_all_modifier, split_modifier,
)
from detectql.core.yara_modifiers import YARA_MODIFIERS, prioritize_fullword
from detectql.errors import UnsupportedConstructError


def sigma(modifiers, value, field="CommandLine"):
    return SIGMA_MODIFIERS.get_comparator(modifiers)(field, value)


def sigma_cs(modifiers, value, field="CommandLine"):
    return SIGMA_CASE_SENSITIVE_MODIFIERS.get_comparator(modifiers)(field, value)


def yara(modifiers, value, field="a"):
    return YARA_MODIFIERS.get_comparator(modifiers)(field, value)


class TestSigmaComparators:

    def test_default_is_case_folded_equality(self):
        assert sigma([], "Evil") == "commandline = 'evil'"

    def test_case_sensitive_registry_keeps_value_case(self):
        assert sigma_cs([], "Evil") == "commandline = 'Evil'"
        assert sigma_cs(["contains"], "Evil") == "commandline like '%Evil%'"

    @pytest.mark.parametrize("modifier, expected", [
        ("contains", "commandline like '%evil%'"),
        ("startswith", "commandline like 'evil%'"),
        ("endswith", "commandline like '%evil'"),
        ("re", "commandline rlike 'Evil.*'"),
        ("gt", "commandline > 'Evil.*'"),
        ("gte", "commandline >= 'Evil.*'"),
        ("lt", "commandline < 'Evil.*'"),
        ("lte", "commandline <= 'Evil.*'"),
    ])
    def test_comparator_forms(self, modifier, expected):
        value = "Evil" if modifier in ("contains", "startswith", "endswith") else "Evil.*"
        assert sigma([modifier], value) == expected

    def test_null_compares_to_empty_string(self):
        assert sigma([], None) == "commandline = ''"

    @pytest.mark.parametrize("modifiers, expected", [
        (["contains"], "commandline like '%null%'"),
        (["startswith"], "commandline like 'null%'"),
        (["gt"], "commandline > 'null'"),
    ])
    def test_null_is_literal_text_under_modifiers(self, modifiers, expected):
        assert sigma(modifiers, None) == expected

    def test_null_is_encoded_as_text(self):
        assert sigma_cs(["base64"], None) == "commandline = 'bnVsbA=='"

    def test_single_quotes_are_escaped(self):
        assert sigma_cs([], "it's") == "commandline = 'it\\'s'"

    def test_cidr(self):
        assert sigma(["cidr"], "192.168.0.0/24", "SourceIp") == r"sourceip rlike '^192\.168\.0\.\d{1,3}$'"


class TestSigmaValueModifiers:

    def test_base64_then_contains(self):
        assert sigma_cs(["base64", "contains"], "evil") == "commandline like '%ZXZpbA==%'"

    def test_wide_then_base64(self):
        assert sigma_cs(["wide", "base64"], "ab") == "commandline = 'YQBiAA=='"

    def test_utf16_variants(self):
        assert sigma_cs(["utf16be", "base64"], "a") == "commandline = 'AGE='"
        assert sigma_cs(["utf16", "base64"], "a") == "commandline = '//5hAA=='"

    def test_comparator_must_be_last(self):
        with pytest.raises(UnsupportedConstructError, match="comparator modifier contains must be the last modifier"):
            SIGMA_MODIFIERS.get_comparator(["contains", "base64"])

    def test_unknown_modifier(self):
        with pytest.raises(UnsupportedConstructError, match="unknown modifier bogus"):
            SIGMA_MODIFIERS.get_comparator(["bogus"])

    def test_parameter_on_plain_modifier(self):
        with pytest.raises(UnsupportedConstructError):
            SIGMA_MODIFIERS.get_comparator(["contains(1)"])


class TestCidr:

    @pytest.mark.parametrize("network, expected", [
        ("10.1.0.0/16", r"^10\.1\.\d{1,3}\.\d{1,3}$"),
        ("172.16.0.0/20", r"^172\.16\.\d{1,3}\.\d{1,3}$"),
        ("8.8.8.8/32", r"^8\.8\.8\.8$"),
        ("0.0.0.0/0", r"^\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}$"),
    ])
    def test_octet_regex(self, network, expected):
        assert cidr_to_regex(network) == expected

    def test_ipv6_is_unsupported(self):
        with pytest.raises(UnsupportedConstructError):
            cidr_to_regex("2001:db8::/32")

    def test_invalid_network(self):
        with pytest.raises(UnsupportedConstructError):
            cidr_to_regex("not-an-ip")


def test_split_modifier():
    assert split_modifier("xor") == ("xor", None)
    assert split_modifier("xor(0x10)") == ("xor", "0x10")
    assert split_modifier('base64("abc")') == ("base64", "abc")


def test_split_all_modifier():
    assert split_all_modifier(["contains", "all"]) == (["contains"], True)
    assert split_all_modifier(["contains"]) == (["contains"], False)


def test_custom_base64_alphabet():
    standard = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
    assert encode_base64("ab") == "YWI="
    assert encode_base64("ab", standard) == "YWI"
    assert encode_base64("ab", standard[::-1]) == "np3"
    with pytest.raises(UnsupportedConstructError):
        encode_base64("ab", "short")


class TestYaraModifiers:

    def test_default_keeps_case(self):
        assert yara([], "Evil") == "a like '%Evil%'"

    def test_nocase_and_case_insensitive_comparators(self):
        assert yara(["nocase"], "Evil") == "a like '%evil%'"
        assert yara(["icontains"], "Evil") == "a like '%evil%'"
        assert yara(["istartswith"], "Evil") == "a like 'evil%'"
        assert yara(["endswith"], "Evil") == "a like '%Evil'"

    def test_equality_comparators(self):
        assert yara(["eq"], "Evil") == "a = 'Evil'"
        assert yara(["iequals"], "Evil") == "a = 'evil'"
        assert yara(["neq"], "Evil") == "a != 'Evil'"
        assert yara(["ge"], "5") == "a >= '5'"

    def test_fullword_acts_as_comparator(self):
        assert prioritize_fullword(["fullword", "nocase"]) == ["nocase", "fullword"]
        assert yara(prioritize_fullword(["fullword", "nocase"]), "Evil") == "a = 'evil'"

    def test_xor(self):
        assert yara(["xor"], "ab") == "a like '%`c%'"
        assert yara(["xor(0x20)"], "ab") == "a like '%AB%'"

    def test_xor_key_range_is_unsupported(self):
        comparator = YARA_MODIFIERS.get_comparator(["xor(1-5)"])
        with pytest.raises(UnsupportedConstructError):
            comparator("a", "ab")

    def test_base64(self):
        assert yara(["base64"], "evil") == "a like '%ZXZpbA==%'"
        assert yara(["base64wide"], "ab") == "a like '%YQBiAA==%'"
