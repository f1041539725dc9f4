"""Tests for config layering: field mappings and log-source resolution."""

import asyncio
import textwrap

import pytest

from detectql.core.field_mapper import (
    FieldMapper, calculate_field_mappings, config_placeholder_expander, resolve_logsource,
)
from detectql.core.sigma_config import parse_config
from detectql.core.sigma_parser import Logsource
from detectql.errors import PlaceholderExpansionError


BASE_CONFIG = parse_config(textwrap.dedent("""\
    title: base
    fieldmappings:
        User: user.name
    logsources:
        sysmon:
            product: windows
            service: sysmon
            index: idx1
            conditions:
                EventChannel: Sysmon
            rewrite:
                service: sysmon-op
    placeholders:
        admins:
            - root
"""))

OVERLAY_CONFIG = parse_config(textwrap.dedent("""\
    title: overlay
    fieldmappings:
        User: user.name
        Host: host.name
    logsources:
        operational:
            service: sysmon-op
            index: idx2
    defaultindex: fallback
    placeholders:
        admins:
            - administrator
"""))

DEFAULT_ONLY_CONFIG = parse_config("title: default\ndefaultindex: logs-*\n")


def test_field_mappings_accumulate_without_dedup():
    assert calculate_field_mappings([BASE_CONFIG, OVERLAY_CONFIG]) == {
        "User": ["user.name", "user.name"],
        "Host": ["host.name"],
    }


def test_field_mapper_falls_back_to_rule_field():
    mapper = FieldMapper.from_configs([BASE_CONFIG])
    assert mapper.get_fields("User") == ["user.name"]
    assert mapper.get_fields("CommandLine") == ["CommandLine"]
    assert mapper.get_first_field("CommandLine") == "CommandLine"


def test_rewrites_are_visible_to_later_configs():
    original = Logsource(product="windows", service="sysmon")
    resolved = resolve_logsource(original, [BASE_CONFIG, OVERLAY_CONFIG])

    assert resolved.logsource.service == "sysmon-op"
    assert resolved.logsource.product == "windows"
    assert resolved.indexes == ("idx1", "idx2")
    assert len(resolved.conditions) == 1
    assert original.service == "sysmon"


def test_config_order_matters():
    resolved = resolve_logsource(Logsource(product="windows", service="sysmon"),
                                 [OVERLAY_CONFIG, BASE_CONFIG])
    assert resolved.indexes == ("fallback", "idx1")


def test_default_index_when_nothing_matches():
    resolved = resolve_logsource(Logsource(product="linux"), [DEFAULT_ONLY_CONFIG])
    assert resolved.indexes == ("logs-*",)
    assert resolved.conditions == ()
    assert resolved.logsource == Logsource(product="linux")


def test_no_configs():
    resolved = resolve_logsource(Logsource(product="linux"), [])
    assert resolved.indexes == ()
    assert resolved.logsource.product == "linux"


def test_config_placeholders():
    expand = config_placeholder_expander([BASE_CONFIG, OVERLAY_CONFIG])
    assert asyncio.run(expand("admins")) == ["root", "administrator"]


def test_unknown_placeholder():
    expand = config_placeholder_expander([BASE_CONFIG])
    with pytest.raises(PlaceholderExpansionError):
        asyncio.run(expand("nobody"))
