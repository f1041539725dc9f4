"""
Core components for detection rule compilation.

Contains the rule/config parsers, the condition language, the modifier
pipeline and the two query evaluators (Sigma and YARA).
"""

from .sigma_parser import Rule, parse_rule
from .sigma_config import Config, parse_config
from .condition_parser import parse_condition
from .field_mapper import FieldMapper, ResolvedLogsource, resolve_logsource
from .query_generator import EvaluationResult, RuleEvaluator
from .yara_parser import YaraConfig, parse_yara_config, parse_yara_rules
from .yara_generator import YaraEvaluationResult, YaraRuleEvaluator

__all__ = [
    'Rule', 'parse_rule', 'Config', 'parse_config', 'parse_condition',
    'FieldMapper', 'ResolvedLogsource', 'resolve_logsource',
    'EvaluationResult', 'RuleEvaluator',
    'YaraConfig', 'parse_yara_config', 'parse_yara_rules',
    'YaraEvaluationResult', 'YaraRuleEvaluator',
]
