"""
Detection Rule to Query Compiler

This package compiles Sigma and YARA detection rules into backend query
strings. Layered YAML configs rewrite log sources and map rule fields onto
concrete event fields before the queries are assembled.
"""

__version__ = "1.0.0"

from .core.sigma_parser import parse_rule
from .core.sigma_config import parse_config
from .core.query_generator import RuleEvaluator
from .core.yara_parser import parse_yara_rules, parse_yara_config
from .core.yara_generator import YaraRuleEvaluator
from .processors.rule_converter import RuleConverter
from .processors.batch_processor import BatchProcessor
from .utils.yaml_validator import FileType, infer_file_type

__all__ = [
    'parse_rule',
    'parse_config',
    'RuleEvaluator',
    'parse_yara_rules',
    'parse_yara_config',
    'YaraRuleEvaluator',
    'RuleConverter',
    'BatchProcessor',
    'FileType',
    'infer_file_type',
]
