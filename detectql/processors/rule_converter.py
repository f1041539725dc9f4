"""
Rule Converter Module

Converts Sigma and YARA rule documents into backend queries.
Uses the parsers and evaluators from the core modules and writes the results
as JSON records.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..core.field_mapper import PlaceholderExpander, config_placeholder_expander
from ..core.query_generator import RuleEvaluator
from ..core.sigma_config import Config
from ..core.sigma_parser import Rule, parse_rule
from ..core.yara_ast import YaraRule
from ..core.yara_generator import YaraRuleEvaluator
from ..core.yara_parser import YaraConfig, parse_yara_rules
from ..errors import ConversionError
from ..utils.file_handler import is_yara_file, read_document, safe_filename
from ..utils.yaml_validator import FileType, infer_file_type


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def format_json_record(name: str, description: str, queries: Dict[int, str],
                       tags: Sequence[str], level: str) -> Dict[str, Any]:
    """
    Build the JSON record of a compiled rule.

    Args:
        name: Rule title
        description: Rule description
        queries: Query per condition index; joined with newlines in index order
        tags: Rule tags
        level: Rule level

    Returns:
        Record with Name, Description, Query, InsertDate, LastUpdateDate, Tags and Level
    """
    now = _timestamp()
    return {
        'Name': name,
        'Description': description,
        'Query': "\n".join(queries[index] for index in sorted(queries)),
        'InsertDate': now,
        'LastUpdateDate': now,
        'Tags': list(tags),
        'Level': level,
    }


def _yara_meta(rule: YaraRule, key: str) -> str:
    for meta in rule.meta:
        if meta.key == key:
            return str(meta.value)
    return ""


class RuleConverter:
    """
    Converts rule files to queries.
    """

    def __init__(self, configs: Sequence[Config] = (), yara_configs: Sequence[YaraConfig] = (),
                 case_sensitive: bool = False,
                 placeholder_expander: Optional[PlaceholderExpander] = None):
        self.configs = list(configs)
        self.yara_configs = list(yara_configs)
        self.case_sensitive = case_sensitive
        if placeholder_expander is None and any(config.placeholders for config in self.configs):
            placeholder_expander = config_placeholder_expander(self.configs)
        self.placeholder_expander = placeholder_expander

    @staticmethod
    def format_json_record(rule: Rule, queries: Dict[int, str]) -> Dict[str, Any]:
        """
        JSON record of a compiled Sigma rule.
        """
        return format_json_record(rule.title, rule.description, queries, rule.tags, rule.level)

    async def convert_rule_file(self, rule_file: Path, output_dir: Optional[Path] = None) -> Dict[str, Any]:
        """
        Convert a single rule file.

        YARA documents are recognised by their suffix; everything else is
        classified with infer_file_type and only Sigma rules are compiled.

        Args:
            rule_file: Path to rule file
            output_dir: Directory to save JSON records (optional)

        Returns:
            Dictionary with conversion results
        """
        try:
            contents = read_document(rule_file)
        except OSError as e:
            logging.error(f"Error reading rule file {rule_file}: {e}")
            return {'status': 'error', 'rule_file': str(rule_file), 'error': str(e)}

        if is_yara_file(rule_file):
            return self.convert_yara_document(rule_file, contents, output_dir)

        file_type = infer_file_type(contents)
        if file_type == FileType.RULE:
            return await self.convert_sigma_document(rule_file, contents, output_dir)
        if file_type == FileType.CONFIG:
            logging.debug(f"Skipping config document: {rule_file}")
            return {'status': 'skipped', 'rule_file': str(rule_file), 'reason': 'config document'}

        error = "invalid YAML" if file_type == FileType.INVALID else "not a Sigma rule"
        logging.error(f"Error converting rule file {rule_file}: {error}")
        return {'status': 'error', 'rule_file': str(rule_file), 'error': error}

    async def convert_sigma_document(self, rule_file: Path, contents: bytes,
                                     output_dir: Optional[Path] = None) -> Dict[str, Any]:
        """
        Parse and compile one Sigma rule.

        Conditions that fail are listed under 'errors'; the rule only counts
        as failed when no condition compiled.
        """
        try:
            rule = parse_rule(contents)
            evaluator = RuleEvaluator(rule, self.configs,
                                      placeholder_expander=self.placeholder_expander,
                                      case_sensitive=self.case_sensitive)
            result = await evaluator.alters()
        except ConversionError as e:
            logging.error(f"Error converting Sigma rule {rule_file}: {e}")
            return {'status': 'error', 'rule_file': str(rule_file), 'error': str(e)}

        errors = {index: str(error) for index, error in result.errors.items()}
        if not result.query_results:
            message = "; ".join(errors.values()) or "rule has no conditions"
            logging.error(f"Error converting Sigma rule {rule.id or rule_file}: {message}")
            return {
                'status': 'error',
                'rule_file': str(rule_file),
                'rule_id': rule.id,
                'title': rule.title,
                'errors': errors,
                'error': message,
            }

        record = self.format_json_record(rule, result.query_results)
        saved_file = self._save_record(record, output_dir, rule.title) if output_dir else None

        return {
            'status': 'success',
            'rule_file': str(rule_file),
            'rule_id': rule.id,
            'title': rule.title,
            'queries': dict(result.query_results),
            'indexes': evaluator.indexes,
            'errors': errors,
            'records': [record],
            'output_file': str(saved_file) if saved_file else None,
        }

    def convert_yara_document(self, rule_file: Path, contents: bytes,
                              output_dir: Optional[Path] = None) -> Dict[str, Any]:
        """
        Parse and compile every rule of a YARA document.

        A rule that fails to compile is recorded under 'errors' by rule name.
        """
        try:
            rules = parse_yara_rules(contents)
        except (ConversionError, UnicodeDecodeError) as e:
            logging.error(f"Error parsing YARA document {rule_file}: {e}")
            return {'status': 'error', 'rule_file': str(rule_file), 'error': str(e)}

        queries: Dict[str, str] = {}
        errors: Dict[str, str] = {}
        records: List[Dict[str, Any]] = []
        output_files: List[str] = []
        for rule in rules:
            try:
                result = YaraRuleEvaluator(rule, self.yara_configs).alters()
            except ConversionError as e:
                logging.error(f"Error converting YARA rule {rule.name}: {e}")
                errors[rule.name] = str(e)
                continue

            queries[rule.name] = result.query_result
            record = format_json_record(rule.name, _yara_meta(rule, 'description'),
                                        {0: result.query_result}, rule.tags, _yara_meta(rule, 'level'))
            records.append(record)
            if output_dir:
                output_files.append(str(self._save_record(record, output_dir, rule.name)))

        status = 'success' if queries else 'error'
        response = {
            'status': status,
            'rule_file': str(rule_file),
            'queries': queries,
            'errors': errors,
            'records': records,
            'output_files': output_files,
        }
        if status == 'error':
            response['error'] = "; ".join(errors.values()) or "document has no rules"
        return response

    def _save_record(self, record: Dict[str, Any], output_dir: Path, title: str) -> Path:
        """
        Save a JSON record as <title>.json in the output directory.
        """
        output_dir.mkdir(parents=True, exist_ok=True)
        output_file = output_dir / f"{safe_filename(title)}.json"
        with open(output_file, 'w', encoding='utf-8') as f:
            json.dump(record, f, indent=2, ensure_ascii=False)

        logging.info(f"Saved converted rule to: {output_file}")
        return output_file
