#!/usr/bin/env python3
"""
Detection Rule to Query Compiler

Command-line interface for compiling Sigma and YARA rules into backend
queries. Supports single file conversion and batch processing of directories.

Usage:
    python -m detectql.convert --file rule.yml --config config.yml
    python -m detectql.convert --input sigma_rules/ --config base.yml --config windows.yml --output out/
    python -m detectql.convert --file rules.yar --yara-config yara.yml --json
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .core.sigma_config import Config, parse_config
from .core.yara_parser import YaraConfig, parse_yara_config
from .errors import ConversionError
from .processors.batch_processor import BatchProcessor
from .processors.rule_converter import RuleConverter
from .utils.file_handler import read_document
from .utils.yaml_validator import YAMLValidator


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """
    Configure logging for the converter.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def load_configs(paths: List[str]) -> List[Config]:
    """
    Parse Sigma config files in the order given.

    Raises:
        ConversionError: If a config cannot be parsed
        OSError: If a config cannot be read
    """
    configs = []
    for path in paths:
        config = parse_config(read_document(Path(path)))
        logging.info(f"Loaded config: {path} ({config.title or 'untitled'})")
        configs.append(config)
    return configs


def load_yara_configs(paths: List[str]) -> List[YaraConfig]:
    configs = []
    for path in paths:
        configs.append(parse_yara_config(read_document(Path(path))))
        logging.info(f"Loaded YARA config: {path}")
    return configs


def print_result(result: Dict[str, Any], as_json: bool):
    """
    Write the queries (or JSON records) of one conversion to stdout.
    """
    if as_json:
        for record in result.get('records', []):
            print(json.dumps(record, indent=2, ensure_ascii=False))
        return
    queries = result.get('queries', {})
    for key in sorted(queries, key=str):
        print(queries[key])


async def main():
    """
    Main entry point for the rule converter.
    """
    parser = argparse.ArgumentParser(
        description='Compile Sigma and YARA rules into backend queries',
        formatter_class=argparse.RawTextHelpFormatter
    )

    # Input options
    parser.add_argument('--input', '-i', type=str, help='Input directory containing rule files')
    parser.add_argument('--file', '-f', type=str, help='Single rule file to convert')
    parser.add_argument('--output', '-o', type=str, help='Output directory for JSON records')

    # Config options
    parser.add_argument('--config', '-c', action='append', default=[],
                        help='Sigma config file; repeat to layer configs in order')
    parser.add_argument('--yara-config', action='append', default=[],
                        help='YARA config file; repeat to layer configs in order')
    parser.add_argument('--case-sensitive', '--cs', action='store_true',
                        help='Keep value case in Sigma comparisons')

    # Processing options
    parser.add_argument('--yara', action='store_true', help='Include .yar/.yara files when processing a directory')
    parser.add_argument('--limit', '-l', type=int, default=0, help='Limit number of files to process (0 = no limit)')
    parser.add_argument('--json', action='store_true', help='Print JSON records instead of raw queries')
    parser.add_argument('--validate', action='store_true', help='Only check the input directory for invalid YAML')

    # Utility options
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')
    parser.add_argument('--log-file', type=str, help='Also write the log to this file')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_file)
    logger = logging.getLogger(__name__)

    if not args.file and not args.input:
        logger.error("Must specify either --input directory or --file")
        return 1

    if args.validate:
        if not args.input:
            logger.error("--validate requires --input")
            return 1
        invalid = YAMLValidator.validate_directory(args.input)
        for entry in invalid:
            print(f"{entry['file']}: {entry['error']}")
        return 1 if invalid else 0

    output_dir = Path(args.output) if args.output else None

    try:
        configs = load_configs(args.config)
        yara_configs = load_yara_configs(args.yara_config)
    except (ConversionError, OSError) as e:
        logger.error(f"Could not load config: {e}")
        return 1

    rule_converter = RuleConverter(configs, yara_configs, case_sensitive=args.case_sensitive)

    try:
        if args.file:
            rule_file = Path(args.file)
            if not rule_file.exists():
                logger.error(f"Rule file not found: {rule_file}")
                return 1

            logger.info(f"Converting single file: {rule_file}")
            result = await rule_converter.convert_rule_file(rule_file, output_dir)

            if result['status'] == 'success':
                print_result(result, args.json)
                for index, error in result.get('errors', {}).items():
                    logger.warning(f"Condition {index} skipped: {error}")
                logger.info("✓ Conversion successful")
                return 0
            if result['status'] == 'skipped':
                logger.info(f"Nothing to convert: {result.get('reason')}")
                return 0
            logger.error(f"✗ Conversion failed: {result.get('error', 'Unknown error')}")
            return 1

        input_dir = Path(args.input)
        if not input_dir.exists():
            logger.error(f"Input directory not found: {input_dir}")
            return 1

        batch_processor = BatchProcessor(rule_converter, include_yara=args.yara)
        results = await batch_processor.process_directory(input_dir, output_dir, args.limit)

        for conversion in results['conversions']:
            if conversion['status'] == 'success':
                print_result(conversion, args.json)

        logger.info("=" * 80)
        logger.info("BATCH PROCESSING RESULTS")
        logger.info("=" * 80)
        logger.info(f"Total files found: {results['total_found']}")
        logger.info(f"Files processed: {results['processed']}")
        logger.info(f"Successful conversions: {results['successful']}")
        logger.info(f"Failed conversions: {results['failed']}")
        logger.info(f"Success rate: {results['success_rate']:.1f}%")

        if results['errors']:
            logger.error(f"Errors encountered ({len(results['errors'])}):")
            for error in results['errors'][:5]:
                logger.error(f"  {error.get('rule_file', 'unknown')}: {error.get('error', 'unknown')}")
            if len(results['errors']) > 5:
                logger.error(f"  ... and {len(results['errors']) - 5} more errors")

        return 0 if results['failed'] == 0 else 1

    except KeyboardInterrupt:
        logger.info("Conversion interrupted by user")
        return 1


async def convert_rules_batch(rule_files: List[str], output_dir: Optional[Path], base_dir: Path,
                              configs: Optional[List[Config]] = None) -> List[Dict[str, Any]]:
    """
    Convert a list of rule files given relative to base_dir.

    Args:
        rule_files: Rule file paths, relative to base_dir
        output_dir: Output directory for JSON records
        base_dir: Directory the paths are relative to
        configs: Sigma configs applied to every rule

    Returns:
        List of conversion results
    """
    rule_converter = RuleConverter(configs or [])
    results = []

    for rule_file_path in rule_files:
        full_path = base_dir / rule_file_path.strip()

        if not full_path.exists():
            logging.warning(f"File not found: {full_path}")
            results.append({
                'status': 'error',
                'rule_file': rule_file_path,
                'error': 'File not found'
            })
            continue

        logging.info(f"Converting: {rule_file_path}")
        result = await rule_converter.convert_rule_file(full_path, output_dir)
        result['rule_file'] = rule_file_path
        results.append(result)

    return results


def run():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
