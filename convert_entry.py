#!/usr/bin/env python3
"""
Conversion Entry Point Script

Converts the rule files listed (one path per line) in a text file, e.g. the
files changed by a CI run.

Usage:
    python convert_entry.py <changed_files_list> [config.yml ...]
"""

import asyncio
import logging
import sys
from pathlib import Path

from detectql.convert import convert_rules_batch, load_configs, setup_logging
from detectql.errors import ConversionError


def main():
    """
    Main entry point for the conversion script.
    """
    setup_logging()

    if len(sys.argv) < 2:
        print("Usage: python convert_entry.py <changed_files_list> [config.yml ...]")
        sys.exit(1)

    changed_files_path = Path(sys.argv[1])
    base_dir = Path.cwd()

    if not changed_files_path.exists():
        logging.error(f"Changed files list not found: {changed_files_path}")
        sys.exit(1)

    try:
        with open(changed_files_path, 'r', encoding='utf-8') as f:
            changed_files = [line.strip() for line in f if line.strip()]
        configs = load_configs(sys.argv[2:])
    except (ConversionError, OSError) as e:
        logging.error(f"Error reading inputs: {e}")
        sys.exit(1)

    if not changed_files:
        logging.info("No files to process")
        return

    logging.info(f"Processing {len(changed_files)} changed files")
    results = asyncio.run(convert_rules_batch(
        rule_files=changed_files,
        output_dir=base_dir / "queries",
        base_dir=base_dir,
        configs=configs
    ))

    successful = [r for r in results if r['status'] == 'success']
    failed = [r for r in results if r['status'] == 'error']

    for result in successful[:5]:
        print(f"{result['rule_file']}:")
        for query in result.get('queries', {}).values():
            print(f"    {query}")

    logging.info(f"Conversion completed: {len(successful)} successful, {len(failed)} failed")
    if failed:
        logging.warning("Some conversions failed:")
        for result in failed:
            logging.warning(f"  - {result['rule_file']}: {result['error']}")
        sys.exit(1)


if __name__ == "__main__":
    main()
