"""
Batch Rule Processor

Handles batch conversion of every rule file under a directory with progress
logging and per-file error handling.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..processors.rule_converter import RuleConverter
from ..utils.file_handler import FileHandler


class BatchProcessor:
    """
    Processes multiple rule files in batch operations.
    """

    def __init__(self, rule_converter: RuleConverter, include_yara: bool = False):
        self.rule_converter = rule_converter
        self.include_yara = include_yara
        self.file_handler = FileHandler()

    async def process_files(self, rule_files: List[Path], output_dir: Optional[Path] = None,
                            total_found: Optional[int] = None) -> Dict[str, Any]:
        """
        Convert the given rule files one after another.

        Args:
            rule_files: Files to convert
            output_dir: Directory to save JSON records (optional)
            total_found: Number of files discovered before any limit was applied

        Returns:
            Dictionary with processing results
        """
        results = {
            'total_found': len(rule_files) if total_found is None else total_found,
            'processed': 0,
            'successful': 0,
            'failed': 0,
            'skipped': 0,
            'conversions': [],
            'errors': []
        }

        for idx, rule_file in enumerate(rule_files, 1):
            logging.info(f"Processing {idx}/{len(rule_files)}: {rule_file.name}")

            conversion_result = await self.rule_converter.convert_rule_file(rule_file, output_dir)

            if conversion_result['status'] == 'skipped':
                results['skipped'] += 1
                continue

            results['processed'] += 1
            if conversion_result['status'] == 'success':
                results['successful'] += 1
                logging.info(f"✓ Successfully converted: {rule_file.name}")
            else:
                results['failed'] += 1
                logging.error(f"✗ Failed to convert: {rule_file.name} "
                              f"({conversion_result.get('rule_id') or 'no id'}): "
                              f"{conversion_result.get('error', 'unknown error')}")
                results['errors'].append(conversion_result)

            results['conversions'].append(conversion_result)

            if idx % 10 == 0:
                logging.info(f"Progress: {idx}/{len(rule_files)} files processed")

            # yield to the event loop between files
            await asyncio.sleep(0)

        results['completion_time'] = datetime.now().isoformat()
        results['success_rate'] = (results['successful'] / results['processed']) * 100 if results['processed'] > 0 else 0

        logging.info(f"Batch processing completed:")
        logging.info(f"  Total processed: {results['processed']}")
        logging.info(f"  Successful: {results['successful']}")
        logging.info(f"  Failed: {results['failed']}")
        logging.info(f"  Skipped: {results['skipped']}")
        logging.info(f"  Success rate: {results['success_rate']:.1f}%")

        return results

    async def process_directory(self, rule_dir: Path, output_dir: Optional[Path] = None,
                                limit: int = 0) -> Dict[str, Any]:
        """
        Process all rule files in a directory.

        Args:
            rule_dir: Directory containing rule files
            output_dir: Directory to save JSON records (optional)
            limit: Maximum number of rules to process (0 = no limit)

        Returns:
            Dictionary with processing results
        """
        logging.info(f"Starting batch processing of rules from: {rule_dir}")

        rule_files = self.file_handler.get_rule_files(rule_dir, include_yara=self.include_yara)
        total_files = len(rule_files)

        if total_files == 0:
            logging.warning(f"No rule files found in: {rule_dir}")

        if limit > 0:
            rule_files = rule_files[:limit]
            logging.info(f"Processing limited to {limit} files")

        return await self.process_files(rule_files, output_dir, total_found=total_files)
