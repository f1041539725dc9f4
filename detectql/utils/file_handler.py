"""
File Handler Module

Rule discovery and document reading for the conversion drivers.
"""

import logging
import os
import re
from pathlib import Path
from typing import Iterable, List

SIGMA_SUFFIXES = (".yml", ".yaml")
YARA_SUFFIXES = (".yar", ".yara")
SKIP_DIRS = {"venv", ".git", "__pycache__", "node_modules"}


def get_all_rule_files(base_dir: Path, suffixes: Iterable[str] = SIGMA_SUFFIXES) -> List[Path]:
    """
    Finds all rule files with the given suffixes in a directory, respecting skip lists.
    """
    suffixes = tuple(suffix.lower() for suffix in suffixes)
    rule_files = []
    logging.info(f"Searching for {', '.join(suffixes)} files in {base_dir}, skipping {SKIP_DIRS}...")
    for root, dirs, files in os.walk(base_dir):
        dirs[:] = [d for d in dirs if d not in SKIP_DIRS]
        for file in files:
            if file.lower().endswith(suffixes) and not file.startswith("."):
                rule_files.append(Path(root) / file)
    logging.info(f"Found {len(rule_files)} total rule files.")
    return sorted(rule_files)


def read_document(file_path: Path) -> bytes:
    """
    Read a rule or config document as raw bytes
    """
    with open(file_path, "rb") as f:
        return f.read()


def safe_filename(name: str) -> str:
    """
    Turn a rule title into a file name stem, e.g. 'Whoami / Execution' -> 'whoami_execution'.
    """
    safe_name = name.strip().lower().replace(' ', '_').replace('-', '_')
    safe_name = ''.join(c for c in safe_name if c.isalnum() or c == '_')
    safe_name = re.sub(r'_+', '_', safe_name).strip('_')
    return safe_name or "rule"


def is_yara_file(file_path: Path) -> bool:
    return file_path.suffix.lower() in YARA_SUFFIXES


class FileHandler:
    """
    File handling utilities.
    """

    @staticmethod
    def get_rule_files(directory: Path, include_yara: bool = False) -> List[Path]:
        """Wrapper for get_all_rule_files"""
        suffixes = SIGMA_SUFFIXES + YARA_SUFFIXES if include_yara else SIGMA_SUFFIXES
        return get_all_rule_files(directory, suffixes)
