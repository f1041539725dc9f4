"""
YAML Validator Module

Classifies and validates YAML documents before they are handed to the rule
and config parsers.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, List, Union

import yaml


class FileType(Enum):
    UNKNOWN = ""
    INVALID = "invalid"
    RULE = "rule"
    CONFIG = "config"


def infer_file_type(contents: Union[bytes, str]) -> FileType:
    """
    Guess whether a YAML document is a Sigma rule or a Sigma config.

    A top-level 'detection' key marks a rule, a top-level 'logsources' key
    a config; whichever comes first wins.

    Args:
        contents: Raw document

    Returns:
        FileType; INVALID if the document is not YAML
    """
    try:
        node = yaml.compose(contents, Loader=yaml.SafeLoader)
    except yaml.YAMLError as e:
        logging.debug(f"Document is not valid YAML: {e}")
        return FileType.INVALID

    if not isinstance(node, yaml.MappingNode):
        return FileType.UNKNOWN

    for key, _ in node.value:
        if isinstance(key, yaml.ScalarNode):
            if key.value == 'detection':
                return FileType.RULE
            if key.value == 'logsources':
                return FileType.CONFIG
    return FileType.UNKNOWN


def find_incorrect_yaml(root_path: Union[str, Path]) -> List[Dict[str, str]]:
    """
    Find YAML files that fail to load in a directory tree.

    Returns:
        List of {'file', 'error'} entries
    """
    logging.info(f"Scanning for invalid YAML in: {root_path}")
    errors = []
    yaml_file_count = 0

    for subdir, _, files in os.walk(root_path):
        for file in files:
            if file.endswith((".yml", ".yaml")):
                yaml_file_count += 1
                file_path = os.path.join(subdir, file)
                try:
                    with open(file_path, "r", encoding="utf-8") as f:
                        list(yaml.safe_load_all(f))
                except (yaml.YAMLError, OSError, UnicodeDecodeError) as e:
                    logging.error(f"Invalid YAML file found: {file_path}: {e}")
                    errors.append({'file': file_path, 'error': str(e)})

    logging.info(f"Scan complete. Found {len(errors)} error(s) in {yaml_file_count} YAML file(s).")
    return errors


class YAMLValidator:
    """
    YAML validation helpers.
    """

    @staticmethod
    def validate_directory(directory_path: Union[str, Path]) -> List[Dict[str, str]]:
        """Wrapper for find_incorrect_yaml"""
        return find_incorrect_yaml(directory_path)
