"""
Conversion Errors

Exception hierarchy raised while parsing rule/config documents and compiling
them into query strings.
"""

from typing import Optional


class ConversionError(Exception):
    """
    Base class for every error raised by the rule compiler.
    """


class ParseError(ConversionError):
    """
    A rule, config or YARA document could not be parsed.
    """


class GrammarError(ParseError):
    """
    Malformed condition string.

    Args:
        message: Description of the problem
        condition: The condition text being parsed
        position: Offset of the offending token in the condition text
    """

    def __init__(self, message: str, condition: str = "", position: int = 0):
        self.condition = condition
        self.position = position
        if condition:
            message = f"{message} at position {position} in '{condition}'"
        super().__init__(message)


class UnsupportedConstructError(ConversionError):
    """
    The rule uses a construct that cannot be compiled to a query.
    """


class ConfigResolutionError(ConversionError):
    """
    Config layering failed. Resolution currently degrades to "no mapping".
    """


class PlaceholderExpansionError(ConversionError):
    """
    A %placeholder% value could not be expanded.
    """


class EvaluationError(ConversionError):
    """
    The evaluator met a node or value it cannot render.
    """


class ConditionError(ConversionError):
    """
    Failure while compiling one condition of a rule.

    Sibling conditions of the same rule still compile; this error records
    which condition (and search, when known) failed and why.
    """

    def __init__(self, condition_index: int, cause: Exception, search_name: Optional[str] = None):
        self.condition_index = condition_index
        self.search_name = search_name
        self.cause = cause
        where = f"condition {condition_index}"
        if search_name:
            where += f", search '{search_name}'"
        super().__init__(f"{where}: {cause}")
