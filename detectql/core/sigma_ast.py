"""
Sigma Condition AST

Typed tree produced by the condition parser. Every node prints back to
condition syntax via str(), and parsing that text yields an equal tree.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class And:
    nodes: Tuple["SearchExpr", ...]

    def __str__(self):
        return "(" + " and ".join(str(node) for node in self.nodes) + ")"


@dataclass(frozen=True)
class Or:
    nodes: Tuple["SearchExpr", ...]

    def __str__(self):
        return "(" + " or ".join(str(node) for node in self.nodes) + ")"


@dataclass(frozen=True)
class Not:
    expr: "SearchExpr"

    def __str__(self):
        return f"not {self.expr}"


@dataclass(frozen=True)
class SearchIdentifier:
    name: str

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class OneOfIdentifier:
    name: str

    def __str__(self):
        return f"1 of {self.name}"


@dataclass(frozen=True)
class AllOfIdentifier:
    name: str

    def __str__(self):
        return f"all of {self.name}"


@dataclass(frozen=True)
class OneOfPattern:
    pattern: str

    def __str__(self):
        return f"1 of {self.pattern}"


@dataclass(frozen=True)
class AllOfPattern:
    pattern: str

    def __str__(self):
        return f"all of {self.pattern}"


@dataclass(frozen=True)
class OneOfThem:
    def __str__(self):
        return "1 of them"


@dataclass(frozen=True)
class AllOfThem:
    def __str__(self):
        return "all of them"


SearchExpr = Union[
    And, Or, Not, SearchIdentifier,
    OneOfIdentifier, AllOfIdentifier,
    OneOfPattern, AllOfPattern,
    OneOfThem, AllOfThem,
]


class ComparisonOp(Enum):
    EQUAL = "="
    NOT_EQUAL = "!="
    LESS_THAN = "<"
    LESS_THAN_EQUAL = "<="
    GREATER_THAN = ">"
    GREATER_THAN_EQUAL = ">="


@dataclass(frozen=True)
class AggregationFunc:
    """
    Aggregation function applied to matched events, e.g. count(User) by Host.
    """
    field: str = ""
    grouped_by: str = ""

    name = ""

    def __str__(self):
        text = f"{self.name}({self.field})"
        if self.grouped_by:
            text += f" by {self.grouped_by}"
        return text


@dataclass(frozen=True)
class Count(AggregationFunc):
    name = "count"


@dataclass(frozen=True)
class Min(AggregationFunc):
    name = "min"


@dataclass(frozen=True)
class Max(AggregationFunc):
    name = "max"


@dataclass(frozen=True)
class Average(AggregationFunc):
    name = "avg"


@dataclass(frozen=True)
class Sum(AggregationFunc):
    name = "sum"


AGGREGATION_FUNCTIONS = {
    func.name: func for func in (Count, Min, Max, Average, Sum)
}


def format_threshold(threshold: float) -> str:
    if float(threshold).is_integer():
        return str(int(threshold))
    return str(threshold)


@dataclass(frozen=True)
class Comparison:
    func: AggregationFunc
    op: ComparisonOp
    threshold: float

    def __str__(self):
        return f"{self.func} {self.op.value} {format_threshold(self.threshold)}"


@dataclass(frozen=True)
class Near:
    condition: SearchExpr

    def __str__(self):
        return f"near {self.condition}"


AggregationExpr = Union[Comparison, Near]


@dataclass(frozen=True)
class Condition:
    """
    One parsed entry of a rule's condition field.

    The source position (0-based line and column of the YAML scalar) is kept
    for diagnostics and ignored by equality.
    """
    search: SearchExpr
    aggregation: Optional[AggregationExpr] = None
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)

    def __str__(self):
        if self.aggregation is None:
            return str(self.search)
        return f"{self.search} | {self.aggregation}"
