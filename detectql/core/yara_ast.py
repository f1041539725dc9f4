"""
YARA Expression AST

Typed tree for YARA rule conditions and strings, built by yara_condition and
yara_parser and consumed by yara_generator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Union


class BinaryOperator(Enum):
    MATCHES = "matches"
    CONTAINS = "contains"
    ICONTAINS = "icontains"
    IEQUALS = "iequals"
    STARTSWITH = "startswith"
    ISTARTSWITH = "istartswith"
    ENDSWITH = "endswith"
    IENDSWITH = "iendswith"
    AT = "at"
    IN = "in"
    BITWISE_OR = "|"
    XOR = "^"
    BITWISE_AND = "&"
    EQ = "=="
    NEQ = "!="
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    SHIFT_LEFT = "<<"
    SHIFT_RIGHT = ">>"
    PLUS = "+"
    MINUS = "-"
    TIMES = "*"
    DIV = "\\"
    MOD = "%"


class UnaryOperator(Enum):
    BITWISE_NOT = "~"
    UNARY_MINUS = "-"
    DEFINED = "defined "


class ForKeyword(Enum):
    NONE = "none"
    ALL = "all"
    ANY = "any"


class Keyword(Enum):
    ENTRYPOINT = "entrypoint"
    FILESIZE = "filesize"


@dataclass
class BoolValue:
    value: bool


@dataclass
class NumberValue:
    value: int


@dataclass
class DoubleValue:
    value: float


@dataclass
class Text:
    """
    String literal; value is kept with its escape sequences as written.
    """
    value: str


@dataclass
class Regexp:
    text: str
    case_insensitive: bool = False
    dot_all: bool = False


@dataclass
class KeywordValue:
    keyword: Keyword


@dataclass
class StringIdentifier:
    """
    $name reference; name excludes the '$'.
    """
    name: str


@dataclass
class StringCount:
    name: str
    range: Optional["Range"] = None


@dataclass
class StringOffset:
    name: str
    index: Optional["Expression"] = None


@dataclass
class StringLength:
    name: str
    index: Optional["Expression"] = None


@dataclass
class OrExpression:
    terms: List["Expression"]


@dataclass
class AndExpression:
    terms: List["Expression"]


@dataclass
class NotExpression:
    expression: "Expression"


@dataclass
class UnaryExpression:
    operator: UnaryOperator
    expression: "Expression"


@dataclass
class BinaryExpression:
    operator: BinaryOperator
    left: "Expression"
    right: "Expression"


@dataclass
class Range:
    start: "Expression"
    end: "Expression"


@dataclass
class IdentifierIndex:
    index: "Expression"


@dataclass
class IdentifierArguments:
    arguments: List["Expression"]


IdentifierItem = Union[str, IdentifierIndex, IdentifierArguments]


@dataclass
class Identifier:
    """
    Module or variable access such as pe.sections[0].name or math.entropy(0, filesize).
    """
    items: List[IdentifierItem]


@dataclass
class IntegerFunction:
    function: str
    argument: "Expression"


@dataclass
class PercentageExpression:
    expression: "Expression"


@dataclass
class IntegerEnumeration:
    values: List["Expression"]


Iterator = Union[Range, IntegerEnumeration, Identifier]


@dataclass
class StringEnumerationItem:
    name: str
    wildcard: bool = False


@dataclass
class StringSet:
    """
    Either the keyword 'them' (items is None) or an explicit ($a, $b*) list.
    """
    items: Optional[List[StringEnumerationItem]] = None


@dataclass
class RuleEnumerationItem:
    name: str
    wildcard: bool = False


@dataclass
class RuleEnumeration:
    items: List[RuleEnumerationItem]


Quantifier = Union[ForKeyword, "Expression"]


@dataclass
class ForInExpression:
    quantifier: Quantifier
    identifiers: List[str]
    iterator: Iterator
    expression: "Expression"


@dataclass
class ForOfExpression:
    quantifier: Quantifier
    string_set: Optional[StringSet] = None
    rule_enumeration: Optional[RuleEnumeration] = None
    range: Optional[Range] = None
    at: Optional["Expression"] = None
    expression: Optional["Expression"] = None
    with_for: bool = False


Expression = Union[
    BoolValue, NumberValue, DoubleValue, Text, Regexp, KeywordValue,
    StringIdentifier, StringCount, StringOffset, StringLength,
    OrExpression, AndExpression, NotExpression, UnaryExpression, BinaryExpression,
    Range, Identifier, IntegerFunction, PercentageExpression,
    ForInExpression, ForOfExpression,
]


@dataclass
class BytesSequence:
    """
    Run of hex-string bytes; mask 0xFF is exact, 0x0F/0xF0 a nibble
    wildcard, 0x00 a full wildcard.
    """
    value: List[int] = field(default_factory=list)
    mask: List[int] = field(default_factory=list)
    nots: List[bool] = field(default_factory=list)


@dataclass
class Jump:
    start: Optional[int] = None
    end: Optional[int] = None


@dataclass
class Alternative:
    alternatives: List["HexTokens"]


HexToken = Union[BytesSequence, Jump, Alternative]


@dataclass
class HexTokens:
    tokens: List[HexToken] = field(default_factory=list)


class StringKind(Enum):
    TEXT = "text"
    HEX = "byte"
    REGEXP = "regex"


@dataclass
class YaraString:
    """
    Entry of a rule's strings section. identifier excludes the '$'.
    """
    identifier: str
    kind: StringKind
    text: str = ""
    hex: Optional[HexTokens] = None
    regexp: Optional[Regexp] = None
    modifiers: List[str] = field(default_factory=list)


@dataclass
class Meta:
    key: str
    value: Union[str, int, bool]


@dataclass
class YaraRule:
    name: str
    condition: Expression
    tags: List[str] = field(default_factory=list)
    scopes: List[str] = field(default_factory=list)
    imports: List[str] = field(default_factory=list)
    meta: List[Meta] = field(default_factory=list)
    strings: List[YaraString] = field(default_factory=list)


PRECEDENCE_OR = 1
PRECEDENCE_AND = 2
PRECEDENCE_NOT = 15
PRECEDENCE_MAX = 127

OPERATOR_PRECEDENCE = {
    BinaryOperator.BITWISE_OR: 3,
    BinaryOperator.XOR: 4,
    BinaryOperator.BITWISE_AND: 5,
    BinaryOperator.EQ: 6,
    BinaryOperator.NEQ: 6,
    BinaryOperator.MATCHES: 6,
    BinaryOperator.CONTAINS: 6,
    BinaryOperator.ICONTAINS: 6,
    BinaryOperator.IEQUALS: 6,
    BinaryOperator.STARTSWITH: 6,
    BinaryOperator.ISTARTSWITH: 6,
    BinaryOperator.ENDSWITH: 6,
    BinaryOperator.IENDSWITH: 6,
    BinaryOperator.LT: 7,
    BinaryOperator.LE: 7,
    BinaryOperator.GT: 7,
    BinaryOperator.GE: 7,
    BinaryOperator.SHIFT_LEFT: 8,
    BinaryOperator.SHIFT_RIGHT: 8,
    BinaryOperator.PLUS: 9,
    BinaryOperator.MINUS: 9,
    BinaryOperator.TIMES: 10,
    BinaryOperator.DIV: 10,
    BinaryOperator.MOD: 10,
}


def get_precedence(node) -> int:
    """
    Binding strength of a node when printed; higher binds tighter.
    """
    if isinstance(node, OrExpression):
        return PRECEDENCE_OR
    if isinstance(node, AndExpression):
        return PRECEDENCE_AND
    if isinstance(node, BinaryExpression):
        return OPERATOR_PRECEDENCE.get(node.operator, PRECEDENCE_MAX)
    if isinstance(node, (NotExpression, UnaryExpression)):
        return PRECEDENCE_NOT
    return PRECEDENCE_MAX
