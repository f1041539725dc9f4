"""
Condition Lexer

Tokenizes the Sigma condition mini-language:
    selection and not 1 of filter* | count(User) by Host > 5
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List

from ..errors import GrammarError


class TokenType(Enum):
    ONE_OF_THEM = "1 of them"
    ALL_OF_THEM = "all of them"
    ONE_OF = "1 of"
    ALL_OF = "all of"
    PATTERN = "pattern"
    IDENTIFIER = "identifier"
    AND = "and"
    OR = "or"
    NOT = "not"
    LPAREN = "("
    RPAREN = ")"
    COMPARISON = "comparison"
    NUMBER = "number"
    PIPE = "|"
    EOF = "end of input"


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: str
    position: int


# Order matters: keywords before numbers and words, two-char comparisons first.
_TOKEN_RE = re.compile(r"""
    (?P<space>\s+)
  | (?P<of_them>(?i:(?:1|all)\s+of\s+them)\b)
  | (?P<of>(?i:(?:1|all)\s+of)\b)
  | (?P<word>[A-Za-z_*][A-Za-z0-9_*]*)
  | (?P<comparison>!=|<=|>=|=|<|>)
  | (?P<number>0|[1-9][0-9]*)
  | (?P<pipe>\|)
  | (?P<lparen>\()
  | (?P<rparen>\))
""", re.VERBOSE)

_OPERATORS = {
    'and': TokenType.AND,
    'or': TokenType.OR,
    'not': TokenType.NOT,
}


def _classify_word(word: str) -> TokenType:
    if '*' in word:
        return TokenType.PATTERN
    return _OPERATORS.get(word.lower(), TokenType.IDENTIFIER)


def tokenize(condition: str) -> List[Token]:
    """
    Split a condition string into tokens.

    Args:
        condition: Raw condition text

    Returns:
        List of tokens terminated by an EOF token

    Raises:
        GrammarError: On a character that starts no token
    """
    tokens = []
    position = 0
    while position < len(condition):
        match = _TOKEN_RE.match(condition, position)
        if not match:
            raise GrammarError(f"unexpected character '{condition[position]}'", condition, position)

        kind = match.lastgroup
        text = match.group()
        if kind == 'of_them':
            token_type = TokenType.ONE_OF_THEM if text[0] == '1' else TokenType.ALL_OF_THEM
        elif kind == 'of':
            token_type = TokenType.ONE_OF if text[0] == '1' else TokenType.ALL_OF
        elif kind == 'word':
            token_type = _classify_word(text)
        elif kind == 'comparison':
            token_type = TokenType.COMPARISON
        elif kind == 'number':
            token_type = TokenType.NUMBER
        elif kind == 'pipe':
            token_type = TokenType.PIPE
        elif kind == 'lparen':
            token_type = TokenType.LPAREN
        elif kind == 'rparen':
            token_type = TokenType.RPAREN
        else:
            token_type = None

        if token_type is not None:
            tokens.append(Token(token_type, text, position))
        position = match.end()

    tokens.append(Token(TokenType.EOF, "", len(condition)))
    return tokens
