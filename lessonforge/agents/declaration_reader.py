"""Static reader for generated lesson declarations.

The model is asked to answer with a single declaration of the form::

    const lesson: GeneratedLessonContent = { ... };

This module reads that text into plain Python values (dict, list, str, int,
float, bool, None) and records the line/column of every value so schema errors
can be reported against the candidate text. Only literal syntax is accepted:
identifiers used as values, calls, spreads, computed keys and template
substitutions are rejected. Nothing is ever evaluated.
"""

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from lessonforge.schemas.lesson import DECLARATION_NAME, DECLARATION_TYPE


Path = Tuple[Union[str, int], ...]

MAX_NESTING_DEPTH = 64

_PUNCTUATION = ("...", "{", "}", "[", "]", "(", ")", ":", ",", ";", "=", "-", "+", ".", "?", "<", ">")

_NUMBER_RE = re.compile(
    r"""
      0[xX][0-9a-fA-F]+
    | 0[bB][01]+
    | 0[oO][0-7]+
    | (?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?
    """,
    re.VERBOSE,
)

_SIMPLE_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "0": "\0",
}


class _Undefined:
    """Marker for the ``undefined`` literal; such properties are dropped."""

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()


class DeclarationSyntaxError(Exception):
    """Raised when the candidate is not a well-formed literal declaration.

    Attributes:
        code: Machine-readable diagnostic code
        message: Human-readable description
        line: 1-based line of the offending token
        column: 1-based column of the offending token
    """

    def __init__(self, code: str, message: str, line: int, column: int):
        self.code = code
        self.message = message
        self.line = line
        self.column = column
        super().__init__(f"{line}:{column} {message}")


@dataclass(frozen=True)
class Token:
    kind: str  # punct | ident | string | template | number | eof
    value: Any
    line: int
    column: int

    def describe(self) -> str:
        if self.kind == "eof":
            return "end of input"
        if self.kind in ("string", "template"):
            return "string literal"
        return f"'{self.value}'"


@dataclass
class ParsedDeclaration:
    """Result of reading a declaration.

    Attributes:
        name: Bound variable name
        type_name: Declared type annotation
        value: Plain Python value of the initializer
        positions: (line, column) of every value, keyed by its path
    """
    name: str
    type_name: str
    value: Any
    positions: Dict[Path, Tuple[int, int]] = field(default_factory=dict)

    def position_of(self, path: Path) -> Tuple[int, int]:
        """Position of ``path`` or of its deepest recorded ancestor."""
        for end in range(len(path), -1, -1):
            position = self.positions.get(tuple(path[:end]))
            if position is not None:
                return position
        return (1, 1)


class _Lexer:
    """Tokenizer over the candidate text with line/column tracking."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0
        self.line = 1
        self.column = 1

    def _error(self, code: str, message: str, line: Optional[int] = None, column: Optional[int] = None):
        return DeclarationSyntaxError(
            code,
            message,
            self.line if line is None else line,
            self.column if column is None else column,
        )

    def _peek(self, offset: int = 0) -> str:
        index = self.pos + offset
        return self.text[index] if index < len(self.text) else ""

    def _advance(self, count: int = 1) -> str:
        chunk = self.text[self.pos:self.pos + count]
        for ch in chunk:
            if ch == "\n":
                self.line += 1
                self.column = 1
            else:
                self.column += 1
        self.pos += len(chunk)
        return chunk

    def _skip_trivia(self) -> None:
        while self.pos < len(self.text):
            ch = self._peek()
            if ch.isspace() or ch == "\ufeff":
                self._advance()
            elif ch == "/" and self._peek(1) == "/":
                while self.pos < len(self.text) and self._peek() != "\n":
                    self._advance()
            elif ch == "/" and self._peek(1) == "*":
                line, column = self.line, self.column
                end = self.text.find("*/", self.pos + 2)
                if end == -1:
                    raise self._error("UNTERMINATED_COMMENT", "Unterminated block comment", line, column)
                self._advance(end + 2 - self.pos)
            else:
                return

    def tokens(self) -> List[Token]:
        result: List[Token] = []
        while True:
            self._skip_trivia()
            if self.pos >= len(self.text):
                result.append(Token("eof", None, self.line, self.column))
                return result
            result.append(self._next_token())

    def _next_token(self) -> Token:
        line, column = self.line, self.column
        ch = self._peek()

        if ch in ("'", '"'):
            return Token("string", self._read_string(ch), line, column)
        if ch == "`":
            return Token("template", self._read_template(), line, column)
        if ch.isdigit() or (ch == "." and self._peek(1).isdigit()):
            return Token("number", self._read_number(), line, column)
        if ch == "_" or ch == "$" or ch.isalpha():
            start = self.pos
            while self._peek() and (self._peek() in "_$" or self._peek().isalnum()):
                self._advance()
            return Token("ident", self.text[start:self.pos], line, column)
        for punct in _PUNCTUATION:
            if self.text.startswith(punct, self.pos):
                self._advance(len(punct))
                return Token("punct", punct, line, column)
        raise self._error("UNEXPECTED_CHARACTER", f"Unexpected character {ch!r}")

    def _read_number(self) -> Union[int, float]:
        line, column = self.line, self.column
        match = _NUMBER_RE.match(self.text, self.pos)
        raw = match.group(0)
        if raw[0] == "0" and raw[1:2].isdigit():
            raise self._error(
                "INVALID_NUMBER",
                "Numeric literals with leading zeros are not allowed",
                line,
                column
            )
        self._advance(len(raw))
        follower = self._peek()
        if follower and (follower in "_$" or follower.isalnum()):
            raise self._error(
                "INVALID_NUMBER",
                "An identifier or keyword cannot immediately follow a numeric literal"
            )
        try:
            if raw[:2].lower() in ("0x", "0b", "0o"):
                return int(raw, 0)
            if any(c in raw for c in ".eE"):
                value = float(raw)
                # A single number type: 2.0 and 2 are the same value.
                if value.is_integer():
                    return int(value)
                return value
            return int(raw)
        except ValueError:
            raise self._error("INVALID_NUMBER", "Numeric literal is too long") from None

    def _read_escape(self) -> str:
        line, column = self.line, self.column
        self._advance()  # backslash
        ch = self._peek()
        if not ch:
            raise self._error("UNTERMINATED_STRING", "Unterminated string literal", line, column)
        if ch == "\r":
            self._advance()
            if self._peek() == "\n":
                self._advance()
            return ""
        if ch == "\n":
            self._advance()
            return ""
        if ch in _SIMPLE_ESCAPES and not (ch == "0" and self._peek(1).isdigit()):
            self._advance()
            return _SIMPLE_ESCAPES[ch]
        if ch in "0123456789":
            raise self._error("INVALID_ESCAPE", "Octal escape sequences are not allowed", line, column)
        if ch == "x":
            digits = self.text[self.pos + 1:self.pos + 3]
            if len(digits) != 2 or not all(c in "0123456789abcdefABCDEF" for c in digits):
                raise self._error("INVALID_ESCAPE", "Hexadecimal digit expected", line, column)
            self._advance(3)
            return chr(int(digits, 16))
        if ch == "u":
            if self._peek(1) == "{":
                end = self.text.find("}", self.pos + 2)
                digits = self.text[self.pos + 2:end] if end != -1 else ""
                if not digits or not all(c in "0123456789abcdefABCDEF" for c in digits):
                    raise self._error("INVALID_ESCAPE", "Invalid unicode escape", line, column)
                code_point = int(digits, 16)
                if code_point > 0x10FFFF:
                    raise self._error("INVALID_ESCAPE", "Unicode escape out of range", line, column)
                self._advance(end + 1 - self.pos)
                return chr(code_point)
            digits = self.text[self.pos + 1:self.pos + 5]
            if len(digits) != 4 or not all(c in "0123456789abcdefABCDEF" for c in digits):
                raise self._error("INVALID_ESCAPE", "Hexadecimal digit expected", line, column)
            self._advance(5)
            return chr(int(digits, 16))
        self._advance()
        return ch

    def _read_string(self, quote: str) -> str:
        line, column = self.line, self.column
        self._advance()
        parts: List[str] = []
        while True:
            ch = self._peek()
            if not ch or ch == "\n":
                raise self._error("UNTERMINATED_STRING", "Unterminated string literal", line, column)
            if ch == quote:
                self._advance()
                return self._join(parts, line, column)
            if ch == "\\":
                parts.append(self._read_escape())
            else:
                parts.append(self._advance())

    def _read_template(self) -> str:
        line, column = self.line, self.column
        self._advance()
        parts: List[str] = []
        while True:
            ch = self._peek()
            if not ch:
                raise self._error("UNTERMINATED_STRING", "Unterminated template literal", line, column)
            if ch == "`":
                self._advance()
                return self._join(parts, line, column)
            if ch == "$" and self._peek(1) == "{":
                raise self._error(
                    "TEMPLATE_SUBSTITUTION",
                    "Template substitutions are not allowed; use plain text"
                )
            if ch == "\\":
                parts.append(self._read_escape())
            else:
                parts.append(self._advance())

    def _join(self, parts: List[str], line: int, column: int) -> str:
        text = "".join(parts)
        try:
            # Combine escaped surrogate pairs into single characters.
            return text.encode("utf-16", "surrogatepass").decode("utf-16")
        except UnicodeError:
            raise self._error("INVALID_ESCAPE", "String contains an unpaired surrogate escape", line, column)


class DeclarationReader:
    """Recursive-descent reader for ``const lesson: GeneratedLessonContent = ...``."""

    def __init__(self, text: str):
        self.tokens = _Lexer(text).tokens()
        self.index = 0
        self.positions: Dict[Path, Tuple[int, int]] = {}

    @classmethod
    def read(cls, text: str) -> ParsedDeclaration:
        """Read ``text`` into a ParsedDeclaration.

        Raises:
            DeclarationSyntaxError: On the first syntax problem found
        """
        return cls(text)._read_declaration()

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _next(self) -> Token:
        token = self.tokens[self.index]
        if token.kind != "eof":
            self.index += 1
        return token

    @staticmethod
    def _error(token: Token, code: str, message: str) -> DeclarationSyntaxError:
        return DeclarationSyntaxError(code, message, token.line, token.column)

    def _is_punct(self, token: Token, value: str) -> bool:
        return token.kind == "punct" and token.value == value

    def _expect_punct(self, value: str, context: str) -> Token:
        token = self._next()
        if not self._is_punct(token, value):
            raise self._error(
                token,
                "UNEXPECTED_TOKEN",
                f"Expected '{value}' {context} but found {token.describe()}"
            )
        return token

    def _expect_ident(self, context: str) -> Token:
        token = self._next()
        if token.kind != "ident":
            raise self._error(
                token,
                "UNEXPECTED_TOKEN",
                f"Expected {context} but found {token.describe()}"
            )
        return token

    def _read_declaration(self) -> ParsedDeclaration:
        token = self._peek()
        if token.kind == "ident" and token.value == "export":
            self._next()

        keyword = self._expect_ident("'const'")
        if keyword.value != "const":
            raise self._error(keyword, "DECLARATION_KEYWORD", f"Expected 'const' but found '{keyword.value}'")

        name = self._expect_ident(f"the name '{DECLARATION_NAME}'")
        if name.value != DECLARATION_NAME:
            raise self._error(
                name,
                "DECLARATION_NAME",
                f"Declaration must bind '{DECLARATION_NAME}', found '{name.value}'"
            )

        self._expect_punct(":", f"after '{DECLARATION_NAME}'")
        type_name = self._expect_ident(f"the type '{DECLARATION_TYPE}'")
        if type_name.value != DECLARATION_TYPE:
            raise self._error(
                type_name,
                "DECLARATION_TYPE",
                f"Declaration must be typed '{DECLARATION_TYPE}', found '{type_name.value}'"
            )

        self._expect_punct("=", "before the lesson value")
        value = self._read_value((), depth=0)
        if value is UNDEFINED:
            value = None

        if self._is_punct(self._peek(), ";"):
            self._next()
        trailing = self._peek()
        if trailing.kind != "eof":
            raise self._error(
                trailing,
                "TRAILING_CONTENT",
                f"Unexpected {trailing.describe()} after the lesson declaration"
            )

        return ParsedDeclaration(
            name=name.value,
            type_name=type_name.value,
            value=value,
            positions=self.positions,
        )

    def _read_value(self, path: Path, depth: int) -> Any:
        token = self._next()
        if depth > MAX_NESTING_DEPTH:
            raise self._error(token, "NESTING_TOO_DEEP", f"Values nest deeper than {MAX_NESTING_DEPTH} levels")
        self.positions[path] = (token.line, token.column)

        if token.kind in ("string", "template", "number"):
            return token.value
        if token.kind == "punct":
            if token.value == "{":
                return self._read_object(path, depth)
            if token.value == "[":
                return self._read_array(path, depth)
            if token.value in ("-", "+"):
                operand = self._next()
                if operand.kind != "number":
                    raise self._error(
                        operand,
                        "NON_LITERAL",
                        f"Expected a number after '{token.value}' but found {operand.describe()}"
                    )
                return -operand.value if token.value == "-" else operand.value
            if token.value == "...":
                raise self._error(token, "NON_LITERAL", "Spread elements are not allowed")
        if token.kind == "ident":
            if token.value == "true":
                return True
            if token.value == "false":
                return False
            if token.value == "null":
                return None
            if token.value == "undefined":
                return UNDEFINED
            raise self._error(
                token,
                "NON_LITERAL",
                f"Only literal values are allowed; found identifier '{token.value}'"
            )
        raise self._error(token, "UNEXPECTED_TOKEN", f"Expected a value but found {token.describe()}")

    def _read_property_key(self, token: Token) -> str:
        if token.kind in ("ident", "string"):
            return token.value
        if token.kind == "number":
            if isinstance(token.value, float) and math.isinf(token.value):
                return "Infinity"
            return str(token.value)
        if self._is_punct(token, "["):
            raise self._error(token, "NON_LITERAL", "Computed property names are not allowed")
        if self._is_punct(token, "..."):
            raise self._error(token, "NON_LITERAL", "Spread properties are not allowed")
        raise self._error(token, "UNEXPECTED_TOKEN", f"Expected a property name but found {token.describe()}")

    def _read_object(self, path: Path, depth: int) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        seen = set()
        while True:
            token = self._next()
            if self._is_punct(token, "}"):
                return result

            key = self._read_property_key(token)
            if key in seen:
                raise self._error(
                    token,
                    "DUPLICATE_PROPERTY",
                    f"An object literal cannot have multiple properties named '{key}'"
                )
            seen.add(key)

            separator = self._peek()
            if token.kind == "ident" and (self._is_punct(separator, ",") or self._is_punct(separator, "}")):
                raise self._error(
                    token,
                    "NON_LITERAL",
                    f"Shorthand property '{key}' is not allowed; write '{key}: <value>'"
                )
            if self._is_punct(separator, "("):
                raise self._error(separator, "NON_LITERAL", f"Method '{key}' is not allowed in a lesson literal")
            self._expect_punct(":", f"after property '{key}'")

            value = self._read_value(path + (key,), depth + 1)
            if value is not UNDEFINED:
                result[key] = value

            token = self._next()
            if self._is_punct(token, "}"):
                return result
            if not self._is_punct(token, ","):
                raise self._error(
                    token,
                    "UNEXPECTED_TOKEN",
                    f"Expected ',' or '}}' after property '{key}' but found {token.describe()}"
                )

    def _read_array(self, path: Path, depth: int) -> List[Any]:
        items: List[Any] = []
        while True:
            token = self._peek()
            if self._is_punct(token, "]"):
                self._next()
                return items
            if self._is_punct(token, ","):
                raise self._error(token, "UNEXPECTED_TOKEN", "Array elements cannot be empty")

            value = self._read_value(path + (len(items),), depth + 1)
            items.append(None if value is UNDEFINED else value)

            token = self._next()
            if self._is_punct(token, "]"):
                return items
            if not self._is_punct(token, ","):
                raise self._error(
                    token,
                    "UNEXPECTED_TOKEN",
                    f"Expected ',' or ']' in array but found {token.describe()}"
                )
