"""Parses the text variant of the DirectX format.

The :py:class:`Tokenizer` splits text into tokens, tracking the line number as it goes.
One token of lookahead is supported through :py:meth:`Tokenizer.peek()` and
:py:meth:`Tokenizer.push_back()`, and ``raise tokenizer.error(...)`` produces an
:py:class:`~xscene.errors.XSyntaxError` for the current line.

:py:class:`TextReader` then groups tokens into the items the shared object grammar consumes,
and :py:class:`TextParser` ties it together.
"""
from __future__ import annotations
from typing import Deque, Iterator, List, Optional, Tuple
from typing_extensions import Final, Self
from collections import deque
from enum import Enum
import re

from xscene.errors import ErrorKind, XSyntaxError
from xscene.logger import get_logger
from xscene.model import FileFormat
from xscene.parser import Item, ObjectHead, ObjectReader, ParseContext, SceneParser, Template


__all__ = ['Token', 'Tokenizer', 'TextReader', 'TextParser', 'extract_templates']
LOGGER = get_logger(__name__)


class Token(Enum):
    """A token type produced by the tokenizer."""
    EOF = 0  #: Produced indefinitely after the end of the file is reached.
    STRING = 1  #: Quoted text.
    WORD = 2  #: Unquoted identifiers and numbers.
    GUID = 3  #: Angle-bracketed ``<GUID>``.

    BRACE_OPEN = 6  #: A ``{`` character.
    BRACE_CLOSE = 7  #: A ``}`` character.
    BRACK_OPEN = 8  #: A ``[`` character.
    BRACK_CLOSE = 9  #: A ``]`` character.
    SEMICOLON = 10  #: A ``;`` character.
    COMMA = 11  #: A ``,`` character.

    @property
    def has_value(self) -> bool:
        """If true, this type has an associated value."""
        return self.value in (1, 2, 3)

    @property
    def is_separator(self) -> bool:
        """Separators only delimit values, and carry no meaning of their own."""
        return self.value in (8, 9, 10, 11)


_OPERATORS: Final = {
    '{': Token.BRACE_OPEN,
    '}': Token.BRACE_CLOSE,
    '[': Token.BRACK_OPEN,
    ']': Token.BRACK_CLOSE,
    ';': Token.SEMICOLON,
    ',': Token.COMMA,
}
_OPERATOR_VALS: Final = {tok: char for char, tok in _OPERATORS.items()}
_OPERATOR_VALS[Token.EOF] = ''

#: Characters not allowed in unquoted words.
BARE_DISALLOWED: Final = frozenset('"{}[];,<>\r\n\t /#')


class Tokenizer:
    """Splits the text of a DirectX file into tokens.

    Comments (``//``, ``#`` and ``/* */``) are skipped.
    """
    filename: Optional[str]
    line_num: int
    """The line number of the last token read."""
    _text: str
    _pos: int
    _pushback: List[Tuple[Token, str, int]]

    def __init__(self, text: str, filename: Optional[str] = None, line_num: int = 1) -> None:
        if isinstance(text, bytes):
            raise TypeError('Cannot parse binary data! Decode to the desired encoding first.')
        self._text = text
        self._pos = 0
        self._pushback = []
        self.filename = filename
        self.line_num = line_num

    def __reduce__(self) -> None:
        """Disallow pickling Tokenizers."""
        raise TypeError('Cannot pickle Tokenizers!')

    def error(self, message: 'str | Token', *args: object) -> XSyntaxError:
        """Produce a syntax error exception for the current line.

        The message can be a :py:class:`Token` with the associated string value to produce a
        wrong token error, or a string which will be {}-formatted with the positional args if
        they are present.
        """
        if isinstance(message, Token):
            tok_val = '' if not args else args[0]
            if message is Token.STRING:
                message = f'Unexpected string = "{tok_val}"!'
            elif message is Token.WORD:
                message = f'Unexpected value "{tok_val}"!'
            elif message is Token.GUID:
                message = f'Unexpected GUID <{tok_val}>!'
            elif message is Token.EOF:
                message = 'File ended unexpectedly!'
            else:
                message = f'Unexpected "{_OPERATOR_VALS[message]}" character!'
        elif args:
            message = message.format(*args)
        return XSyntaxError(message, self.line_num, self.filename)

    def __call__(self) -> Tuple[Token, str]:
        """Compute and fetch the next token."""
        if self._pushback:
            tok, value, self.line_num = self._pushback.pop()
            return tok, value
        return self._get_token()

    def __iter__(self) -> Self:
        """Tokenizers are their own iterator."""
        return self

    def __next__(self) -> Tuple[Token, str]:
        """Iterate to produce a token, stopping at EOF."""
        tok_and_val = self()
        if tok_and_val[0] is Token.EOF:
            raise StopIteration
        return tok_and_val

    def push_back(self, tok: Token, value: str = '') -> None:
        """Return a token, so it will be reproduced when called again."""
        if not isinstance(tok, Token):
            raise ValueError(repr(tok) + ' is not a Token!')
        if not tok.has_value:
            value = _OPERATOR_VALS[tok]
        self._pushback.append((tok, value, self.line_num))

    def peek(self) -> Tuple[Token, str]:
        """Peek at the next token, without removing it from the stream."""
        tok, value = self()
        self.push_back(tok, value)
        return tok, value

    def expect(self, token: Token) -> str:
        """Consume the next token, which should be the given type.

        If it is not, this raises an error.
        """
        next_token, value = self()
        if next_token is not token:
            raise self.error('Expected {}, but got {}!', token.name, next_token.name)
        return value

    def _get_token(self) -> Tuple[Token, str]:
        """Return the next token, value pair."""
        text = self._text
        size = len(text)
        while True:
            if self._pos >= size:
                return Token.EOF, ''
            char = text[self._pos]
            self._pos += 1
            try:
                return _OPERATORS[char], char
            except KeyError:
                pass
            if char == '\n':
                self.line_num += 1
            elif char in ' \t\r\ufeff':
                continue
            elif char == '#':
                self._skip_line()
            elif char == '/':
                self._handle_comment()
            elif char == '"':
                return self._handle_string()
            elif char == '<':
                end = text.find('>', self._pos)
                if end == -1:
                    raise self.error('Unterminated <GUID>!')
                guid = text[self._pos:end].strip()
                self.line_num += text.count('\n', self._pos, end)
                self._pos = end + 1
                return Token.GUID, guid
            elif char == '>':
                raise self.error('No open < to close with ">"!')
            else:
                start = self._pos - 1
                while self._pos < size and text[self._pos] not in BARE_DISALLOWED:
                    self._pos += 1
                return Token.WORD, text[start:self._pos]

    def _skip_line(self) -> None:
        end = self._text.find('\n', self._pos)
        # Leave the newline, so it is counted.
        self._pos = len(self._text) if end == -1 else end

    def _handle_comment(self) -> None:
        """Handle a comment. The last character read was the initial slash."""
        next_char = self._text[self._pos:self._pos + 1]
        if next_char == '/':
            self._skip_line()
        elif next_char == '*':
            start_line = self.line_num
            end = self._text.find('*/', self._pos + 1)
            if end == -1:
                raise self.error('Unclosed /* comment (starting on line {})!', start_line)
            self.line_num += self._text.count('\n', self._pos, end)
            self._pos = end + 2
        else:
            raise self.error('Single slash found, instead of two for a comment (// or /* */)!')

    def _handle_string(self) -> Tuple[Token, str]:
        """Read a quoted string. The opening quote was already consumed."""
        end = self._text.find('"', self._pos)
        if end == -1:
            raise self.error('Unterminated string!')
        value = self._text[self._pos:end]
        self.line_num += value.count('\n')
        self._pos = end + 1
        return Token.STRING, value


def _is_number(value: str) -> bool:
    try:
        float(value)
    except ValueError:
        return False
    return True


class TextReader(ObjectReader):
    """Groups tokens into objects, references and values.

    Non-numeric bare words in data are skipped, the object grammar relies on the declared
    counts rather than their presence.
    """
    tokenizer: Tokenizer
    _lookahead: Deque[Tuple[Token, str, int]]

    def __init__(self, tokenizer: Tokenizer) -> None:
        self.tokenizer = tokenizer
        self._lookahead = deque()
        self.depth = 0

    @property
    def line_num(self) -> Optional[int]:
        if self._lookahead:
            return self._lookahead[0][2]
        return self.tokenizer.line_num

    def _fill(self, count: int) -> bool:
        """Ensure this many meaningful tokens are buffered. Returns False if EOF was reached."""
        while len(self._lookahead) < count:
            tok, value = self.tokenizer()
            if tok.is_separator:
                continue
            self._lookahead.append((tok, value, self.tokenizer.line_num))
            if tok is Token.EOF:
                return False
        return True

    def _tok(self, index: int) -> Token:
        if not self._fill(index + 1):
            if index >= len(self._lookahead):
                return Token.EOF
        return self._lookahead[index][0]

    def _pop(self) -> Tuple[Token, str, int]:
        self._fill(1)
        tok = self._lookahead[0]
        if tok[0] is not Token.EOF:
            self._lookahead.popleft()
        return tok

    def _skip_guid(self, index: int) -> int:
        return index + 1 if self._tok(index) is Token.GUID else index

    def peek(self) -> Item:
        while True:
            tok = self._tok(0)
            if tok is Token.EOF:
                return Item.EOF
            elif tok is Token.BRACE_CLOSE:
                return Item.CLOSE
            elif tok is Token.STRING:
                return Item.STRING
            elif tok is Token.BRACE_OPEN:
                if self._tok(1) is Token.WORD and self._tok(self._skip_guid(2)) is Token.BRACE_CLOSE:
                    return Item.REFERENCE
                return Item.OPEN
            elif tok is Token.WORD:
                if _is_number(self._lookahead[0][1]):
                    return Item.NUMBER
                # Kind [Name] [<GUID>] {
                index = 2 if self._tok(1) is Token.WORD else 1
                if self._tok(self._skip_guid(index)) is Token.BRACE_OPEN:
                    return Item.OPEN
            # Stray words or GUIDs in data.
            self._pop()

    def read_open(self) -> ObjectHead:
        if self.peek() is not Item.OPEN:
            raise self.error('Expected an object, got "{}"', self._lookahead[0][1])
        tok, kind, line = self._pop()
        name = ''
        if tok is Token.BRACE_OPEN:
            # An anonymous block.
            self.depth += 1
            return ObjectHead('', '', line)
        if self._tok(0) is Token.WORD:
            name = self._pop()[1]
        if self._tok(0) is Token.GUID:
            self._pop()
        self._pop()  # The brace.
        self.depth += 1
        return ObjectHead(kind, name, line)

    def read_reference(self) -> str:
        if self.peek() is not Item.REFERENCE:
            raise self.error('Expected a {{ reference }}')
        self._pop()
        name = self._pop()[1]
        if self._tok(0) is Token.GUID:
            self._pop()
        self._pop()
        return name

    def read_close(self) -> None:
        if self.peek() is not Item.CLOSE:
            raise self.error('Expected "}"')
        self._pop()
        self.depth -= 1

    def read_number(self) -> float:
        item = self.peek()
        if item is not Item.NUMBER:
            raise self.error('Expected a number, got {}', _describe(item, self._lookahead))
        return float(self._pop()[1])

    def read_string(self) -> str:
        item = self.peek()
        if item is not Item.STRING:
            raise self.error('Expected a string, got {}', _describe(item, self._lookahead))
        return self._pop()[1]

    def skip_value(self) -> None:
        if self.peek() in (Item.NUMBER, Item.STRING):
            self._pop()


def _describe(item: Item, lookahead: Deque[Tuple[Token, str, int]]) -> str:
    if item is Item.EOF:
        return 'end of file'
    elif item is Item.CLOSE:
        return '"}"'
    elif lookahead:
        return f'{item.value} "{lookahead[0][1]}"'
    return item.value


TEMPLATE_RE: Final = re.compile(
    r'^[ \t]*template\s+(\w+)\s*\{([^{}]*)\}',
    re.MULTILINE,
)
_GUID_RE: Final = re.compile(r'<\s*([0-9A-Fa-f-]+)\s*>')
_RESTRICT_RE: Final = re.compile(r'\[([^\]]*)\]\s*$')


def extract_templates(text: str) -> Iterator[Template]:
    """Find every ``template Name { ... }`` declaration."""
    for match in TEMPLATE_RE.finditer(text):
        name, body = match.groups()
        guid_match = _GUID_RE.search(body)
        guid = guid_match.group(1).upper() if guid_match else ''
        if guid_match:
            body = body[guid_match.end():]
        restrictions: Optional[Tuple[str, ...]] = ()
        restrict = _RESTRICT_RE.search(body.strip())
        if restrict is not None:
            body = body.strip()[:restrict.start()]
            options = restrict.group(1).strip()
            if options == '...':
                restrictions = None
            else:
                restrictions = tuple(opt.split()[0] for opt in options.split(',') if opt.strip())
        members = tuple(
            ' '.join(member.split())
            for member in body.split(';')
            if member.strip()
        )
        yield Template(name, guid, members, restrictions)


class TextParser(SceneParser):
    """Parses text DirectX files."""
    format = FileFormat.TEXT

    def decode(self, body: bytes) -> str:
        return body.decode(self.options.encoding, errors='replace')

    def read_templates(self, ctx: ParseContext, body: bytes) -> None:
        text = self.decode(body)
        count = 0
        for template in extract_templates(text):
            ctx.add_template(template)
            count += 1
        declared = len(re.findall(r'^[ \t]*template\b', text, re.MULTILINE))
        if declared > count:
            ctx.diagnostics.warning(
                ErrorKind.SYNTAX,
                f'{declared - count} template declarations could not be read',
            )

    def open_reader(self, ctx: ParseContext, body: bytes) -> TextReader:
        return TextReader(Tokenizer(self.decode(body), self.options.filename))
