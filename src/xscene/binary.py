"""Parses the binary variant of the DirectX format.

The body is a stream of little-endian WORD tokens. Some carry data: names and strings are
length-prefixed, GUIDs are 16 raw bytes, and numbers come in counted integer or float lists.
Floats are 32 or 64 bits, as declared in the header.
"""
from __future__ import annotations
from typing import Deque, Iterator, List, Optional, Tuple, Union, cast
from typing_extensions import Final
from collections import deque
from enum import IntEnum

from xscene.binformat import BinaryReader
from xscene.errors import ErrorKind, TruncatedInput, XSyntaxError
from xscene.logger import get_logger
from xscene.model import FileFormat
from xscene.parser import Item, ObjectHead, ObjectReader, ParseContext, SceneParser, Template


__all__ = ['BinToken', 'BinaryTokenStream', 'BinaryObjectReader', 'BinaryParser', 'format_guid']
LOGGER = get_logger(__name__)


class BinToken(IntEnum):
    """Token IDs in binary files."""
    NAME = 1
    STRING = 2
    INTEGER = 3
    GUID = 5
    INTEGER_LIST = 6
    FLOAT_LIST = 7

    OBRACE = 10
    CBRACE = 11
    OPAREN = 12
    CPAREN = 13
    OBRACKET = 14
    CBRACKET = 15
    OANGLE = 16
    CANGLE = 17
    DOT = 18
    COMMA = 19
    SEMICOLON = 20
    TEMPLATE = 31

    WORD = 40
    DWORD = 41
    FLOAT = 42
    DOUBLE = 43
    CHAR = 44
    UCHAR = 45
    SWORD = 46
    SDWORD = 47
    VOID = 48
    LPSTR = 49
    UNICODE = 50
    CSTRING = 51
    ARRAY = 52

    @property
    def is_primitive(self) -> bool:
        """Type keywords, used only in template declarations."""
        return self.value >= 40


SEPARATORS: Final = frozenset({
    BinToken.OPAREN, BinToken.CPAREN,
    BinToken.OBRACKET, BinToken.CBRACKET,
    BinToken.OANGLE, BinToken.CANGLE,
    BinToken.DOT, BinToken.COMMA, BinToken.SEMICOLON,
})

TokenValue = Union[None, int, str, List[int], List[float]]


def format_guid(data: bytes) -> str:
    """Format a raw 16-byte GUID in the registry style, without braces."""
    reader = BinaryReader(data)
    data1 = reader.read_u32()
    data2 = reader.read_u16()
    data3 = reader.read_u16()
    rest = reader.read_bytes(8)
    return f'{data1:08X}-{data2:04X}-{data3:04X}-{rest[:2].hex().upper()}-{rest[2:].hex().upper()}'


class BinaryTokenStream:
    """Reads tokens and their values.

    If the data ends in the middle of a token, :py:class:`~xscene.errors.TruncatedInput` is raised
    and the stream is left at the end, so later reads produce ``None``.
    """
    reader: BinaryReader
    float_size: int
    encoding: str

    def __init__(self, data: bytes, float_size: int = 32, encoding: str = 'latin-1') -> None:
        self.reader = BinaryReader(data)
        self.float_size = float_size
        self.encoding = encoding

    @property
    def pos(self) -> int:
        return self.reader.pos

    def __iter__(self) -> Iterator[Tuple[BinToken, TokenValue]]:
        while (token := self.read()) is not None:
            yield token

    def read(self) -> Optional[Tuple[BinToken, TokenValue]]:
        """Read the next token, or return ``None`` at the end of the data."""
        reader = self.reader
        if reader.at_end():
            return None
        start = reader.pos
        try:
            if not reader.can_read(2):
                raise TruncatedInput(f'Partial token at offset {start}')
            tok_id = reader.read_u16()
            try:
                token = BinToken(tok_id)
            except ValueError:
                raise XSyntaxError(f'Unknown token {tok_id} at offset {start}') from None
            return token, self._read_value(token)
        except (TruncatedInput, XSyntaxError):
            # Nothing after a bad token can be trusted.
            reader.seek(len(reader.data))
            raise

    def _read_value(self, token: BinToken) -> TokenValue:
        reader = self.reader
        if token is BinToken.NAME:
            return reader.read_lenstr(self.encoding)
        elif token is BinToken.STRING:
            value = reader.read_lenstr(self.encoding)
            # Strings are followed by their terminating separator.
            reader.read_u16()
            return value
        elif token is BinToken.INTEGER:
            return reader.read_u32()
        elif token is BinToken.GUID:
            return format_guid(reader.read_bytes(16))
        elif token is BinToken.INTEGER_LIST:
            return reader.read_array('I', reader.read_u32())
        elif token is BinToken.FLOAT_LIST:
            count = reader.read_u32()
            return reader.read_array('d' if self.float_size == 64 else 'f', count)
        return None


def read_template(stream: BinaryTokenStream) -> Template:
    """Read a template declaration. The ``TEMPLATE`` token has already been consumed."""
    name = guid = ''
    members: List[str] = []
    restrictions: Optional[Tuple[str, ...]] = ()
    words: List[str] = []
    restrict: Optional[List[str]] = None
    depth = 0
    while (tok := stream.read()) is not None:
        token, value = tok
        if token is BinToken.NAME and not name and depth == 0:
            name = str(value)
        elif token is BinToken.OBRACE:
            depth += 1
        elif token is BinToken.CBRACE:
            break
        elif token is BinToken.GUID:
            if not guid:
                guid = str(value)
        elif token is BinToken.OBRACKET and not words:
            restrict = []
        elif token is BinToken.CBRACKET and restrict is not None:
            restrictions = None if restrict == ['...'] else tuple(restrict)
            restrict = None
        elif token is BinToken.DOT and restrict is not None:
            if restrict != ['...']:
                restrict.append('...')
        elif token is BinToken.NAME and restrict is not None:
            restrict.append(str(value))
        elif token is BinToken.SEMICOLON:
            if words:
                members.append(' '.join(words))
                words = []
        elif token.is_primitive:
            words.append(token.name)
        elif token is BinToken.NAME:
            words.append(str(value))
        elif token is BinToken.INTEGER:
            words.append(f'[{value}]')
    return Template(name, guid, tuple(members), restrictions)


class BinaryObjectReader(ObjectReader):
    """Presents a binary token stream as objects and values.

    Template declarations are skipped, they are read beforehand by :py:class:`BinaryParser`.
    """
    stream: BinaryTokenStream
    _lookahead: Deque[Tuple[BinToken, TokenValue]]
    #: Values from a list token, which are read one at a time.
    _numbers: Deque[Union[int, float]]

    def __init__(self, stream: BinaryTokenStream) -> None:
        self.stream = stream
        self._lookahead = deque()
        self._numbers = deque()
        self.depth = 0

    @property
    def line_num(self) -> Optional[int]:
        """Binary files have no lines."""
        return None

    def error(self, message: str, *args: object) -> XSyntaxError:
        if args:
            message = message.format(*args)
        return XSyntaxError(f'{message} (offset {self.stream.pos})')

    def _tok(self, index: int) -> Optional[BinToken]:
        while len(self._lookahead) <= index:
            tok = self.stream.read()
            if tok is None:
                return None
            if tok[0] in SEPARATORS:
                continue
            if tok[0] is BinToken.TEMPLATE:
                read_template(self.stream)
                continue
            self._lookahead.append(tok)
        return self._lookahead[index][0]

    def _skip_guid(self, index: int) -> int:
        return index + 1 if self._tok(index) is BinToken.GUID else index

    def peek(self) -> Item:
        if self._numbers:
            return Item.NUMBER
        while True:
            tok = self._tok(0)
            if tok is None:
                return Item.EOF
            elif tok is BinToken.CBRACE:
                return Item.CLOSE
            elif tok is BinToken.STRING:
                return Item.STRING
            elif tok is BinToken.INTEGER:
                return Item.NUMBER
            elif tok is BinToken.INTEGER_LIST or tok is BinToken.FLOAT_LIST:
                values = cast(List[float], self._lookahead.popleft()[1])
                if values:
                    self._numbers.extend(values)
                    return Item.NUMBER
                continue
            elif tok is BinToken.OBRACE:
                if self._tok(1) is BinToken.NAME and self._tok(self._skip_guid(2)) is BinToken.CBRACE:
                    return Item.REFERENCE
                return Item.OPEN
            elif tok is BinToken.NAME:
                index = 2 if self._tok(1) is BinToken.NAME else 1
                if self._tok(self._skip_guid(index)) is BinToken.OBRACE:
                    return Item.OPEN
            # Stray names, GUIDs and keywords.
            self._lookahead.popleft()

    def _pop(self) -> Tuple[BinToken, TokenValue]:
        return self._lookahead.popleft()

    def read_open(self) -> ObjectHead:
        if self.peek() is not Item.OPEN:
            raise self.error('Expected an object')
        token, kind = self._pop()
        self.depth += 1
        if token is BinToken.OBRACE:
            return ObjectHead('')
        name = ''
        if self._tok(0) is BinToken.NAME:
            name = str(self._pop()[1])
        if self._tok(0) is BinToken.GUID:
            self._pop()
        self._pop()
        return ObjectHead(str(kind), name)

    def read_reference(self) -> str:
        if self.peek() is not Item.REFERENCE:
            raise self.error('Expected a {{ reference }}')
        self._pop()
        name = str(self._pop()[1])
        if self._tok(0) is BinToken.GUID:
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
            raise self.error('Expected a number, got {}', item.value)
        if self._numbers:
            return self._numbers.popleft()
        return int(self._pop()[1])  # type: ignore[arg-type]

    def read_string(self) -> str:
        item = self.peek()
        if item is not Item.STRING:
            raise self.error('Expected a string, got {}', item.value)
        return str(self._pop()[1])

    def skip_value(self) -> None:
        item = self.peek()
        if item is Item.NUMBER:
            self.read_number()
        elif item is Item.STRING:
            self._pop()


class BinaryParser(SceneParser):
    """Parses binary DirectX files.

    ``SkinWeights`` data is not read from binary files.
    """
    format = FileFormat.BINARY
    supports_skin = False

    def _stream(self, ctx: ParseContext, body: bytes) -> BinaryTokenStream:
        return BinaryTokenStream(body, ctx.header.float_size, self.options.encoding)

    def read_templates(self, ctx: ParseContext, body: bytes) -> None:
        stream = self._stream(ctx, body)
        try:
            for token, _ in stream:
                if token is BinToken.TEMPLATE:
                    template = read_template(stream)
                    if template.name:
                        ctx.add_template(template)
                    else:
                        ctx.diagnostics.warning(
                            ErrorKind.SYNTAX, f'Unnamed template before offset {stream.pos}',
                        )
        except (TruncatedInput, XSyntaxError) as exc:
            # Reported again when the objects are parsed.
            LOGGER.debug('Template scan stopped: {}', exc)

    def open_reader(self, ctx: ParseContext, body: bytes) -> BinaryObjectReader:
        return BinaryObjectReader(self._stream(ctx, body))
