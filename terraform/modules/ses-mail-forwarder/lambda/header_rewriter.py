"""
Header rewriting for forwarded messages.

The raw message is split once into a header segment and a body segment.
The header segment is scanned line by line into field blocks, where a block
is a field-start line followed by its folded continuation lines (lines that
begin with a space or tab). The rewrite rules run as passes over these
blocks and the body is never touched.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

FOLD_CHARS = (' ', '\t')
REMOVED_FIELDS = ('return-path', 'sender', 'message-id')
DKIM_SIGNATURE = 'dkim-signature'


@dataclass
class HeaderField:
    """One header field and its folded continuation lines, terminators kept."""
    name: Optional[str]
    lines: List[str] = field(default_factory=list)

    def is_named(self, name: str) -> bool:
        return self.name is not None and self.name.lower() == name

    @property
    def value(self) -> str:
        """Raw value: text after the colon (one leading blank dropped) plus continuations."""
        first = self.lines[0]
        rest = first[first.index(':') + 1:]
        if rest[:1] in FOLD_CHARS:
            rest = rest[1:]
        return rest + ''.join(self.lines[1:])

    @property
    def unfolded_value(self) -> str:
        return ''.join(line.rstrip('\r\n') for line in split_lines(self.value))

    @property
    def line_ending(self) -> str:
        last = self.lines[-1]
        if last.endswith('\r\n'):
            return '\r\n'
        if last.endswith('\n'):
            return '\n'
        return ''

    def render(self) -> str:
        return ''.join(self.lines)


def split_lines(text: str) -> List[str]:
    """Split on LF only, keeping terminators, so CR and other bytes pass through."""
    lines = []
    start = 0
    while start < len(text):
        end = text.find('\n', start)
        if end == -1:
            lines.append(text[start:])
            break
        lines.append(text[start:end + 1])
        start = end + 1
    return lines


def is_blank(line: str) -> bool:
    """Only CR/LF, spaces and tabs; other whitespace such as FF or NBSP is content."""
    return line.rstrip('\r\n').strip(''.join(FOLD_CHARS)) == ''


def split_message(raw: str) -> Tuple[str, str]:
    """
    Split a raw message into (header, body).

    The header is the maximal run of non-blank lines from the start. The
    body starts at the first blank line and keeps it. Without a blank line
    the whole message is header and the body is empty.
    """
    lines = split_lines(raw)
    for index, line in enumerate(lines):
        if is_blank(line):
            return ''.join(lines[:index]), ''.join(lines[index:])
    return raw, ''


def parse_header(header: str) -> List[HeaderField]:
    """Group header lines into field blocks."""
    fields: List[HeaderField] = []
    for line in split_lines(header):
        if line.startswith(FOLD_CHARS) and fields:
            fields[-1].lines.append(line)
        elif ':' in line and not line.startswith(FOLD_CHARS):
            fields.append(HeaderField(name=line[:line.index(':')], lines=[line]))
        else:
            # Stray line with no field name; carried through untouched
            fields.append(HeaderField(name=None, lines=[line]))
    return fields


def render_header(fields: List[HeaderField]) -> str:
    return ''.join(f.render() for f in fields)


def detect_line_ending(header: str) -> str:
    first_end = header.find('\n')
    if first_end > 0 and header[first_end - 1] == '\r':
        return '\r\n'
    return '\n'


def strip_angle_address(value: str) -> str:
    """Remove the first '<' through the last '>' and trim what remains."""
    start = value.find('<')
    end = value.rfind('>')
    if start != -1 and end > start:
        value = value[:start] + value[end + 1:]
    return value.strip()


def add_reply_to(fields: List[HeaderField], line_ending: str) -> Optional[str]:
    """
    Append a Reply-To field copied from the first From field.

    Nothing is added when a Reply-To field already exists.

    Returns:
        str: The value copied into Reply-To, or None when nothing was added
    """
    if any(f.is_named('reply-to') for f in fields):
        return None

    from_field = next((f for f in fields if f.is_named('from')), None)
    if from_field is None or not from_field.value.strip():
        return None

    # The last header line may be unterminated when the message has no body
    if not fields[-1].line_ending:
        fields[-1].lines[-1] += line_ending

    value = from_field.value
    reply_to = HeaderField(name='Reply-To', lines=split_lines(f"Reply-To: {value}"))
    if not reply_to.line_ending:
        reply_to.lines[-1] += line_ending
    fields.append(reply_to)
    return value.strip()


def rewrite_from(fields: List[HeaderField], noreply_address: str) -> None:
    for f in fields:
        if f.is_named('from'):
            name = strip_angle_address(f.unfolded_value)
            display = f"{name} <{noreply_address}>" if name else f"<{noreply_address}>"
            f.lines = [f"From: {display}{f.line_ending}"]


def rewrite_to(fields: List[HeaderField], to_email: str) -> None:
    for f in fields:
        if f.is_named('to'):
            f.lines = [f"To: {to_email}{f.line_ending}"]


def remove_fields(fields: List[HeaderField], names) -> List[HeaderField]:
    return [f for f in fields if not any(f.is_named(name) for name in names)]


@dataclass
class RewriteResult:
    """Rewritten header plus what happened to Reply-To."""
    header: str
    reply_to: Optional[str] = None
    had_reply_to: bool = False


def rewrite_header(header: str, noreply_address: str,
                   to_email: Optional[str] = None) -> RewriteResult:
    """
    Apply the forwarding rewrite rules to a header segment.

    Rules, in order:
    1. Add Reply-To from the From value when the message has no Reply-To
    2. Replace every From address with the noreply address, keeping the name
    3. Replace every To value with to_email, when one is given
    4. Drop Return-Path, Sender and Message-ID
    5. Drop DKIM-Signature blocks including their continuation lines

    Args:
        header: Header segment as produced by split_message()
        noreply_address: Address placed in every rewritten From field
        to_email: Optional fixed To address

    Returns:
        RewriteResult: Rewritten header and the Reply-To value added, if any
    """
    fields = parse_header(header)
    line_ending = detect_line_ending(header)

    had_reply_to = any(f.is_named('reply-to') for f in fields)
    reply_to = add_reply_to(fields, line_ending)
    rewrite_from(fields, noreply_address)
    if to_email:
        rewrite_to(fields, to_email)
    fields = remove_fields(fields, REMOVED_FIELDS)
    fields = remove_fields(fields, (DKIM_SIGNATURE,))

    return RewriteResult(header=render_header(fields), reply_to=reply_to, had_reply_to=had_reply_to)
