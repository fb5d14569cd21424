"""WhatsApp chat export parser.

Exports are plain text where each message starts with a locale-dependent
timestamp, e.g. ``1/15/23, 10:30 AM - John: Hello`` (US) or
``15.01.23, 14:30 - Hans: Guten Tag`` (German). Lines that do not start with
a timestamp continue the previous message.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from pathlib import Path

from src.ingestion.models import MediaType, Message, MessageType, ParseCounts, ParseResult
from src.pipeline_config import ParserOptions


class DateFormat(StrEnum):
    """Supported export timestamp layouts."""

    US = "us"
    EU = "eu"
    ISO = "iso"
    DE = "de"
    BR = "br"


# Tried in this order unless a format already matched earlier in the file.
DATE_PATTERNS: dict[DateFormat, re.Pattern[str]] = {
    # 1/15/23, 10:30 AM
    DateFormat.US: re.compile(
        r"^(\d{1,2})/(\d{1,2})/(\d{2,4}),?\s+(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(AM|PM)",
        re.IGNORECASE,
    ),
    # 15/01/2023, 10:30
    DateFormat.EU: re.compile(
        r"^(\d{1,2})/(\d{1,2})/(\d{2,4}),?\s+(\d{1,2}):(\d{2})(?::(\d{2}))?(?!\s*[AP]M)",
        re.IGNORECASE,
    ),
    # 2023-01-15, 10:30
    DateFormat.ISO: re.compile(r"^(\d{4})-(\d{2})-(\d{2}),?\s+(\d{1,2}):(\d{2})(?::(\d{2}))?"),
    # 15.01.23, 10:30
    DateFormat.DE: re.compile(r"^(\d{1,2})\.(\d{1,2})\.(\d{2,4}),?\s+(\d{1,2}):(\d{2})(?::(\d{2}))?"),
    # 15/01/2023 10:30
    DateFormat.BR: re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{2,4})\s+(\d{1,2}):(\d{2})(?::(\d{2}))?"),
}

_SEPARATOR_RE = re.compile(r"^\s*[-:\]]\s*")

# Sender names longer than this are not treated as senders.
MAX_SENDER_COLON_INDEX = 50

MIN_YEAR = 2009
MAX_YEAR = 2100

# Substring -> media subtype. ``None`` means generic media.
MEDIA_PLACEHOLDERS: dict[str, MediaType | None] = {
    # English
    "<Media omitted>": None,
    "image omitted": MediaType.IMAGE,
    "video omitted": MediaType.VIDEO,
    "audio omitted": MediaType.AUDIO,
    "document omitted": MediaType.DOCUMENT,
    "sticker omitted": MediaType.STICKER,
    "GIF omitted": MediaType.IMAGE,
    "Contact card omitted": MediaType.CONTACT,
    "Location:": MediaType.LOCATION,
    # French
    "<Téléchargement indisponible>": None,
    "<Téléchargement du fichier média impossible>": None,
    "image téléchargement indisponible": MediaType.IMAGE,
    # German
    "<Medien weggelassen>": None,
    "Bild weggelassen": MediaType.IMAGE,
    # Spanish
    "<Multimedia omitido>": None,
    "imagen omitida": MediaType.IMAGE,
    # Portuguese
    "<Mídia oculta>": None,
    "imagem ocultada": MediaType.IMAGE,
}

SYSTEM_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"created group", re.IGNORECASE),
    re.compile(r"changed the subject", re.IGNORECASE),
    re.compile(r"changed this group", re.IGNORECASE),
    re.compile(r"added you", re.IGNORECASE),
    re.compile(r"removed you", re.IGNORECASE),
    re.compile(r"left$", re.IGNORECASE),
    re.compile(r"joined using", re.IGNORECASE),
    re.compile(r"changed the group", re.IGNORECASE),
    re.compile(r"messages and calls are end-to-end encrypted", re.IGNORECASE),
    re.compile(r"security code changed", re.IGNORECASE),
    re.compile(r"vous a ajouté", re.IGNORECASE),
    re.compile(r"a quitté", re.IGNORECASE),
    re.compile(r"a créé le groupe", re.IGNORECASE),
]

DELETED_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"this message was deleted", re.IGNORECASE),
    re.compile(r"you deleted this message", re.IGNORECASE),
    re.compile(r"ce message a été supprimé", re.IGNORECASE),
    re.compile(r"diese nachricht wurde gelöscht", re.IGNORECASE),
    re.compile(r"este mensaje fue eliminado", re.IGNORECASE),
    re.compile(r"esta mensagem foi apagada", re.IGNORECASE),
]

# e.g. "IMG-20230115-WA0001.jpg (file attached)"
_ATTACHMENT_RE = re.compile(
    r"\.(jpg|jpeg|png|gif|webp|mp4|mov|mp3|opus|ogg|m4a|pdf|doc|docx|xls|xlsx)\s*\(file attached\)",
    re.IGNORECASE,
)

_ATTACHMENT_SUBTYPES: list[tuple[re.Pattern[str], MediaType]] = [
    (re.compile(r"\.(jpg|jpeg|png|gif|webp)", re.IGNORECASE), MediaType.IMAGE),
    (re.compile(r"\.(mp4|mov|avi)", re.IGNORECASE), MediaType.VIDEO),
    (re.compile(r"\.(mp3|opus|ogg|m4a)", re.IGNORECASE), MediaType.AUDIO),
    (re.compile(r"\.(pdf|doc|docx|xls|xlsx)", re.IGNORECASE), MediaType.DOCUMENT),
]


def normalize_year(year: int) -> int:
    """Expand a two-digit year: ``<50`` is 20xx, otherwise 19xx."""
    if year < 100:
        return 1900 + year if year >= 50 else 2000 + year
    return year


def _timestamp_from_match(match: re.Match[str], fmt: DateFormat) -> datetime | None:
    """Build a datetime from a pattern match, or ``None`` if it is not a valid date."""
    groups = match.groups()
    second = int(groups[5]) if groups[5] else 0
    hour = int(groups[3])
    minute = int(groups[4])

    if fmt is DateFormat.US:
        month, day, year = int(groups[0]), int(groups[1]), normalize_year(int(groups[2]))
        meridiem = groups[6].upper()
        if meridiem == "PM" and hour != 12:
            hour += 12
        elif meridiem == "AM" and hour == 12:
            hour = 0
    elif fmt is DateFormat.ISO:
        year, month, day = int(groups[0]), int(groups[1]), int(groups[2])
    else:
        # EU, DE and BR are all day-first
        day, month, year = int(groups[0]), int(groups[1]), normalize_year(int(groups[2]))

    if not MIN_YEAR <= year <= MAX_YEAR:
        return None
    try:
        return datetime(year, month, day, hour, minute, second)
    except ValueError:
        return None


@dataclass
class ParsedLine:
    """The header of a new message: timestamp, sender and first content line."""

    timestamp: datetime
    sender: str
    content: str
    format: DateFormat


def parse_message_line(line: str, preferred: DateFormat | None = None) -> ParsedLine | None:
    """Try to read *line* as the first line of a new message.

    The *preferred* format is tried first so that structurally similar
    layouts (EU vs BR) resolve the same way throughout one file.
    """
    candidate = line.lstrip("\u200e\ufeff")
    if candidate.startswith("["):
        candidate = candidate[1:]

    order = list(DATE_PATTERNS)
    if preferred is not None:
        order.remove(preferred)
        order.insert(0, preferred)

    for fmt in order:
        match = DATE_PATTERNS[fmt].match(candidate)
        if not match:
            continue
        timestamp = _timestamp_from_match(match, fmt)
        if timestamp is None:
            continue

        remainder = candidate[match.end() :]
        separator = _SEPARATOR_RE.match(remainder)
        if not separator:
            continue
        body = remainder[separator.end() :]

        colon = body.find(":")
        if 0 < colon < MAX_SENDER_COLON_INDEX:
            return ParsedLine(
                timestamp=timestamp,
                sender=body[:colon].strip(),
                content=body[colon + 1 :].strip(),
                format=fmt,
            )
        return ParsedLine(timestamp=timestamp, sender="", content=body.strip(), format=fmt)

    return None


def _attachment_media_type(content: str) -> MediaType | None:
    for pattern, media_type in _ATTACHMENT_SUBTYPES:
        if pattern.search(content):
            return media_type
    return None


def classify_message(sender: str, content: str) -> tuple[MessageType, MediaType | None]:
    """Classify a message body.

    Priority: deleted > system (or no sender) > media > text.
    """
    if any(p.search(content) for p in DELETED_PATTERNS):
        return MessageType.DELETED, None

    if not sender or any(p.search(content) for p in SYSTEM_PATTERNS):
        return MessageType.SYSTEM, None

    lowered = content.lower()
    for placeholder, media_type in MEDIA_PLACEHOLDERS.items():
        if placeholder.lower() in lowered:
            return MessageType.MEDIA, media_type

    if _ATTACHMENT_RE.search(content):
        return MessageType.MEDIA, _attachment_media_type(content)

    return MessageType.TEXT, None


class ParserState(StrEnum):
    """States of the export parser's message accumulator."""

    IDLE = "idle"
    ACCUMULATING = "accumulating"


@dataclass
class _OpenMessage:
    timestamp: datetime
    sender: str
    content: str
    raw_line: str

    def finalize(self) -> Message:
        content = self.content.strip()
        message_type, media_type = classify_message(self.sender, content)
        return Message(
            id=str(uuid.uuid4()),
            timestamp=self.timestamp,
            sender=self.sender,
            content=content,
            type=message_type,
            media_type=media_type,
            raw_line=self.raw_line,
        )


class ExportParser:
    """Line-driven state machine that turns export lines into messages.

    ``IDLE``: nothing open; continuation lines are dropped.
    ``ACCUMULATING``: one message is open; continuation lines are appended
    and the next timestamped line finalizes it.
    """

    def __init__(self) -> None:
        self._open: _OpenMessage | None = None
        self._format: DateFormat | None = None

    @property
    def state(self) -> ParserState:
        return ParserState.IDLE if self._open is None else ParserState.ACCUMULATING

    @property
    def detected_format(self) -> DateFormat | None:
        return self._format

    def feed(self, line: str) -> Message | None:
        """Consume one line; return the message it closed, if any."""
        if not line.strip():
            return None

        parsed = parse_message_line(line, self._format)
        if parsed is None:
            if self._open is not None:
                self._open.content += "\n" + line
                self._open.raw_line += "\n" + line
            return None

        closed = self.finish()
        self._open = _OpenMessage(
            timestamp=parsed.timestamp,
            sender=parsed.sender,
            content=parsed.content,
            raw_line=line,
        )
        self._format = parsed.format
        return closed

    def finish(self) -> Message | None:
        """Finalize and return the open message, returning to ``IDLE``."""
        if self._open is None:
            return None
        message = self._open.finalize()
        self._open = None
        return message


def _keep(message: Message, options: ParserOptions) -> bool:
    if message.type is MessageType.SYSTEM:
        return options.include_system_messages
    if message.type is MessageType.DELETED:
        return options.include_deleted_messages
    return True


def parse_export(content: str, options: ParserOptions | None = None) -> ParseResult:
    """Parse the text of a WhatsApp export.

    Never raises on malformed input: unrecognized lines are appended to the
    open message, or dropped when no message is open yet.

    Args:
        content: Raw export text.
        options: Which system and deleted messages to keep.

    Returns:
        Messages in file order plus participants, date range and counts.
    """
    options = options or ParserOptions()
    parser = ExportParser()
    messages: list[Message] = []

    def emit(message: Message | None) -> None:
        if message is not None and _keep(message, options):
            messages.append(message)

    for line in re.split(r"\r?\n", content):
        emit(parser.feed(line))
    emit(parser.finish())

    participants = sorted(
        {m.sender for m in messages if m.sender and m.type is not MessageType.SYSTEM}
    )
    counts = ParseCounts(
        total=len(messages),
        text=sum(1 for m in messages if m.type is MessageType.TEXT),
        media=sum(1 for m in messages if m.type is MessageType.MEDIA),
        system=sum(1 for m in messages if m.type is MessageType.SYSTEM),
        deleted=sum(1 for m in messages if m.type is MessageType.DELETED),
    )

    return ParseResult(
        messages=messages,
        participants=participants,
        start_date=messages[0].timestamp if messages else None,
        end_date=messages[-1].timestamp if messages else None,
        counts=counts,
    )


def parse_export_file(path: str | Path, options: ParserOptions | None = None) -> ParseResult:
    """Read a UTF-8 export file and parse it."""
    return parse_export(Path(path).read_text(encoding="utf-8"), options)
