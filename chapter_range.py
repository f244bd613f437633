"""
Chapter range resolution

Turns a user supplied chapter expression ("3", "3.5", "1-10", "1,2,7-9") into
the ordered list of chapter numbers a request should fetch, optionally clipped
to the chapters a title actually has.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union

from errors import InvalidRange

logger = logging.getLogger(__name__)

ChapterNumber = Union[int, float]

NUMBER_RE = re.compile(r'^\d+(?:\.\d+)?$')

SINGLE = 'single'
SPAN = 'span'
SET = 'set'


def to_chapter_number(value: Union[str, int, float]) -> ChapterNumber:
    """Normalise a chapter number: whole numbers become int, the rest float"""
    number = round(float(value), 4)
    if number.is_integer():
        return int(number)
    return number


@dataclass
class ChapterRange:
    expression: str
    kind: str
    parts: List[Tuple[ChapterNumber, ChapterNumber]] = field(default_factory=list)

    @property
    def start(self) -> ChapterNumber:
        return min(lo for lo, _ in self.parts)

    @property
    def end(self) -> ChapterNumber:
        return max(hi for _, hi in self.parts)


def _parse_number(text: str, expression: str) -> ChapterNumber:
    text = text.strip()
    if not NUMBER_RE.match(text):
        raise InvalidRange(f"Invalid chapter range format: {expression!r}")
    return to_chapter_number(text)


def _parse_part(part: str, expression: str) -> Tuple[ChapterNumber, ChapterNumber]:
    ends = part.split('-')
    if len(ends) == 1:
        number = _parse_number(ends[0], expression)
        return number, number
    if len(ends) == 2:
        start = _parse_number(ends[0], expression)
        end = _parse_number(ends[1], expression)
        if start > end:
            raise InvalidRange(f"Invalid chapter range {part.strip()!r}: start is after end")
        return start, end
    raise InvalidRange(f"Invalid chapter range format: {expression!r}")


def parse_chapter_expression(expression: str) -> ChapterRange:
    """Parse and validate a chapter expression without resolving it.

    Raises InvalidRange for empty input, non-numeric parts and inverted spans.
    """
    if expression is None or not str(expression).strip():
        raise InvalidRange("Chapter expression is empty")

    expression = str(expression).strip()
    pieces = expression.split(',')

    if len(pieces) > 1:
        parts = [_parse_part(piece, expression) for piece in pieces]
        return ChapterRange(expression, SET, parts)

    start, end = _parse_part(expression, expression)
    kind = SINGLE if '-' not in expression else SPAN
    return ChapterRange(expression, kind, [(start, end)])


def _expand(start: ChapterNumber, end: ChapterNumber, step: float) -> List[ChapterNumber]:
    count = int((end - start) / step + 1e-9)
    return [to_chapter_number(start + i * step) for i in range(count + 1)]


def _cap_width(start: ChapterNumber, end: ChapterNumber,
               max_chapters: Optional[int]) -> ChapterNumber:
    if max_chapters is None:
        return end
    return min(end, start + max_chapters - 1)


def resolve_chapter_range(expression: Union[str, ChapterRange],
                          available: Optional[Iterable[Union[str, int, float]]] = None,
                          max_chapters: Optional[int] = 10,
                          fractional: bool = False) -> List[ChapterNumber]:
    """Resolve a chapter expression to an ascending, duplicate free list.

    With ``available`` the result only holds chapters the title has: a single
    chapter or span is clamped to the available min/max, its width capped
    to ``max_chapters`` and the result truncated to ``max_chapters`` entries
    (an overlong span is narrowed, not rejected). Without it spans are
    expanded in steps of 1, or 0.5 when ``fractional`` is set.
    Comma separated sets are unioned and truncated to ``max_chapters`` entries.
    """
    chapter_range = expression if isinstance(expression, ChapterRange) else parse_chapter_expression(expression)
    step = 0.5 if fractional else 1

    known = None
    if available is not None:
        known = sorted({to_chapter_number(c) for c in available})
        if not known:
            logger.info(f"No available chapters to resolve {chapter_range.expression!r} against")
            return []

    if chapter_range.kind == SET:
        wanted = set()
        for start, end in chapter_range.parts:
            if known is not None:
                wanted.update(c for c in known if start <= c <= end)
            else:
                wanted.update(_expand(start, end, step))
        chapters = sorted(wanted)
        if max_chapters is not None:
            chapters = chapters[:max_chapters]
        return chapters

    start, end = chapter_range.parts[0]

    if known is None:
        end = _cap_width(start, end, max_chapters)
        chapters = _expand(start, end, step)
    else:
        start = max(start, known[0])
        end = min(end, known[-1])
        end = _cap_width(start, end, max_chapters)
        chapters = [c for c in known if start <= c <= end]

    # half steps fit twice as many chapters into the same width
    if max_chapters is not None:
        chapters = chapters[:max_chapters]
    logger.debug(f"Resolved {chapter_range.expression!r} to {chapters}")
    return chapters
