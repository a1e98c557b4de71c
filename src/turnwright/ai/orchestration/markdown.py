"""Markdown helpers used to split streamed assistant text into stable chunks."""

from __future__ import annotations

__all__ = [
    "CODE_FENCE",
    "is_index_inside_code_block",
    "find_enclosing_code_block_start",
    "find_last_safe_split_point",
]

CODE_FENCE = "```"
_PARAGRAPH_BREAK = "\n\n"


def is_index_inside_code_block(text: str, index: int) -> bool:
    """Return True when ``index`` falls inside an open ``` fence.

    Fences before ``index`` are counted; an odd count means a block was
    opened and not yet closed.
    """

    fences = 0
    cursor = 0
    while cursor < index:
        found = text.find(CODE_FENCE, cursor)
        if found == -1 or found >= index:
            break
        fences += 1
        cursor = found + len(CODE_FENCE)
    return fences % 2 == 1


def find_enclosing_code_block_start(text: str, index: int) -> int:
    """Return the offset of the fence opening the block around ``index``, or -1."""

    if not is_index_inside_code_block(text, index):
        return -1
    cursor = index
    while cursor > 0:
        start = text.rfind(CODE_FENCE, 0, cursor)
        if start == -1:
            break
        if not is_index_inside_code_block(text, start):
            return start
        cursor = start
    return -1


def find_last_safe_split_point(text: str) -> int:
    """Return the offset at which ``text`` can be split without breaking markdown.

    When the end of ``text`` sits inside an unterminated code fence the split
    lands on that fence, keeping the whole block in the open chunk. Otherwise
    the split lands just after the last paragraph break outside any fence.
    ``len(text)`` means there is no safe split.
    """

    enclosing = find_enclosing_code_block_start(text, len(text))
    if enclosing != -1:
        return enclosing

    search_end = len(text)
    while search_end >= 0:
        position = text.rfind(_PARAGRAPH_BREAK, 0, search_end)
        if position == -1:
            break
        split = position + len(_PARAGRAPH_BREAK)
        if not is_index_inside_code_block(text, position):
            return split
        search_end = position
    return len(text)
