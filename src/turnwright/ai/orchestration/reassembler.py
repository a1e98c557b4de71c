"""Reassemble streamed assistant text into committed and pending entries.

Backends may stream each fragment either as a delta (only the new text) or as
a snapshot of the whole message so far. :func:`apply_fragment` reconciles
both into one growing buffer; :class:`ContentReassembler` then splits that
buffer at safe markdown boundaries so finished paragraphs become committed
transcript entries while the tail stays pending.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from .markdown import find_last_safe_split_point
from .transcript import EntryType, Transcript, TranscriptEntry

LOGGER = logging.getLogger(__name__)

__all__ = ["FragmentMode", "apply_fragment", "ContentReassembler"]

_ASSISTANT_TYPES = frozenset({EntryType.ASSISTANT, EntryType.ASSISTANT_CONTENT})


class FragmentMode(str, Enum):
    """How a backend streams content fragments."""

    AUTO = "auto"
    DELTA = "delta"
    SNAPSHOT = "snapshot"


def apply_fragment(buffer: str, fragment: str, mode: FragmentMode = FragmentMode.AUTO) -> str:
    """Return the buffer after applying ``fragment``.

    In ``auto`` mode a fragment that starts with the whole buffer is treated
    as a snapshot and replaces it; anything else is appended as a delta.
    """

    if not fragment:
        return buffer
    if mode is FragmentMode.DELTA:
        return buffer + fragment
    if mode is FragmentMode.SNAPSHOT:
        return fragment
    if fragment.startswith(buffer):
        return fragment
    return buffer + fragment


class ContentReassembler:
    """Turn content fragments of one assistant message into transcript entries.

    The reassembler owns the message buffer. The part of the message already
    committed to the transcript is tracked separately from the open tail so
    snapshot detection always compares against the whole message.
    """

    def __init__(
        self,
        transcript: Transcript,
        *,
        mode: FragmentMode = FragmentMode.AUTO,
        splitter: Callable[[str], int] = find_last_safe_split_point,
    ) -> None:
        self._transcript = transcript
        self._mode = FragmentMode(mode)
        self._splitter = splitter
        self._committed = ""
        self._open = ""

    @property
    def buffer(self) -> str:
        """Text still held in the pending entry."""
        return self._open

    @property
    def message_text(self) -> str:
        return self._committed + self._open

    def reset(self) -> None:
        self._committed = ""
        self._open = ""

    def feed(self, fragment: str, *, timestamp: float | None = None) -> str:
        """Apply ``fragment`` and update the transcript.

        Args:
            fragment: Content received from the backend.
            timestamp: Commit timestamp for entries split off by this call.

        Returns:
            The open buffer after the fragment was applied.
        """

        message = self._committed + self._open
        updated = apply_fragment(message, fragment, self._mode)
        if updated == message:
            return self._open
        if not updated.startswith(self._committed):
            # A snapshot that rewrites already committed text cannot be undone;
            # keep the committed prefix and append the fragment instead.
            LOGGER.debug("Snapshot diverged from committed text; appending as delta")
            updated = message + fragment

        pending = self._ensure_pending_entry()
        open_text = updated[len(self._committed):]
        split = self._splitter(open_text)
        if split >= len(open_text):
            self._transcript.update_pending(open_text)
            self._open = open_text
            return self._open

        before, after = open_text[:split], open_text[split:]
        if before:
            self._transcript.add(TranscriptEntry(pending.type, before), timestamp=timestamp)
            self._transcript.set_pending(TranscriptEntry(EntryType.ASSISTANT_CONTENT, after))
            self._committed += before
            self._open = after
        else:
            self._transcript.update_pending(open_text)
            self._open = open_text
        return self._open

    def _ensure_pending_entry(self) -> TranscriptEntry:
        pending = self._transcript.pending
        if pending is not None and pending.type in _ASSISTANT_TYPES:
            return pending
        if pending is not None:
            self._transcript.commit_pending()
        # Whatever was open has been flushed by someone else; start a new entry.
        self._committed += self._open
        self._open = ""
        entry_type = EntryType.ASSISTANT if not self._committed else EntryType.ASSISTANT_CONTENT
        entry = TranscriptEntry(entry_type, "")
        self._transcript.set_pending(entry)
        return entry
