"""
Transcript reconciliation.

Two merge modes, chosen by the caller from the event kind:

  incremental  mid-call updates; fragments already present under the key
               (role, normalized text, time offset or 0) are skipped
  final        end-of-call payload; the existing transcript is discarded and
               rebuilt from the platform's list with no deduplication

Both modes drop empty lines and non-conversational roles, then sort by time
offset. Python's sort is stable, so entries without an offset keep arrival
order relative to each other.
"""
from __future__ import annotations

from typing import Iterable, Optional

from channels.vapi.events import RawMessage
from models.schemas import TranscriptEntry, TranscriptRole

CONVERSATIONAL_ROLES = {TranscriptRole.USER.value, TranscriptRole.BOT.value}


def _dedup_key(role: str, text: str, time_offset: Optional[float]) -> tuple[str, str, float]:
    return role, text.strip().lower(), time_offset or 0


def _accept(fragments: Iterable[RawMessage]) -> list[TranscriptEntry]:
    entries = []
    for frag in fragments:
        role = (frag.role or "").lower()
        text = (frag.text or "").strip()
        if role not in CONVERSATIONAL_ROLES or not text:
            continue
        entries.append(TranscriptEntry(
            role=TranscriptRole(role),
            text=text,
            time_offset=frag.time_offset,
            timestamp_ms=frag.timestamp_ms,
        ))
    return entries


def _sorted(entries: list[TranscriptEntry]) -> list[TranscriptEntry]:
    return sorted(entries, key=lambda e: e.sort_offset)


def merge_incremental(
    transcript: list[TranscriptEntry],
    fragments: Iterable[RawMessage],
) -> list[TranscriptEntry]:
    """Append unseen fragments to the transcript. Returns a new list."""
    seen = {_dedup_key(e.role.value, e.text, e.time_offset) for e in transcript}
    merged = list(transcript)
    for entry in _accept(fragments):
        key = _dedup_key(entry.role.value, entry.text, entry.time_offset)
        if key in seen:
            continue
        seen.add(key)
        merged.append(entry)
    return _sorted(merged)


def replace_final(fragments: Iterable[RawMessage]) -> list[TranscriptEntry]:
    """The authoritative transcript, rebuilt from scratch."""
    return _sorted(_accept(fragments))


def transcript_text(transcript: Iterable[TranscriptEntry]) -> str:
    return " ".join(e.text for e in transcript)
