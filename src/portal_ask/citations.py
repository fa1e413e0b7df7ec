"""Citation reconciliation: inline answer markers vs. the delivered source list.

Answers reference sources inline with markers such as ``[1]`` (1-based index
into the source list), ``[c_abc]`` or ``[S2]`` (explicit source ids). This
module resolves those markers, assigns per-turn display numbers in order of
first appearance, and rewrites the text with placeholders the UI can render.

Display numbers are stable: callers pass the previous ``display_numbers`` map
back in as ``seed`` whenever the text grows or a new source list arrives, and
only markers that have never been numbered get new numbers.
"""

import re
from collections.abc import Mapping, Sequence

from .config import SOURCES_DELIMITER
from .models import Citation, Reconciliation, SourceRecord

# [12], [c_abc123], [S2]; an optional "(citation:...)" link target is part of the marker
MARKER_RE = re.compile(r"\[(?P<ref>\d+|c_[^\[\]\s]+|S[\w-]+)\](?:\(citation:[^)\s]*\))?")

PLACEHOLDER_RE = re.compile(r"\{\{cite:(?P<number>\d+):(?P<id>[^}]*)\}\}")


def format_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS or MM:SS."""
    seconds = max(0.0, seconds or 0.0)
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def placeholder(number: int, citation_id: str) -> str:
    return f"{{{{cite:{number}:{citation_id}}}}}"


def render_plain(render_text: str) -> str:
    """Turn citation placeholders back into ``[n]`` labels."""
    return PLACEHOLDER_RE.sub(lambda m: f"[{m.group('number')}]", render_text)


def strip_sources_block(text: str) -> str:
    """Drop a trailing "Sources:" block appended after the answer body."""
    index = text.rfind(SOURCES_DELIMITER)
    if index == -1:
        return text
    return text[:index].rstrip()


def find_markers(text: str) -> list[str]:
    """Distinct marker refs in order of first occurrence."""
    seen: dict[str, None] = {}
    for match in MARKER_RE.finditer(text):
        seen.setdefault(match.group("ref"), None)
    return list(seen)


def source_to_citation(source: SourceRecord, number: int, cited: bool = True) -> Citation:
    """Build the display citation for a source record."""
    end = source.end if source.end is not None else source.start
    return Citation(
        id=source.source_key,
        number=number,
        video_id=source.video_id,
        playback_id=source.playback_id or "",
        speaker=source.speaker or "Speaker",
        title=source.title or "Untitled",
        text=source.text,
        start=source.start,
        end=end,
        timestamp_start=format_timestamp(source.start),
        timestamp_end=format_timestamp(end),
        cited=cited,
    )


def _resolve(
    ref: str,
    sources: Sequence[SourceRecord],
    by_key: Mapping[str, SourceRecord],
) -> SourceRecord | None:
    if ref.isdigit():
        index = int(ref) - 1
        if 0 <= index < len(sources):
            return sources[index]
        return None
    if ref in by_key:
        return by_key[ref]
    # [S2] without a matching id refers to the second source
    if ref.startswith("S") and ref[1:].isdigit():
        index = int(ref[1:]) - 1
        if 0 <= index < len(sources):
            return sources[index]
    return None


def reconcile(
    text: str,
    sources: Sequence[SourceRecord],
    seed: Mapping[str, int] | None = None,
) -> Reconciliation:
    """Match markers in ``text`` against ``sources``.

    Args:
        text: Answer text as accumulated so far (or the final answer)
        sources: Current source list, in upstream order
        seed: ``display_numbers`` from the previous call for this turn

    Returns:
        Reconciliation with cited citations first (by display number), then
        unreferenced sources in list order with ``cited=False``. Only numbers
        assigned to markers are recorded in ``display_numbers``; the numbers
        of unreferenced sources are provisional.
    """
    body = strip_sources_block(text)

    by_key: dict[str, SourceRecord] = {}
    for source in sources:
        by_key.setdefault(source.source_key, source)

    display_numbers: dict[str, int] = dict(seed or {})
    next_number = max(display_numbers.values(), default=0) + 1
    referenced: dict[str, SourceRecord] = {}

    def substitute(match: re.Match) -> str:
        nonlocal next_number
        source = _resolve(match.group("ref"), sources, by_key)
        if source is None:
            return match.group(0)
        key = source.source_key
        canonical = by_key[key]
        referenced.setdefault(key, canonical)
        if key not in display_numbers:
            display_numbers[key] = next_number
            next_number += 1
        return placeholder(display_numbers[key], key)

    render_text = MARKER_RE.sub(substitute, body)

    citations = [
        source_to_citation(source, display_numbers[key], cited=True)
        for key, source in referenced.items()
    ]
    citations.sort(key=lambda c: c.number)

    # Unreferenced sources keep a seeded number; the rest take free numbers
    taken = set(display_numbers.values())
    number = 0
    for key, source in by_key.items():
        if key in referenced:
            continue
        if key in display_numbers:
            citations.append(source_to_citation(source, display_numbers[key], cited=False))
            continue
        number += 1
        while number in taken:
            number += 1
        taken.add(number)
        citations.append(source_to_citation(source, number, cited=False))

    return Reconciliation(
        citations=citations,
        display_numbers=display_numbers,
        render_text=render_text,
    )
