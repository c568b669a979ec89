"""Active-branch resolution over a rewindable session log.

The log is append-only, but a rewind followed by a new message gives an
entry a second child. Entries form a forest through ``parent_id``; the
conversation to show is the path from the current tip back to the root.
The log itself is never rewritten, the active view is recomputed each read.
"""

from collections import defaultdict
from collections.abc import Iterator

from .models import RawEntry


def dedupe_entries(entries: list[RawEntry]) -> list[RawEntry]:
    """Keep the first occurrence of each id. Compaction can rewrite entries."""
    seen: set[str] = set()
    deduped: list[RawEntry] = []
    for entry in entries:
        if entry.id:
            if entry.id in seen:
                continue
            seen.add(entry.id)
        deduped.append(entry)
    return deduped


def build_children_map(entries: list[RawEntry]) -> tuple[dict[str, RawEntry], dict[str, set[str]]]:
    """Build id -> entry lookup and parent id -> child ids map."""
    by_id = {e.id: e for e in entries if e.id}
    children_map: dict[str, set[str]] = defaultdict(set)
    for entry in entries:
        if entry.parent_id and entry.id:
            children_map[entry.parent_id].add(entry.id)
    return by_id, dict(children_map)


def has_branching(children_map: dict[str, set[str]]) -> bool:
    return any(len(kids) > 1 for kids in children_map.values())


def find_tip(entries: list[RawEntry], children_map: dict[str, set[str]]) -> RawEntry | None:
    """Last-appended leaf in file order.

    Scanning for a leaf instead of taking the last id-bearing entry keeps
    trailing records that nothing points at from being chosen over the
    real end of the conversation.
    """
    for entry in reversed(entries):
        if entry.id and entry.id not in children_map:
            return entry
    return None


def iter_ancestors(start: RawEntry, by_id: dict[str, RawEntry]) -> Iterator[RawEntry]:
    """Yield ``start`` and each ancestor until the root or a dangling parent."""
    current: RawEntry | None = start
    visited: set[str] = set()
    while current is not None and current.id and current.id not in visited:
        visited.add(current.id)
        yield current
        current = by_id.get(current.parent_id) if current.parent_id else None


def collect_ancestors(start: RawEntry, by_id: dict[str, RawEntry]) -> set[str]:
    return {e.id for e in iter_ancestors(start, by_id) if e.id}


def filter_active_branch(entries: list[RawEntry], resume_at: str | None = None) -> list[RawEntry]:
    """Return the active-branch subsequence of ``entries`` in original order.

    Without branching, ``resume_at`` truncates the linear chain at that id.
    With branching, the newest leaf wins, unless ``resume_at`` lies on its
    path (a rewind with no follow-up message yet), in which case the walk
    starts there instead.
    """
    if not entries:
        return []

    deduped = dedupe_entries(entries)
    by_id, children_map = build_children_map(deduped)

    tip: RawEntry | None
    if has_branching(children_map):
        tip = find_tip(deduped, children_map)
        if resume_at and tip is not None and resume_at in by_id:
            for ancestor in iter_ancestors(tip, by_id):
                if ancestor.id == resume_at:
                    tip = ancestor
                    break
    elif resume_at:
        tip = by_id.get(resume_at)
    else:
        return deduped

    if tip is None or not tip.id:
        return deduped

    active = collect_ancestors(tip, by_id)

    # Id-less records are kept only when both id-bearing neighbours are active
    n = len(deduped)
    prev_active = [False] * n
    next_active = [False] * n

    last = False
    for i, entry in enumerate(deduped):
        if entry.id:
            last = entry.id in active
        prev_active[i] = last

    last = False
    for i in range(n - 1, -1, -1):
        entry = deduped[i]
        if entry.id:
            last = entry.id in active
        next_active[i] = last

    return [
        entry
        for i, entry in enumerate(deduped)
        if (entry.id in active if entry.id else prev_active[i] and next_active[i])
    ]
