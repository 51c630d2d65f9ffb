"""Union-by-identity merging of learnings.

Learnings flow through the research tree as immutable tuples. Every merge is
a pure function of its inputs: it keeps first-seen order and drops any
learning whose ``(url, learning)`` pair is already present, so merging is
idempotent and the resulting set does not depend on completion order.
"""

from collections.abc import Iterable, Sequence

from .models import Learning


def same_learning(a: Learning, b: Learning) -> bool:
    """Return True when two learnings share url and text."""
    return a.key == b.key


def merge_learnings(existing: Sequence[Learning], *incoming: Iterable[Learning]) -> tuple[Learning, ...]:
    """Append every learning from ``incoming`` that ``existing`` does not already hold.

    Args:
        existing: Learnings accumulated so far. Duplicates inside it are dropped too.
        *incoming: Any number of learning collections, merged in argument order.

    Returns:
        A new tuple; neither argument is modified.
    """
    seen: set[tuple[str, str]] = set()
    merged: list[Learning] = []

    for batch in (existing, *incoming):
        for learning in batch:
            if learning.key in seen:
                continue
            seen.add(learning.key)
            merged.append(learning)

    return tuple(merged)


def coerce_learnings(learnings: Iterable[Learning | str | dict] | None) -> tuple[Learning, ...]:
    """Normalize starting learnings given as objects, dicts or plain strings.

    Plain strings become learnings with an empty url.
    """
    if not learnings:
        return ()

    converted: list[Learning] = []
    for item in learnings:
        if isinstance(item, Learning):
            converted.append(item)
        elif isinstance(item, str):
            converted.append(Learning(learning=item, url=""))
        else:
            converted.append(Learning.model_validate(item))
    return merge_learnings(converted)
