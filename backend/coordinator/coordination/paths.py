"""Path pattern overlap used for file ownership and merge conflict checks."""

from typing import Iterable, List


def path_overlaps(paths1: Iterable[str], paths2: Iterable[str]) -> List[str]:
    """
    Return the overlapping entries between two lists of paths or patterns.

    Exact matches, ``dir/**`` against anything under ``dir/``, and a
    prefix check on the literal part of other glob patterns.
    """
    paths2 = list(paths2)
    overlaps = []

    for p1 in paths1:
        for p2 in paths2:
            if p1 == p2:
                overlaps.append(p1)
            elif p1.endswith("/**") and p2.startswith(p1[:-2]):
                overlaps.append(p2)
            elif p2.endswith("/**") and p1.startswith(p2[:-2]):
                overlaps.append(p1)
            elif "*" in p1 or "*" in p2:
                p1_base = p1.split("*")[0]
                p2_base = p2.split("*")[0]
                if p1_base and p2_base and (p1.startswith(p2_base) or p2.startswith(p1_base)):
                    overlaps.append(f"{p1} <-> {p2}")

    return overlaps
