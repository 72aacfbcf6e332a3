from __future__ import annotations

import random
from typing import Callable, Collection, Literal

SelectionPolicy = Literal["sequential", "random"]
Selector = Callable[[Collection[int]], "int | None"]

DEFAULT_POLICY: SelectionPolicy = "sequential"


def select_sequential(unrecorded_ids: Collection[int]) -> int | None:
    if not unrecorded_ids:
        return None
    return min(unrecorded_ids)


def select_random(
    unrecorded_ids: Collection[int],
    rng: random.Random | None = None,
) -> int | None:
    if not unrecorded_ids:
        return None
    # Sorted first so a seeded rng picks reproducibly regardless of set order.
    candidates = sorted(unrecorded_ids)
    return (rng or random).choice(candidates)


def build_selector(policy: str, rng: random.Random | None = None) -> Selector:
    if policy == "sequential":
        return select_sequential
    if policy == "random":
        return lambda unrecorded_ids: select_random(unrecorded_ids, rng=rng)
    raise ValueError(f"unknown selection policy: {policy}")
