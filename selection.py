import random
from typing import Optional, Sequence, TypeVar

T = TypeVar("T")

_system_random = random.SystemRandom()


def select_subset(population: Sequence[T], count: int, rng: Optional[random.Random] = None) -> list[T]:
    """
    Draw min(count, len(population)) distinct members, uniformly without replacement.

    Every subset of that size is equally likely. A non-positive count yields an
    empty list. The population itself is left untouched.
    """
    size = min(count, len(population))
    if size <= 0:
        return []
    return (rng or _system_random).sample(list(population), size)
