from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import TypeVar

T = TypeVar("T")


def dominates(a: tuple[float, ...], b: tuple[float, ...], *, tol: float = 1e-9) -> bool:
    """True when objective vector ``a`` is no worse than ``b`` everywhere and better somewhere.

    All objectives are minimised.
    """
    if len(a) != len(b):
        raise ValueError("dimension mismatch")
    strictly_better = False
    for ai, bi in zip(a, b, strict=True):
        if ai > bi + tol:
            return False
        if ai < bi - tol:
            strictly_better = True
    return strictly_better


def pareto_filter(items: Iterable[T], key: Callable[[T], tuple[float, ...]]) -> list[T]:
    """Non-dominated subset of ``items``, in input order. Quadratic; candidate lists are short."""
    materialized = list(items)
    vectors = [key(item) for item in materialized]
    return [
        item
        for idx, item in enumerate(materialized)
        if not any(dominates(other, vectors[idx]) for j, other in enumerate(vectors) if j != idx)
    ]
