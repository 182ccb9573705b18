# orchestration/chapter_planning.py
"""Chapter length allocation and unit sizing."""

from __future__ import annotations

import math

from config import settings
from models.book_models import UnitPlan, UnitRole


def positional_multiplier(chapter_number: int, total_chapters: int) -> float:
    """Weight a chapter by where it falls in the book.

    Openings get a little more room, the climax stretch (70-90% through)
    gets the most, and the closing chapters slightly more than the middle.
    """
    position = chapter_number / total_chapters
    if position <= 0.2:
        return settings.OPENING_CHAPTER_MULTIPLIER
    if 0.7 <= position <= 0.9:
        return settings.CLIMAX_CHAPTER_MULTIPLIER
    if position > 0.9:
        return settings.FINAL_CHAPTER_MULTIPLIER
    return 1.0


def allocate_chapter_targets(total_words: int, chapter_count: int) -> list[int]:
    """Split ``total_words`` across chapters; the result sums to the total.

    Raw weighted shares are floored and the leftover words go to the
    chapters with the largest fractional remainders (earlier chapters win
    ties).
    """
    if chapter_count < 1:
        raise ValueError("chapter_count must be at least 1")
    if total_words < chapter_count:
        raise ValueError("total_words must allow at least one word per chapter")

    weights = [
        positional_multiplier(n, chapter_count) for n in range(1, chapter_count + 1)
    ]
    weight_sum = sum(weights)
    raw = [total_words * w / weight_sum for w in weights]
    targets = [max(1, math.floor(share)) for share in raw]

    leftover = total_words - sum(targets)
    by_remainder = sorted(
        range(chapter_count), key=lambda i: (-(raw[i] - math.floor(raw[i])), i)
    )
    index = 0
    while leftover > 0:
        targets[by_remainder[index % chapter_count]] += 1
        leftover -= 1
        index += 1
    while leftover < 0:
        largest = max(range(chapter_count), key=lambda i: (targets[i], -i))
        targets[largest] -= 1
        leftover += 1
    return targets


def compute_unit_count(chapter_words: int) -> int:
    """Number of units for a chapter, clamped to the configured bounds."""
    if chapter_words <= settings.MAX_UNIT_WORDS:
        count = 1
    else:
        count = max(1, round(chapter_words / settings.IDEAL_UNIT_WORDS))
        average = chapter_words / count
        if average > settings.MAX_UNIT_WORDS:
            count = math.ceil(chapter_words / settings.MAX_UNIT_WORDS)
        elif average < settings.MIN_UNIT_WORDS and count > 1:
            count = max(1, math.floor(chapter_words / settings.MIN_UNIT_WORDS))
    return max(settings.MIN_UNITS_PER_CHAPTER, min(settings.MAX_UNITS_PER_CHAPTER, count))


def plan_units(chapter_words: int) -> list[UnitPlan]:
    """Plan units whose targets sum exactly to ``chapter_words``."""
    count = compute_unit_count(chapter_words)
    base, remainder = divmod(chapter_words, count)
    plans: list[UnitPlan] = []
    for index in range(count):
        words = base + (1 if index >= count - remainder else 0)
        if index == 0:
            role = UnitRole.OPENING
        elif index == count - 1:
            role = UnitRole.BRIDGE
        else:
            role = UnitRole.DEVELOPMENT
        plans.append(UnitPlan(unit_number=index + 1, target_words=max(1, words), role=role))
    return plans
