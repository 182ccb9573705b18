import pytest

from config import settings
from models.book_models import UnitRole
from orchestration.chapter_planning import (
    allocate_chapter_targets,
    compute_unit_count,
    plan_units,
    positional_multiplier,
)


def test_targets_sum_to_total():
    targets = allocate_chapter_targets(60000, 10)
    assert len(targets) == 10
    assert sum(targets) == 60000


@pytest.mark.parametrize("total,count", [(6000, 3), (1001, 7), (99999, 13), (5, 5)])
def test_targets_sum_for_awkward_totals(total, count):
    targets = allocate_chapter_targets(total, count)
    assert sum(targets) == total
    assert all(t >= 1 for t in targets)


def test_climax_chapters_get_more_room():
    targets = allocate_chapter_targets(60000, 10)
    middle, climax = targets[4], targets[7]
    assert climax > middle
    assert targets[0] > middle


def test_positional_multiplier_regions():
    assert positional_multiplier(1, 10) == settings.OPENING_CHAPTER_MULTIPLIER
    assert positional_multiplier(5, 10) == 1.0
    assert positional_multiplier(8, 10) == settings.CLIMAX_CHAPTER_MULTIPLIER
    assert positional_multiplier(10, 10) == settings.FINAL_CHAPTER_MULTIPLIER


def test_invalid_allocation_inputs():
    with pytest.raises(ValueError):
        allocate_chapter_targets(100, 0)
    with pytest.raises(ValueError):
        allocate_chapter_targets(3, 5)


@pytest.mark.parametrize("words", [1, 500, 1200, 1201, 2500, 4000, 6000, 20000])
def test_unit_count_is_clamped(words):
    count = compute_unit_count(words)
    assert settings.MIN_UNITS_PER_CHAPTER <= count <= settings.MAX_UNITS_PER_CHAPTER


def test_unit_count_for_typical_chapter():
    assert compute_unit_count(1000) == 1
    assert compute_unit_count(3000) == 3


def test_plan_units_sum_and_roles():
    plans = plan_units(3001)
    assert sum(p.target_words for p in plans) == 3001
    assert [p.unit_number for p in plans] == [1, 2, 3]
    assert [p.role for p in plans] == [UnitRole.OPENING, UnitRole.DEVELOPMENT, UnitRole.BRIDGE]


def test_single_unit_chapter_is_an_opening():
    plans = plan_units(900)
    assert len(plans) == 1
    assert plans[0].role is UnitRole.OPENING
    assert plans[0].target_words == 900
