#!/usr/bin/env python3
"""
Unit tests for adaptive batch concurrency.
"""

import random

import pytest

from scrape_ads.concurrency import AdaptiveConcurrencyController, ConcurrencyDecision


def test_failure_streak_halves_batch_size():
    controller = AdaptiveConcurrencyController(initial=8, fail_high_water=3)

    decision = controller.observe_batch([False, False, False])

    assert decision == ConcurrencyDecision.DECREASE
    assert controller.current == 4
    assert controller.consecutive_failures == 0


def test_decrease_respects_floor():
    controller = AdaptiveConcurrencyController(initial=1, minimum=1, fail_high_water=2)

    decision = controller.observe_batch([False, False])

    # Still reported so the caller refreshes its contexts
    assert decision == ConcurrencyDecision.DECREASE
    assert controller.current == 1
    assert controller.decreases == 0


def test_success_streak_grows_batch_size_up_to_ceiling():
    controller = AdaptiveConcurrencyController(initial=2, maximum=3, success_low_water=3)

    assert controller.observe_batch([True, True, True]) == ConcurrencyDecision.INCREASE
    assert controller.current == 3

    assert controller.observe_batch([True, True, True]) == ConcurrencyDecision.HOLD
    assert controller.current == 3


def test_mixed_outcomes_reset_streaks():
    controller = AdaptiveConcurrencyController(initial=4, fail_high_water=3)

    decision = controller.observe_batch([False, False, True, False, False])

    assert decision == ConcurrencyDecision.HOLD
    assert controller.current == 4
    assert controller.consecutive_failures == 2


def test_streaks_carry_across_batches():
    controller = AdaptiveConcurrencyController(initial=4, fail_high_water=3)

    assert controller.observe_batch([False, False]) == ConcurrencyDecision.HOLD
    assert controller.observe_batch([False]) == ConcurrencyDecision.DECREASE
    assert controller.current == 2


def test_size_stays_within_bounds():
    rng = random.Random(11)
    controller = AdaptiveConcurrencyController(
        initial=5, minimum=2, maximum=6, fail_high_water=2, success_low_water=2
    )

    for _ in range(200):
        controller.observe_batch([rng.random() < 0.5 for _ in range(controller.current)])
        assert 2 <= controller.current <= 6


@pytest.mark.parametrize("minimum,maximum", [(0, 3), (4, 3)])
def test_invalid_bounds(minimum, maximum):
    with pytest.raises(ValueError):
        AdaptiveConcurrencyController(initial=3, minimum=minimum, maximum=maximum)
