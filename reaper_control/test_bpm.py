"""Tests for tempo estimation."""

import math

import pytest

from reaper_control.bpm import BpmCalculator, bars_to_seconds


def test_no_samples_uses_default():
    assert BpmCalculator().calculate_bpm() == 120.0
    assert BpmCalculator().calculate_bpm(default_bpm=100) == 100


def test_two_samples_measure_tempo():
    calc = BpmCalculator()
    calc.add_beat_position(1.0, 2.0)
    calc.add_beat_position(3.0, 5.0)
    assert calc.calculate_bpm() == 90.0


def test_only_last_two_samples_are_kept():
    calc = BpmCalculator()
    calc.add_beat_position(0.0, 0.0)
    calc.add_beat_position(1.0, 1.0)
    calc.add_beat_position(2.0, 3.0)
    assert calc.sample_count == 2
    assert calc.calculate_bpm() == 120.0


def test_single_sample_prefers_marker_tempo():
    calc = BpmCalculator()
    calc.reset(initial_bpm=95)
    calc.add_beat_position(2.0, 4.0)
    assert calc.calculate_bpm() == 95


def test_single_sample_without_marker_tempo():
    calc = BpmCalculator()
    calc.add_beat_position(2.0, 4.0)
    assert calc.calculate_bpm() == 120.0


def test_invalid_measurements_fall_back():
    calc = BpmCalculator()
    calc.reset(initial_bpm=80)
    calc.add_beat_position(1.0, 1.0)
    calc.add_beat_position(1.0, 5.0)  # zero seconds elapsed
    assert calc.calculate_bpm() == 80

    calc.reset()
    calc.add_beat_position(1.0, 1.0)
    calc.add_beat_position(1.001, 1000.0)  # absurd tempo
    assert calc.calculate_bpm() == 120.0


def test_reset_ignores_non_positive_tempo():
    calc = BpmCalculator()
    calc.reset(initial_bpm=0)
    assert calc.initial_bpm is None


def test_bars_to_seconds():
    assert bars_to_seconds(2, 120) == pytest.approx(4.0)
    assert bars_to_seconds(1, 60, ts_numerator=3) == pytest.approx(3.0)


@pytest.mark.parametrize("bpm", [0, -10, math.nan, math.inf, 1500])
def test_bars_to_seconds_invalid_tempo(bpm):
    assert bars_to_seconds(2, bpm) == pytest.approx(4 * 60 / 90 * 2)
