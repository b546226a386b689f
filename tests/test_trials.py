import numpy as np
import pytest

from ripple_tfr.trials import TrialSet, extract_trials, segment_trials, trial_times


def test_out_of_range_events_are_dropped():
    valid = np.ones(100, dtype=bool)
    trials = extract_trials(np.array([2, 50, 98, 30]), (-3, 2), 100, valid)
    assert trials.event_idx.tolist() == [1, 3]
    assert trials.windows.tolist() == [[47, 52], [27, 32]]
    assert trials.trial_len == 6


def test_window_touching_recording_edges_is_kept():
    valid = np.ones(100, dtype=bool)
    trials = extract_trials(np.array([3, 97]), (-3, 2), 100, valid)
    assert trials.windows.tolist() == [[0, 5], [94, 99]]


def test_window_end_is_inclusive():
    valid = np.ones(100, dtype=bool)
    valid[52] = False
    trials = extract_trials(np.array([50, 49]), (-3, 2), 100, valid)
    # event 50 -> [47, 52] contains the invalid sample; event 49 -> [46, 51] does not
    assert trials.event_idx.tolist() == [1]


def test_rejected_events_are_dropped():
    valid = np.ones(100, dtype=bool)
    trials = extract_trials(np.array([20, 40, 60]), (-3, 2), 100, valid, rejects=np.array([0, 1, 0]))
    assert trials.event_idx.tolist() == [0, 2]


def test_all_kept_trials_are_valid():
    rng = np.random.default_rng(3)
    valid = rng.random(1000) > 0.01
    ts = rng.integers(0, 1000, size=200)
    trials = extract_trials(ts, (-10, 10), 1000, valid)
    for s, e in trials.windows:
        assert 0 <= s and e <= 999
        assert valid[s:e + 1].all()


def test_rejects_length_mismatch():
    with pytest.raises(ValueError):
        extract_trials(np.array([20, 40]), (-3, 2), 100, np.ones(100, dtype=bool), rejects=np.array([0]))


def test_segment_trials_copies_inclusive_windows():
    data = np.vstack([np.arange(100, dtype=float), -np.arange(100, dtype=float)])
    trials = extract_trials(np.array([10, 50]), (-3, 2), 100, np.ones(100, dtype=bool))
    seg = segment_trials(data, trials)
    assert seg.shape == (2, 2, 6)
    assert seg[0, 0].tolist() == [7, 8, 9, 10, 11, 12]
    assert seg[1, 1].tolist() == [-47, -48, -49, -50, -51, -52]


def test_segment_empty_trial_set():
    seg = segment_trials(np.zeros((2, 100)), TrialSet.empty((-3, 2)))
    assert seg.shape == (0, 2, 6)


def test_trial_times():
    t = trial_times((-3, 2), 10.0)
    assert np.allclose(t, [-0.3, -0.2, -0.1, 0.0, 0.1, 0.2])
