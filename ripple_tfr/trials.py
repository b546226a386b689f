"""
Event timestamps -> fixed-length, artifact-free trial windows.

Windows are inclusive: a trial around event t covers samples
[t + offset_start, t + offset_end], both ends included, so every trial has
offset_end - offset_start + 1 samples. The validity check and the segmentation use
the same convention.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class TrialSet:
    """
    Ordered trial windows for one (subject, condition, realization).

    windows:
        (n_trials, 2) int64, inclusive [start, end] sample indices.
    event_idx:
        (n_trials,) index of each surviving trial's event in the input event list.
    offsets:
        (offset_start, offset_end) in samples relative to the event.
    """

    windows: np.ndarray
    event_idx: np.ndarray
    offsets: Tuple[int, int]

    @property
    def n_trials(self) -> int:
        return int(self.windows.shape[0])

    @property
    def trial_len(self) -> int:
        return int(self.offsets[1] - self.offsets[0] + 1)

    def __len__(self) -> int:
        return self.n_trials

    def subset(self, idx: np.ndarray) -> "TrialSet":
        idx = np.asarray(idx, dtype=np.int64)
        return TrialSet(self.windows[idx], self.event_idx[idx], self.offsets)

    @classmethod
    def empty(cls, offsets: Tuple[int, int]) -> "TrialSet":
        return cls(
            np.zeros((0, 2), dtype=np.int64),
            np.zeros((0,), dtype=np.int64),
            (int(offsets[0]), int(offsets[1])),
        )


def extract_trials(
    timestamps: np.ndarray,
    offsets: Tuple[int, int],
    n_samples: int,
    valid_mask: np.ndarray,
    rejects: Optional[np.ndarray] = None,
) -> TrialSet:
    """
    Build trial windows and drop the unusable ones.

    A candidate is dropped when its window leaves [0, n_samples), when its rejection
    flag is set, or when any sample of the (inclusive) window is invalid in
    valid_mask. Surviving trials keep the original event order.
    """
    ts = np.rint(np.asarray(timestamps, dtype=np.float64).ravel()).astype(np.int64)
    off0, off1 = int(offsets[0]), int(offsets[1])
    if off1 < off0:
        raise ValueError("offsets must satisfy offset_start <= offset_end.")
    n_samples = int(n_samples)
    valid_mask = np.asarray(valid_mask, dtype=bool).ravel()
    if valid_mask.shape[0] != n_samples:
        raise ValueError(f"valid_mask length {valid_mask.shape[0]} != n_samples {n_samples}")

    starts = ts + off0
    ends = ts + off1
    keep = (starts >= 0) & (ends <= n_samples - 1)

    if rejects is not None:
        rej = np.asarray(rejects, dtype=bool).ravel()
        if rej.shape[0] != ts.shape[0]:
            raise ValueError(f"rejects length {rej.shape[0]} != number of events {ts.shape[0]}")
        keep &= ~rej

    # Count of invalid samples in [s, e] via prefix sums.
    bad_prefix = np.concatenate(([0], np.cumsum(~valid_mask, dtype=np.int64)))
    idx = np.where(keep)[0]
    n_bad = bad_prefix[ends[idx] + 1] - bad_prefix[starts[idx]]
    idx = idx[n_bad == 0]

    windows = np.stack([starts[idx], ends[idx]], axis=1).astype(np.int64)
    return TrialSet(windows.reshape(-1, 2), idx.astype(np.int64), (off0, off1))


def segment_trials(data: np.ndarray, trials: TrialSet) -> np.ndarray:
    """
    Copy trial data out of a continuous recording.

    data: (n_channels, n_samples) or (n_samples,)
    Returns (n_trials, n_channels, trial_len).
    """
    data = np.asarray(data, dtype=np.float64)
    if data.ndim == 1:
        data = data[None, :]
    if data.ndim != 2:
        raise ValueError("data must be 1D or 2D (n_channels, n_samples)")

    n_len = trials.trial_len
    if trials.n_trials == 0:
        return np.zeros((0, data.shape[0], n_len), dtype=np.float64)
    if np.any(trials.windows[:, 0] < 0) or np.any(trials.windows[:, 1] >= data.shape[1]):
        raise ValueError("Trial windows exceed the recording.")

    idx = trials.windows[:, 0][:, None] + np.arange(n_len, dtype=np.int64)[None, :]
    seg = data[:, idx]  # (n_ch, n_trials, n_len)
    return np.ascontiguousarray(np.transpose(seg, (1, 0, 2)))


def trial_times(offsets: Tuple[int, int], fsample: float) -> np.ndarray:
    """Time axis (s) of one trial relative to its event."""
    n_len = int(offsets[1]) - int(offsets[0]) + 1
    return (int(offsets[0]) + np.arange(n_len, dtype=np.float64)) / float(fsample)
