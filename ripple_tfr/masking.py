"""
Artifact-aware validity masks.

A validity mask is a boolean vector over samples, True = usable. Per channel it is
built from padded artifact intervals plus a minimum clean-run length; the global mask
of a subject is the AND of all channel masks and the sleep-stage vector.

All intervals are 0-based, half-open [start, end).
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np


def _find_runs(mask: np.ndarray) -> List[Tuple[int, int]]:
    """Return inclusive-exclusive runs [(start, end), ...] where mask is True."""
    if mask.size == 0:
        return []
    m = mask.astype(np.int8)
    dm = np.diff(m, prepend=0, append=0)
    starts = np.where(dm == 1)[0]
    ends = np.where(dm == -1)[0]
    return list(zip(starts.tolist(), ends.tolist()))


def _ensure_intervals(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x)
    if x.size == 0:
        return np.zeros((0, 2), dtype=np.int64)
    if x.ndim == 1 and x.shape[0] == 2:
        x = x.reshape(1, 2)
    if x.ndim != 2 or x.shape[1] != 2:
        raise ValueError(f"Expected shape (n, 2) interval array, got {x.shape}")
    return np.rint(x).astype(np.int64)


def pad_artifact_intervals(
    intervals: np.ndarray,
    pad_samples: Tuple[int, int],
    n_samples: int,
) -> np.ndarray:
    """
    Pad [start, end) intervals by (pad_before, pad_after) samples and clip to [0, n_samples].

    pad_before is added to the start (so it is usually negative). Intervals pushed
    outside the recording collapse onto the boundary; end < start becomes empty.
    """
    iv = _ensure_intervals(intervals)
    n_samples = int(n_samples)
    start = np.clip(iv[:, 0] + int(pad_samples[0]), 0, n_samples)
    end = np.clip(iv[:, 1] + int(pad_samples[1]), 0, n_samples)
    end = np.maximum(end, start)
    return np.stack([start, end], axis=1)


def remove_short_runs(valid: np.ndarray, min_len: int) -> np.ndarray:
    """Set every maximal True run shorter than min_len samples to False."""
    out = np.asarray(valid, dtype=bool).copy()
    min_len = int(min_len)
    if min_len <= 1:
        return out
    for s, e in _find_runs(out):
        if e - s < min_len:
            out[s:e] = False
    return out


def build_validity_mask(
    intervals: np.ndarray,
    n_samples: int,
    *,
    pad_samples: Tuple[int, int] = (0, 0),
    min_valid_len: int = 0,
) -> np.ndarray:
    """
    Per-channel validity mask (True = usable).

    Every sample inside a padded artifact is invalid; the remaining clean islands
    shorter than min_valid_len samples are invalidated too.
    """
    n_samples = int(n_samples)
    if n_samples < 0:
        raise ValueError("n_samples must be >= 0.")
    padded = pad_artifact_intervals(intervals, pad_samples, n_samples)

    # Difference array: +1 at each start, -1 at each end; coverage > 0 is artifact.
    cover = np.zeros(n_samples + 1, dtype=np.int64)
    np.add.at(cover, padded[:, 0], 1)
    np.add.at(cover, padded[:, 1], -1)
    invalid = np.cumsum(cover[:-1]) > 0

    return remove_short_runs(~invalid, min_valid_len)


def stage_validity(scoring: np.ndarray, stages_of_interest: Sequence[int]) -> np.ndarray:
    """Reduce a per-sample sleep scoring to 'is a stage of interest'."""
    scoring = np.asarray(scoring).ravel()
    return np.isin(scoring, np.asarray(list(stages_of_interest)))


def build_global_mask(channel_masks: Sequence[np.ndarray], stage_valid: np.ndarray) -> np.ndarray:
    """AND of all per-channel validity masks and the stage-validity vector."""
    stage_valid = np.asarray(stage_valid, dtype=bool).ravel()
    masks = [np.asarray(m, dtype=bool).ravel() for m in channel_masks]
    for m in masks:
        if m.shape != stage_valid.shape:
            raise ValueError(
                f"Channel mask length {m.shape[0]} does not match stage vector length {stage_valid.shape[0]}"
            )
    return np.logical_and.reduce([stage_valid, *masks])
