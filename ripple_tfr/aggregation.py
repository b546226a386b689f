"""
Multi-level averaging of PowerMaps.

1. trials of one realization      -> realization map
2. realizations of one subject    -> subject map (SubjectResult)
3. subjects                       -> group map (GroupResult)

Each level is a plain arithmetic mean over its entries. Degenerate entries (no
trials, dof = 0 subjects) are left out of the count; NaNs inside a map (wavelet
edges) propagate as they are.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


def mean_over_trials(power: np.ndarray, map_shape: Optional[Tuple[int, ...]] = None) -> np.ndarray:
    """
    Mean over the first axis. Zero trials -> all-NaN map.

    map_shape is only needed when power has zero trials and no trailing shape.
    """
    power = np.asarray(power, dtype=np.float64)
    if power.shape[0] == 0:
        shape = tuple(map_shape) if map_shape is not None else power.shape[1:]
        return np.full(shape, np.nan, dtype=np.float64)
    return power.sum(axis=0) / float(power.shape[0])


class RealizationAccumulator:
    """
    Running average of one subject/condition over control realizations.

    Keeps the sum of realization maps (level 2) and, if keep_trials, per balanced
    trial index the sum over realizations (the realization-averaged trial stack).
    """

    def __init__(self, n_trials: int, map_shape: Tuple[int, ...], keep_trials: bool = True):
        self.n_trials = int(n_trials)
        self.map_shape = tuple(int(x) for x in map_shape)
        self.keep_trials = bool(keep_trials)
        self.n_realizations = 0
        self._map_sum = np.zeros(self.map_shape, dtype=np.float64)
        self._trial_sum = (
            np.zeros((self.n_trials, *self.map_shape), dtype=np.float64) if self.keep_trials else None
        )

    def add(self, trial_power: np.ndarray) -> np.ndarray:
        """Add one realization (n_trials, *map_shape); returns its realization mean."""
        trial_power = np.asarray(trial_power, dtype=np.float64)
        if trial_power.shape != (self.n_trials, *self.map_shape):
            raise ValueError(
                f"Expected realization power {(self.n_trials, *self.map_shape)}, got {trial_power.shape}"
            )
        rep_mean = mean_over_trials(trial_power, self.map_shape)
        if self.n_trials > 0:
            self._map_sum += rep_mean
            if self._trial_sum is not None:
                self._trial_sum += trial_power
            self.n_realizations += 1
        return rep_mean

    def mean(self) -> np.ndarray:
        if self.n_realizations == 0:
            return np.full(self.map_shape, np.nan, dtype=np.float64)
        return self._map_sum / float(self.n_realizations)

    def trial_mean(self) -> Optional[np.ndarray]:
        if self._trial_sum is None:
            return None
        if self.n_realizations == 0:
            return np.full((self.n_trials, *self.map_shape), np.nan, dtype=np.float64)
        return self._trial_sum / float(self.n_realizations)


@dataclass
class SubjectResult:
    """
    Output of one subject.

    power:
        (n_conditions, n_channels, n_freqs, n_times) realization-averaged maps
        (all NaN when dof == 0).
    trial_power:
        (n_conditions, dof, n_channels, n_freqs, n_times) realization-averaged
        balanced trials, or None when the trial stack was not kept.
    """

    subject: int
    dof: int
    power: np.ndarray
    trial_power: Optional[np.ndarray] = None
    n_ripple: int = 0
    n_available: Optional[np.ndarray] = None
    meta: Dict = field(default_factory=dict)

    @property
    def has_data(self) -> bool:
        return self.dof > 0


@dataclass
class GroupResult:
    """
    Subject stack and grand average.

    indiv:
        (n_conditions, n_subjects, n_channels, n_freqs, n_times); NaN rows for dof == 0.
    grdavg:
        (n_conditions, n_channels, n_freqs, n_times) mean over subjects with data.
    trial_indiv:
        (n_conditions, n_pooled_trials, n_channels, n_freqs, n_times) realization-averaged
        trials of all subjects, concatenated in subject order (None if not kept).
    """

    conditions: List[str]
    channels: List[str]
    subjects: List[int]
    dof: np.ndarray
    indiv: np.ndarray
    grdavg: np.ndarray
    trial_indiv: Optional[np.ndarray] = None

    @property
    def included(self) -> np.ndarray:
        return self.dof > 0

    @property
    def n_included(self) -> int:
        return int(np.sum(self.included))

    def paired_units(self, unit: str = "subject") -> np.ndarray:
        """
        Paired data for statistics: (n_conditions, n_units, n_channels, n_freqs, n_times).

        unit='subject' -> subject maps of subjects with data; unit='trial' -> pooled trials.
        """
        if unit == "subject":
            return self.indiv[:, self.included]
        if unit == "trial":
            if self.trial_indiv is None:
                raise ValueError("Trial-level stack was not kept; rerun with keep_trials=True.")
            return self.trial_indiv
        raise ValueError("unit must be 'subject' or 'trial'.")


def average_subjects(indiv: np.ndarray, included: np.ndarray) -> np.ndarray:
    """Mean over the subject axis (axis 1) of the included subjects only."""
    indiv = np.asarray(indiv, dtype=np.float64)
    included = np.asarray(included, dtype=bool)
    n = int(np.sum(included))
    if n == 0:
        return np.full((indiv.shape[0], *indiv.shape[2:]), np.nan, dtype=np.float64)
    return indiv[:, included].sum(axis=1) / float(n)


def build_group_result(
    subject_results: Sequence[SubjectResult],
    *,
    conditions: Sequence[str],
    channels: Sequence[str],
    map_shape: Tuple[int, int, int],
) -> GroupResult:
    """Stack subject results (in the given order) and compute the grand average."""
    n_cond = len(conditions)
    n_subj = len(subject_results)
    map_shape = tuple(int(x) for x in map_shape)

    indiv = np.full((n_cond, n_subj, *map_shape), np.nan, dtype=np.float64)
    dof = np.zeros((n_subj,), dtype=np.int64)
    pooled: List[np.ndarray] = []
    keep_trials = all(res.trial_power is not None for res in subject_results)

    for si, res in enumerate(subject_results):
        if res.power.shape != (n_cond, *map_shape):
            raise ValueError(
                f"Subject {res.subject}: power shape {res.power.shape} != {(n_cond, *map_shape)}"
            )
        dof[si] = int(res.dof)
        if res.has_data:
            indiv[:, si] = res.power
            if keep_trials:
                pooled.append(np.asarray(res.trial_power, dtype=np.float64))

    included = dof > 0
    n_excluded = int(np.sum(~included))
    if n_excluded:
        logger.warning(
            "%d/%d subjects have dof=0 and are excluded from the grand average",
            n_excluded,
            n_subj,
        )

    if not keep_trials:
        trial_indiv = None
    elif pooled:
        trial_indiv = np.concatenate(pooled, axis=1)
    else:
        trial_indiv = np.zeros((n_cond, 0, *map_shape), dtype=np.float64)

    return GroupResult(
        conditions=[str(c) for c in conditions],
        channels=[str(c) for c in channels],
        subjects=[int(r.subject) for r in subject_results],
        dof=dof,
        indiv=indiv,
        grdavg=average_subjects(indiv, included),
        trial_indiv=trial_indiv,
    )
