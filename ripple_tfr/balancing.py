"""
Trial-count balancing between ripples and the randomized control realizations.

For one subject the balanced count (degrees of freedom) is

    m = min(|ripple|, min_r |NREM_r|, min_r |REM_r|)

and every realization of every control condition is reduced to a uniformly random
size-m subset (without replacement). Subsets are drawn from independent child
streams of one seed, one stream per (condition, realization), so a run is
reproducible and any realization can be regenerated on its own.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Sequence, Tuple, Union

import numpy as np

from .trials import TrialSet

logger = logging.getLogger(__name__)


SeedLike = Union[None, int, np.random.SeedSequence]


@dataclass(frozen=True)
class BalancedControls:
    """
    Balanced control trials of one subject, stored as a fixed-shape arena.

    windows:
        (n_conditions, n_realizations, dof, 2) int64 inclusive windows.
    n_available:
        (n_conditions, n_realizations) trial counts before balancing.
    """

    dof: int
    n_ripple: int
    n_available: np.ndarray
    windows: np.ndarray
    offsets: Tuple[int, int]

    @property
    def n_conditions(self) -> int:
        return int(self.windows.shape[0])

    @property
    def n_realizations(self) -> int:
        return int(self.windows.shape[1])

    def trial_set(self, condition: int, realization: int) -> TrialSet:
        w = self.windows[int(condition), int(realization)]
        return TrialSet(w, np.arange(w.shape[0], dtype=np.int64), self.offsets)


def _as_seed_sequence(seed: SeedLike) -> np.random.SeedSequence:
    # Fresh copy: spawn() advances the counter of the caller's sequence.
    if isinstance(seed, np.random.SeedSequence):
        return np.random.SeedSequence(seed.entropy, spawn_key=seed.spawn_key, pool_size=seed.pool_size)
    return np.random.SeedSequence(seed)


def subsample_trials(trials: TrialSet, n: int, rng: np.random.Generator) -> TrialSet:
    """Uniform random subset of n trials, without replacement."""
    n = int(n)
    if n > trials.n_trials:
        raise ValueError(f"Cannot draw {n} trials from a set of {trials.n_trials}")
    idx = rng.choice(trials.n_trials, size=n, replace=False)
    return trials.subset(idx)


def balance_control_trials(
    ripple_trials: Union[TrialSet, int],
    control_sets: Sequence[Sequence[TrialSet]],
    *,
    seed: SeedLike = 0,
) -> BalancedControls:
    """
    Equalize trial counts across ripples and all control realizations.

    Parameters
    ----------
    ripple_trials : TrialSet or int
        Ripple trials of the subject (only the count is used).
    control_sets : sequence of sequences of TrialSet
        control_sets[c][r] = trials of control condition c, realization r.
    seed : int, SeedSequence or None
        Seed of the random subsampling. A SeedSequence is not consumed:
        passing the same one twice gives the same subsets.

    Returns
    -------
    BalancedControls
        dof = 0 means the subject contributes no trials.
    """
    n_ripple = ripple_trials.n_trials if isinstance(ripple_trials, TrialSet) else int(ripple_trials)
    n_cond = len(control_sets)
    if n_cond == 0:
        raise ValueError("At least one control condition is required.")
    n_rep = len(control_sets[0])
    if n_rep == 0 or any(len(c) != n_rep for c in control_sets):
        raise ValueError("All control conditions need the same, non-zero number of realizations.")

    offsets = control_sets[0][0].offsets
    for cond in control_sets:
        for ts in cond:
            if tuple(ts.offsets) != tuple(offsets):
                raise ValueError("All control trial sets must share the same window offsets.")

    n_available = np.array([[ts.n_trials for ts in cond] for cond in control_sets], dtype=np.int64)
    dof = int(min(int(n_ripple), int(n_available.min())))

    windows = np.zeros((n_cond, n_rep, dof, 2), dtype=np.int64)
    if dof > 0:
        children = _as_seed_sequence(seed).spawn(n_cond * n_rep)
        for ci, cond in enumerate(control_sets):
            for ri, ts in enumerate(cond):
                rng = np.random.default_rng(children[ci * n_rep + ri])
                windows[ci, ri] = subsample_trials(ts, dof, rng).windows
    else:
        logger.warning(
            "Degenerate balancing: ripples=%d, min control trials=%d -> dof=0",
            int(n_ripple),
            int(n_available.min()),
        )

    return BalancedControls(
        dof=dof,
        n_ripple=int(n_ripple),
        n_available=n_available,
        windows=windows,
        offsets=(int(offsets[0]), int(offsets[1])),
    )
