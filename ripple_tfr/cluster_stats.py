"""
Cluster-based permutation test for paired time-frequency maps.

Test statistic: dependent-samples t per (frequency, time) bin.
Cluster forming: bins with two-tailed p < cluster_alpha (df = n_units - 1), grouped
into 4-connected components in the (frequency, time) plane, separately for positive
and negative t. Cluster statistic: sum of t ("maxsum").
Null distribution: random sign flips of each unit's paired difference map; per
permutation the largest positive and the most negative cluster sum are kept.
A cluster's p-value is the share of null extrema (observed included) at least as
extreme on its own side; bins of clusters with p < alpha form the mask.

Channels are tested independently; there is no spatial neighbourhood.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import ndimage, stats

from .errors import InsufficientSubjectsError

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
#  Result container
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class ClusterStatResult:
    """Permutation test outcome of one channel (arrays are n_freqs x n_times)."""

    channel: str
    freqs: np.ndarray
    times: np.ndarray
    tval: np.ndarray
    pval: np.ndarray
    mask: np.ndarray
    available: bool = True
    n_units: int = 0
    clusters: List[Dict[str, Any]] = field(default_factory=list)
    null_pos: Optional[np.ndarray] = None
    null_neg: Optional[np.ndarray] = None

    @classmethod
    def unavailable(cls, channel: str, freqs: np.ndarray, times: np.ndarray, n_units: int = 0):
        shape = (int(np.asarray(freqs).shape[0]), int(np.asarray(times).shape[0]))
        return cls(
            channel=str(channel),
            freqs=np.asarray(freqs, dtype=np.float64),
            times=np.asarray(times, dtype=np.float64),
            tval=np.full(shape, np.nan, dtype=np.float64),
            pval=np.full(shape, np.nan, dtype=np.float64),
            mask=np.zeros(shape, dtype=bool),
            available=False,
            n_units=int(n_units),
        )

    @property
    def n_significant(self) -> int:
        return int(sum(1 for c in self.clusters if c["significant"]))


# ═════════════════════════════════════════════════════════════════════════════
#  Building blocks
# ═════════════════════════════════════════════════════════════════════════════

def cluster_threshold_t(df: int, cluster_alpha: float) -> float:
    """|t| above which the two-tailed p-value is below cluster_alpha."""
    return float(stats.t.ppf(1.0 - float(cluster_alpha) / 2.0, int(df)))


def paired_tstat(diff: np.ndarray) -> np.ndarray:
    """One-sample t of paired differences over axis 0 (dependent-samples t)."""
    diff = np.asarray(diff, dtype=np.float64)
    n = diff.shape[0]
    mean = diff.mean(axis=0)
    sd = diff.std(axis=0, ddof=1)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = mean / (sd / np.sqrt(n))
    t[(sd == 0) & (mean == 0)] = 0.0
    return t


def _signflip_tstats(
    dflat: np.ndarray,
    sumsq: np.ndarray,
    flips: np.ndarray,
) -> np.ndarray:
    """
    t maps for a batch of sign-flip vectors.

    dflat: (n, n_bins), sumsq: (n_bins,) = sum of squares (flip invariant),
    flips: (n_perm, n) of +/-1. Returns (n_perm, n_bins).
    """
    n = dflat.shape[0]
    mean = (flips @ dflat) / float(n)
    var = (sumsq[None, :] - n * mean**2) / float(n - 1)
    var = np.maximum(var, 0.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = mean / np.sqrt(var / float(n))
    t[(var == 0) & (mean == 0)] = 0.0
    return t


def find_clusters(tmap: np.ndarray, threshold: float) -> List[Tuple[int, np.ndarray, float]]:
    """
    Supra-threshold clusters of a 2D t map.

    Returns [(sign, bool_mask, cluster_sum), ...], positive clusters first.
    NaN bins never join a cluster.
    """
    tmap = np.asarray(tmap, dtype=np.float64)
    out: List[Tuple[int, np.ndarray, float]] = []
    with np.errstate(invalid="ignore"):
        sides = ((1, tmap > threshold), (-1, tmap < -threshold))
    for sign, supra in sides:
        labels, n_lab = ndimage.label(supra)
        if n_lab == 0:
            continue
        sums = ndimage.sum(tmap, labels, index=np.arange(1, n_lab + 1))
        for li, s in enumerate(np.atleast_1d(sums), start=1):
            out.append((sign, labels == li, float(s)))
    return out


def max_cluster_stats(tmap: np.ndarray, threshold: float) -> Tuple[float, float]:
    """(largest positive cluster sum, most negative cluster sum); 0 when absent."""
    tmap = np.asarray(tmap, dtype=np.float64)
    best_pos = 0.0
    best_neg = 0.0
    with np.errstate(invalid="ignore"):
        pos = tmap > threshold
        neg = tmap < -threshold
    if pos.any():
        labels, n_lab = ndimage.label(pos)
        best_pos = float(np.max(ndimage.sum(tmap, labels, index=np.arange(1, n_lab + 1))))
    if neg.any():
        labels, n_lab = ndimage.label(neg)
        best_neg = float(np.min(ndimage.sum(tmap, labels, index=np.arange(1, n_lab + 1))))
    return best_pos, best_neg


def cluster_extent(mask_ft: np.ndarray, freqs: np.ndarray, times: np.ndarray) -> Dict[str, float]:
    """Frequency / time range covered by a cluster mask."""
    time_idx = np.where(mask_ft.any(axis=0))[0]
    freq_idx = np.where(mask_ft.any(axis=1))[0]
    return {
        "tmin": float(times[time_idx[0]]),
        "tmax": float(times[time_idx[-1]]),
        "fmin": float(freqs[freq_idx[0]]),
        "fmax": float(freqs[freq_idx[-1]]),
    }


# ═════════════════════════════════════════════════════════════════════════════
#  Backends
# ═════════════════════════════════════════════════════════════════════════════

class ClusterPermutationTest:
    """
    Abstract interface for the paired cluster permutation test.

    run(cond_a, cond_b, freqs, times, channel) with cond_* of shape
    (n_units, n_freqs, n_times) returns a ClusterStatResult.
    """

    def __init__(
        self,
        *,
        n_permutations: int = 1000,
        cluster_alpha: float = 0.05,
        alpha: float = 0.025,
        seed: Optional[int] = 0,
    ):
        self.n_permutations = int(n_permutations)
        self.cluster_alpha = float(cluster_alpha)
        self.alpha = float(alpha)
        self.seed = seed
        if self.n_permutations < 1:
            raise ValueError("n_permutations must be >= 1.")

    def _paired_difference(self, cond_a, cond_b, channel: str) -> np.ndarray:
        a = np.asarray(cond_a, dtype=np.float64)
        b = np.asarray(cond_b, dtype=np.float64)
        if a.shape != b.shape:
            raise ValueError(f"Paired conditions differ in shape: {a.shape} vs {b.shape}")
        if a.ndim != 3:
            raise ValueError("Conditions must have shape (n_units, n_freqs, n_times)")
        if a.shape[0] < 2:
            raise InsufficientSubjectsError(a.shape[0], channel=channel)
        return a - b

    def run(self, cond_a, cond_b, freqs, times, channel: str = "") -> ClusterStatResult:
        raise NotImplementedError


class SignFlipClusterTest(ClusterPermutationTest):
    """Sign-flip permutation test with maxsum cluster statistics."""

    def __init__(self, *, chunk_size: int = 100, **kwargs):
        super().__init__(**kwargs)
        self.chunk_size = max(1, int(chunk_size))

    def null_distribution(self, diff: np.ndarray, threshold: float) -> Tuple[np.ndarray, np.ndarray]:
        """Per-permutation (max positive, min negative) cluster sums."""
        n = diff.shape[0]
        shape = diff.shape[1:]
        dflat = diff.reshape(n, -1)
        sumsq = np.sum(dflat**2, axis=0)

        # All flips drawn up front: the result does not depend on evaluation order.
        rng = np.random.default_rng(self.seed)
        flips = rng.choice(np.array([-1.0, 1.0]), size=(self.n_permutations, n))

        null_pos = np.zeros((self.n_permutations,), dtype=np.float64)
        null_neg = np.zeros((self.n_permutations,), dtype=np.float64)
        for c0 in range(0, self.n_permutations, self.chunk_size):
            c1 = min(self.n_permutations, c0 + self.chunk_size)
            tperm = _signflip_tstats(dflat, sumsq, flips[c0:c1])
            for k in range(c1 - c0):
                null_pos[c0 + k], null_neg[c0 + k] = max_cluster_stats(tperm[k].reshape(shape), threshold)
        return null_pos, null_neg

    def run(self, cond_a, cond_b, freqs, times, channel: str = "") -> ClusterStatResult:
        freqs = np.asarray(freqs, dtype=np.float64)
        times = np.asarray(times, dtype=np.float64)
        diff = self._paired_difference(cond_a, cond_b, channel)
        n = diff.shape[0]
        if diff.shape[1:] != (freqs.shape[0], times.shape[0]):
            raise ValueError(f"Data shape {diff.shape[1:]} does not match freqs x times grid")

        threshold = cluster_threshold_t(n - 1, self.cluster_alpha)
        t_obs = paired_tstat(diff)
        observed = find_clusters(t_obs, threshold)
        null_pos, null_neg = self.null_distribution(diff, threshold)

        pval = np.ones(t_obs.shape, dtype=np.float64)
        mask = np.zeros(t_obs.shape, dtype=bool)
        clusters: List[Dict[str, Any]] = []
        denom = float(self.n_permutations + 1)
        for sign, cmask, cstat in observed:
            if sign > 0:
                p = (1.0 + float(np.sum(null_pos >= cstat))) / denom
            else:
                p = (1.0 + float(np.sum(null_neg <= cstat))) / denom
            pval[cmask] = p
            significant = p < self.alpha
            if significant:
                mask |= cmask
            info = {"sign": int(sign), "stat": float(cstat), "pval": float(p),
                    "n_bins": int(cmask.sum()), "significant": bool(significant)}
            info.update(cluster_extent(cmask, freqs, times))
            clusters.append(info)

        logger.info(
            "Cluster test %s: n=%d, threshold=%.3f, clusters=%d, significant=%d",
            channel, n, threshold, len(clusters), sum(c["significant"] for c in clusters),
        )
        return ClusterStatResult(
            channel=str(channel),
            freqs=freqs,
            times=times,
            tval=t_obs,
            pval=pval,
            mask=mask,
            available=True,
            n_units=int(n),
            clusters=clusters,
            null_pos=null_pos,
            null_neg=null_neg,
        )


class MNEClusterTest(ClusterPermutationTest):
    """
    mne.stats.permutation_cluster_1samp_test on the paired differences.

    MNE reports two-sided cluster p-values (|H0| vs |stat|), which are compared
    against the total alpha (2 * per-tail alpha).
    """

    def run(self, cond_a, cond_b, freqs, times, channel: str = "") -> ClusterStatResult:
        import mne

        freqs = np.asarray(freqs, dtype=np.float64)
        times = np.asarray(times, dtype=np.float64)
        diff = self._paired_difference(cond_a, cond_b, channel)
        n = diff.shape[0]
        nan_bins = np.any(~np.isfinite(diff), axis=0)
        X = np.where(nan_bins[None, :, :], 0.0, diff)

        threshold = cluster_threshold_t(n - 1, self.cluster_alpha)
        T_obs, clusters, cluster_pv, _ = mne.stats.permutation_cluster_1samp_test(
            X,
            n_permutations=int(self.n_permutations),
            threshold=threshold,
            tail=0,
            adjacency=None,
            out_type="mask",
            seed=self.seed,
            verbose=False,
        )

        tval = np.asarray(T_obs, dtype=np.float64).reshape(diff.shape[1:])
        tval[nan_bins] = np.nan
        pval = np.ones(tval.shape, dtype=np.float64)
        mask = np.zeros(tval.shape, dtype=bool)
        infos: List[Dict[str, Any]] = []
        for cl, p in zip(clusters, cluster_pv):
            cmask = np.asarray(cl, dtype=bool).reshape(tval.shape)
            pval[cmask] = float(p)
            significant = float(p) < 2.0 * self.alpha
            if significant:
                mask |= cmask
            sign = 1 if np.nansum(tval[cmask]) >= 0 else -1
            info = {"sign": int(sign), "stat": float(np.nansum(tval[cmask])), "pval": float(p),
                    "n_bins": int(cmask.sum()), "significant": bool(significant)}
            info.update(cluster_extent(cmask, freqs, times))
            infos.append(info)

        return ClusterStatResult(
            channel=str(channel),
            freqs=freqs,
            times=times,
            tval=tval,
            pval=pval,
            mask=mask,
            available=True,
            n_units=int(n),
            clusters=infos,
        )


def make_cluster_test(
    name: str,
    *,
    n_permutations: int = 1000,
    cluster_alpha: float = 0.05,
    alpha: float = 0.025,
    seed: Optional[int] = 0,
) -> ClusterPermutationTest:
    name = str(name).lower().strip()
    kwargs = dict(n_permutations=n_permutations, cluster_alpha=cluster_alpha, alpha=alpha, seed=seed)
    if name == "signflip":
        return SignFlipClusterTest(**kwargs)
    if name == "mne":
        return MNEClusterTest(**kwargs)
    raise ValueError(f"Unknown cluster backend '{name}'. Use 'signflip' or 'mne'.")


# ═════════════════════════════════════════════════════════════════════════════
#  Per-channel driver
# ═════════════════════════════════════════════════════════════════════════════

def restrict_time_index(times: np.ndarray, stats_times: np.ndarray) -> np.ndarray:
    """Indices of stats_times inside the full time grid (every point must exist)."""
    times = np.asarray(times, dtype=np.float64)
    stats_times = np.asarray(stats_times, dtype=np.float64)
    idx = np.array([int(np.argmin(np.abs(times - t))) for t in stats_times], dtype=np.int64)
    if idx.size and not np.allclose(times[idx], stats_times, atol=1e-9):
        raise ValueError(
            f"Statistics window [{stats_times[0]:.3f}, {stats_times[-1]:.3f}] is not on the TFR time grid"
        )
    return idx


def run_channel_tests(
    units: np.ndarray,
    *,
    channels: Sequence[str],
    freqs: np.ndarray,
    times: np.ndarray,
    stats_times: np.ndarray,
    test: ClusterPermutationTest,
) -> List[ClusterStatResult]:
    """
    Run the paired test per channel.

    units: (2, n_units, n_channels, n_freqs, n_times) on the full time grid.
    Channels with fewer than two units are reported as unavailable.
    """
    units = np.asarray(units, dtype=np.float64)
    if units.ndim != 5 or units.shape[0] != 2:
        raise ValueError("units must have shape (2, n_units, n_channels, n_freqs, n_times)")
    if units.shape[2] != len(channels):
        raise ValueError("Channel axis does not match channel labels")

    tidx = restrict_time_index(times, stats_times)
    freqs = np.asarray(freqs, dtype=np.float64)
    st = np.asarray(times, dtype=np.float64)[tidx]

    results: List[ClusterStatResult] = []
    for ci, ch in enumerate(channels):
        a = units[0, :, ci][:, :, tidx]
        b = units[1, :, ci][:, :, tidx]
        try:
            res = test.run(a, b, freqs, st, channel=str(ch))
        except InsufficientSubjectsError as exc:
            logger.warning("Statistics unavailable: %s", exc)
            res = ClusterStatResult.unavailable(str(ch), freqs, st, n_units=units.shape[1])
        results.append(res)
    return results
