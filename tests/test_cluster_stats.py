import numpy as np
import pytest

from ripple_tfr.cluster_stats import (
    SignFlipClusterTest,
    cluster_threshold_t,
    find_clusters,
    paired_tstat,
    run_channel_tests,
)
from ripple_tfr.errors import InsufficientSubjectsError

FREQS = np.arange(10, dtype=float) + 1.0
TIMES = np.round(np.arange(20) * 0.05 - 0.5, 10)


def _shifted(n=12, shift=3.0, seed=0):
    rng = np.random.default_rng(seed)
    b = rng.standard_normal((n, 10, 20))
    a = b + rng.standard_normal((n, 10, 20))
    a[:, 2:5, 5:10] += shift
    return a, b


def test_threshold_matches_t_distribution():
    assert cluster_threshold_t(11, 0.05) == pytest.approx(2.200985, abs=1e-5)


def test_paired_t_zero_variance():
    diff = np.zeros((5, 2, 2))
    diff[:, 0, 0] = [1.0, 2.0, 3.0, 4.0, 5.0]
    t = paired_tstat(diff)
    assert t[0, 0] == pytest.approx(3.0 / (np.std([1, 2, 3, 4, 5], ddof=1) / np.sqrt(5)))
    assert t[1, 1] == 0.0


def test_clusters_are_four_connected():
    tmap = np.zeros((5, 5))
    tmap[0, 0] = 5.0
    tmap[1, 1] = 5.0  # diagonal neighbour -> separate cluster
    tmap[3, 3:5] = 4.0
    tmap[4, 0] = -6.0
    clusters = find_clusters(tmap, 2.0)
    pos = sorted(c[2] for c in clusters if c[0] > 0)
    neg = [c[2] for c in clusters if c[0] < 0]
    assert pos == [5.0, 5.0, 8.0]
    assert neg == [-6.0]


def test_nan_bins_never_form_clusters():
    tmap = np.full((3, 3), np.nan)
    assert find_clusters(tmap, 1.0) == []


def test_identical_conditions_have_no_significant_bins():
    a, _ = _shifted()
    res = SignFlipClusterTest(n_permutations=100, seed=0).run(a, a.copy(), FREQS, TIMES, channel="NC")
    assert res.available
    assert not res.mask.any()
    assert np.all(res.pval == 1.0)
    assert np.all(res.tval == 0.0)
    assert res.clusters == []


def test_consistent_shift_is_detected():
    a, b = _shifted()
    res = SignFlipClusterTest(n_permutations=200, seed=1).run(a, b, FREQS, TIMES, channel="HIPP")
    assert res.mask[2:5, 5:10].all()
    assert res.mask.mean() < 0.4
    sig = [c for c in res.clusters if c["significant"]]
    assert any(c["sign"] == 1 for c in sig)
    assert np.all(res.pval[2:5, 5:10] == pytest.approx(1.0 / 201.0, abs=3.0 / 201.0))
    assert res.pval.min() >= 1.0 / 201.0


def test_negative_shift_gives_negative_cluster():
    a, b = _shifted()
    res = SignFlipClusterTest(n_permutations=200, seed=1).run(b, a, FREQS, TIMES)
    assert res.mask[2:5, 5:10].all()
    assert any(c["sign"] == -1 and c["significant"] for c in res.clusters)


def test_same_seed_is_reproducible():
    a, b = _shifted(shift=1.0)
    r1 = SignFlipClusterTest(n_permutations=100, seed=5).run(a, b, FREQS, TIMES)
    r2 = SignFlipClusterTest(n_permutations=100, seed=5).run(a, b, FREQS, TIMES)
    assert np.array_equal(r1.pval, r2.pval)
    assert np.array_equal(r1.null_pos, r2.null_pos)
    assert np.array_equal(r1.null_neg, r2.null_neg)


def test_single_unit_raises():
    a, b = _shifted(n=1)
    with pytest.raises(InsufficientSubjectsError):
        SignFlipClusterTest(n_permutations=10).run(a, b, FREQS, TIMES)


def test_channel_driver_marks_unavailable_channels():
    times = np.round(np.arange(30) * 0.05 - 0.75, 10)
    units = np.random.default_rng(0).standard_normal((2, 1, 2, 10, 30))
    out = run_channel_tests(
        units,
        channels=["NC", "HIPP"],
        freqs=FREQS,
        times=times,
        stats_times=TIMES,
        test=SignFlipClusterTest(n_permutations=10),
    )
    assert [r.channel for r in out] == ["NC", "HIPP"]
    for r in out:
        assert not r.available
        assert r.tval.shape == (10, 20)
        assert np.isnan(r.tval).all() and np.isnan(r.pval).all()
        assert not r.mask.any()


def test_channel_driver_restricts_time_window():
    a, b = _shifted()
    times = np.round(np.arange(30) * 0.05 - 0.75, 10)
    pad = np.zeros((12, 10, 5))
    units = np.stack([
        np.concatenate([pad, a, pad], axis=2)[:, None],
        np.concatenate([pad, b, pad], axis=2)[:, None],
    ])
    out = run_channel_tests(
        units,
        channels=["NC"],
        freqs=FREQS,
        times=times,
        stats_times=TIMES,
        test=SignFlipClusterTest(n_permutations=50, seed=0),
    )
    assert out[0].tval.shape == (10, 20)
    np.testing.assert_allclose(out[0].times, TIMES)
    np.testing.assert_allclose(out[0].tval, paired_tstat(a - b))


def test_mne_backend_detects_shift():
    pytest.importorskip("mne")
    from ripple_tfr.cluster_stats import MNEClusterTest

    a, b = _shifted()
    res = MNEClusterTest(n_permutations=200, seed=1).run(a, b, FREQS, TIMES)
    assert res.mask[2:5, 5:10].all()


def test_null_distribution_is_symmetric_around_zero():
    rng = np.random.default_rng(11)
    a = rng.standard_normal((12, 10, 20))
    b = rng.standard_normal((12, 10, 20))
    res = SignFlipClusterTest(n_permutations=1000, seed=3).run(a, b, FREQS, TIMES)
    assert np.all(res.null_pos >= 0.0)
    assert np.all(res.null_neg <= 0.0)
    assert res.null_pos.mean() > 0.0
    assert abs(res.null_pos.mean() + res.null_neg.mean()) < 0.3 * res.null_pos.mean()
