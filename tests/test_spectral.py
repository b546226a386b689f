import numpy as np
import pytest

from ripple_tfr.config import AnalysisConfig, make_grid
from ripple_tfr.spectral import TFREngine, remove_polynomial, wavelet_half_support

FS = 200.0
OFFSETS = (-200, 200)  # 2 s trials, 401 samples


def _engine(**kwargs):
    params = dict(
        sfreq=FS,
        offsets=OFFSETS,
        freqs=np.array([5.0, 10.0, 20.0]),
        times=make_grid(-0.9, 0.9, 0.1),
        n_cycles=np.array([5.0, 5.0, 5.0]),
    )
    params.update(kwargs)
    return TFREngine(**params)


def _sine(f_hz, n_trials=2, n_ch=1):
    t = (OFFSETS[0] + np.arange(OFFSETS[1] - OFFSETS[0] + 1)) / FS
    x = np.sin(2 * np.pi * f_hz * t)
    return np.broadcast_to(x, (n_trials, n_ch, t.shape[0])).copy()


def test_output_shape_and_dtype():
    engine = _engine()
    power = engine.compute(_sine(10.0, n_trials=3, n_ch=2))
    assert power.shape == (3, 2, 3, 19)
    assert power.dtype == np.float64


def test_edges_are_nan_exactly_where_wavelet_leaves_trial():
    engine = _engine()
    power = engine.compute(_sine(10.0))
    assert np.array_equal(np.isnan(power[0, 0]), ~engine.valid)
    # 5 Hz / 5 cycles: half support 96 samples; t=-0.9 s sits 20 samples into the trial
    assert wavelet_half_support(np.array([5.0]), np.array([5.0]), FS)[0] == 96
    assert np.isnan(power[0, 0, 0, 0])
    assert np.isfinite(power[0, 0, 0, 4])
    assert np.isfinite(power[0, 0, 2, 1])


def test_peak_at_signal_frequency():
    engine = _engine()
    power = engine.compute(_sine(10.0))
    t0 = int(np.argmin(np.abs(engine.times)))
    assert int(np.argmax(power[0, 0, :, t0])) == 1


def test_small_batches_match_single_batch():
    x = np.random.default_rng(0).standard_normal((5, 2, 401))
    a = _engine(batch_size=2).compute(x)
    b = _engine(batch_size=64).compute(x)
    np.testing.assert_allclose(a, b, rtol=1e-10, atol=1e-10, equal_nan=True)


def test_linear_trend_is_removed():
    x = np.linspace(-3.0, 7.0, 500)[None, None, :]
    np.testing.assert_allclose(remove_polynomial(x, 1), 0.0, atol=1e-10)


def test_time_grid_outside_trial_raises():
    with pytest.raises(ValueError):
        _engine(times=make_grid(-1.5, 0.0, 0.1))


def test_default_configuration_has_no_edge_bins():
    cfg = AnalysisConfig()
    engine = TFREngine.from_config(cfg)
    assert engine.shape == (39, 151)
    assert engine.trial_len == 5201
    assert engine.valid.all()


def test_mne_backend_peak():
    pytest.importorskip("mne")
    from ripple_tfr.spectral import MNEMorletTransform

    engine = _engine(transform=MNEMorletTransform())
    power = engine.compute(_sine(10.0))
    t0 = int(np.argmin(np.abs(engine.times)))
    assert int(np.argmax(power[0, 0, :, t0])) == 1


def test_mne_backend_uses_its_wider_support_for_edges():
    from ripple_tfr.spectral import MNEMorletTransform

    scipy_engine = _engine()
    mne_engine = _engine(transform=MNEMorletTransform())
    assert scipy_engine.edge_width == 3.0
    assert mne_engine.edge_width == 5.0
    # 5 Hz / 5 cycles at t=-0.4 s: 3 sigma fits the trial, 5 sigma does not
    assert scipy_engine.valid[0, 5]
    assert not mne_engine.valid[0, 5]
    assert not (mne_engine.valid & ~scipy_engine.valid).any()
