"""
Per-trial Morlet time-frequency power.

The numerical kernel sits behind :class:`SpectralTransform` so the backend can be
swapped (SciPy FFT convolution or MNE's ``tfr_array_morlet``). What this module owns
is the resolution schedule and the edge rule:

- cycles per frequency come from :func:`ripple_tfr.config.wavelet_cycles`;
- each trial is detrended with a fixed-order polynomial before the transform;
- power is sampled on the requested time grid and set to NaN wherever the
  wavelet (+/- gwidth standard deviations of its Gaussian envelope, or the
  backend's own support) reaches past the trial boundaries.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)


def wavelet_sigma_t(freqs: np.ndarray, n_cycles: np.ndarray) -> np.ndarray:
    """Temporal std of the Gaussian envelope: sigma_t = cycles / (2*pi*f)."""
    freqs = np.asarray(freqs, dtype=np.float64)
    n_cycles = np.broadcast_to(np.asarray(n_cycles, dtype=np.float64), freqs.shape)
    return n_cycles / (2.0 * np.pi * freqs)


def wavelet_half_support(
    freqs: np.ndarray,
    n_cycles: np.ndarray,
    sfreq: float,
    gwidth: float = 3.0,
) -> np.ndarray:
    """Half-length (samples) of each truncated wavelet."""
    sigma_t = wavelet_sigma_t(freqs, n_cycles)
    return np.ceil(float(gwidth) * sigma_t * float(sfreq)).astype(np.int64)


def remove_polynomial(x: np.ndarray, order: int = 1) -> np.ndarray:
    """Least-squares removal of a polynomial trend along the last axis (order < 0: no-op)."""
    x = np.asarray(x, dtype=np.float64)
    order = int(order)
    if order < 0 or x.shape[-1] == 0:
        return x.copy()
    n = x.shape[-1]
    t = np.linspace(-1.0, 1.0, n)
    V = np.vander(t, order + 1)
    flat = x.reshape(-1, n).T
    coef, *_ = np.linalg.lstsq(V, flat, rcond=None)
    trend = (V @ coef).T.reshape(x.shape)
    return x - trend


class SpectralTransform:
    """
    Abstract interface for the wavelet kernel.

    Implementations map trials (n_trials, n_channels, n_samples) to power
    (n_trials, n_channels, n_freqs, n_samples) at full time resolution.
    """

    name = "abstract"
    # Half-length of the wavelet in std of its Gaussian envelope (None: engine gwidth).
    support_sigmas: Optional[float] = None

    def power(
        self,
        data: np.ndarray,
        sfreq: float,
        freqs: np.ndarray,
        n_cycles: np.ndarray,
    ) -> np.ndarray:
        raise NotImplementedError


class ScipyMorletTransform(SpectralTransform):
    """Morlet power via scipy.signal.fftconvolve (no MNE dependency)."""

    name = "scipy"

    def __init__(self, gwidth: float = 3.0):
        self.gwidth = float(gwidth)
        self.support_sigmas = self.gwidth

    def power(self, data, sfreq, freqs, n_cycles):
        from scipy.signal import fftconvolve

        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 3:
            raise ValueError("data must be 3D (n_trials, n_channels, n_samples)")
        sfreq = float(sfreq)
        freqs = np.asarray(freqs, dtype=np.float64)
        cycles = np.broadcast_to(np.asarray(n_cycles, dtype=np.float64), freqs.shape)

        n_tr, n_ch, n_t = data.shape
        out = np.zeros((n_tr, n_ch, freqs.shape[0], n_t), dtype=np.float64)
        if n_tr == 0:
            return out

        sigma = wavelet_sigma_t(freqs, cycles)
        half = wavelet_half_support(freqs, cycles, sfreq, self.gwidth)
        for fi, f0 in enumerate(freqs):
            tt = np.arange(-half[fi], half[fi] + 1, dtype=np.float64) / sfreq
            w = np.exp(2j * np.pi * float(f0) * tt) * np.exp(-(tt**2) / (2.0 * sigma[fi] ** 2))
            # L2 normalize (keeps scale comparable across freqs)
            w = w / (np.sqrt(np.sum(np.abs(w) ** 2)) + 1e-30)
            y = fftconvolve(data, w[None, None, :], mode="same", axes=-1)
            out[:, :, fi, :] = np.abs(y) ** 2
        return out


class MNEMorletTransform(SpectralTransform):
    """Morlet power via mne.time_frequency.tfr_array_morlet."""

    name = "mne"
    # mne.time_frequency.morlet spans +/- 5 sigma_t.
    support_sigmas = 5.0

    def __init__(self, n_jobs: Optional[int] = 1):
        self.n_jobs = n_jobs

    def power(self, data, sfreq, freqs, n_cycles):
        from mne.time_frequency import tfr_array_morlet

        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 3:
            raise ValueError("data must be 3D (n_trials, n_channels, n_samples)")
        freqs = np.asarray(freqs, dtype=np.float64)
        if data.shape[0] == 0:
            return np.zeros((0, data.shape[1], freqs.shape[0], data.shape[2]), dtype=np.float64)

        power = tfr_array_morlet(
            data,
            sfreq=float(sfreq),
            freqs=freqs,
            n_cycles=np.asarray(n_cycles, dtype=np.float64),
            zero_mean=True,
            use_fft=True,
            decim=1,
            output="power",
            n_jobs=self.n_jobs,
            verbose=False,
        )
        return np.asarray(power, dtype=np.float64)


def make_spectral_transform(name: str, *, gwidth: float = 3.0) -> SpectralTransform:
    name = str(name).lower().strip()
    if name == "scipy":
        return ScipyMorletTransform(gwidth=gwidth)
    if name == "mne":
        return MNEMorletTransform()
    raise ValueError(f"Unknown spectral backend '{name}'. Use 'scipy' or 'mne'.")


class TFREngine:
    """
    Trial windows -> PowerMaps (n_trials, n_channels, n_freqs, n_times).

    Typical usage:
        engine = TFREngine.from_config(cfg)
        power = engine.compute(segment_trials(data, trials))
    """

    def __init__(
        self,
        *,
        sfreq: float,
        offsets: Tuple[int, int],
        freqs: np.ndarray,
        times: np.ndarray,
        n_cycles: np.ndarray,
        gwidth: float = 3.0,
        polyremoval: int = 1,
        transform: Optional[SpectralTransform] = None,
        batch_size: int = 64,
    ):
        self.sfreq = float(sfreq)
        self.offsets = (int(offsets[0]), int(offsets[1]))
        self.freqs = np.asarray(freqs, dtype=np.float64)
        self.times = np.asarray(times, dtype=np.float64)
        self.n_cycles = np.asarray(n_cycles, dtype=np.float64)
        self.gwidth = float(gwidth)
        self.polyremoval = int(polyremoval)
        self.transform = transform or ScipyMorletTransform(gwidth=self.gwidth)
        self.batch_size = max(1, int(batch_size))
        self.edge_width = float(self.transform.support_sigmas or self.gwidth)

        if self.sfreq <= 0:
            raise ValueError("sfreq must be > 0.")
        if self.freqs.ndim != 1 or np.any(self.freqs <= 0):
            raise ValueError("freqs must be a 1D array of positive frequencies.")
        if self.n_cycles.shape != self.freqs.shape:
            raise ValueError("n_cycles must have one entry per frequency.")

        self.trial_len = self.offsets[1] - self.offsets[0] + 1
        # Sample index of each requested time point inside a trial.
        self.time_idx = np.rint(self.times * self.sfreq).astype(np.int64) - self.offsets[0]
        if np.any(self.time_idx < 0) or np.any(self.time_idx >= self.trial_len):
            raise ValueError(
                "Time grid exceeds the trial window: "
                f"[{self.times[0]:.3f}, {self.times[-1]:.3f}] s vs "
                f"[{self.offsets[0] / self.sfreq:.3f}, {self.offsets[1] / self.sfreq:.3f}] s"
            )
        self.valid = self._edge_mask()

    @classmethod
    def from_config(cls, cfg, transform: Optional[SpectralTransform] = None) -> "TFREngine":
        return cls(
            sfreq=cfg.fsample,
            offsets=cfg.trial_offsets,
            freqs=cfg.freqs,
            times=cfg.times,
            n_cycles=cfg.n_cycles,
            gwidth=cfg.wavelet_gwidth,
            polyremoval=cfg.polyremoval,
            transform=transform or make_spectral_transform(cfg.spectral_backend, gwidth=cfg.wavelet_gwidth),
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return (int(self.freqs.shape[0]), int(self.times.shape[0]))

    def _edge_mask(self) -> np.ndarray:
        """(n_freqs, n_times) True where the wavelet fits inside the trial."""
        half = wavelet_half_support(self.freqs, self.n_cycles, self.sfreq, self.edge_width)
        lo = self.time_idx[None, :] - half[:, None]
        hi = self.time_idx[None, :] + half[:, None]
        return (lo >= 0) & (hi <= self.trial_len - 1)

    def compute(self, trial_data: np.ndarray) -> np.ndarray:
        """
        trial_data: (n_trials, n_channels, trial_len)
        Returns float64 power (n_trials, n_channels, n_freqs, n_times), NaN at the edges.
        """
        x = np.asarray(trial_data, dtype=np.float64)
        if x.ndim == 2:
            x = x[:, None, :]
        if x.ndim != 3 or x.shape[-1] != self.trial_len:
            raise ValueError(
                f"trial_data must be (n_trials, n_channels, {self.trial_len}), got {x.shape}"
            )

        n_tr, n_ch, _ = x.shape
        power = np.empty((n_tr, n_ch, *self.shape), dtype=np.float64)
        # Full-resolution power is trial_len samples long; keep batches small.
        for b0 in range(0, n_tr, self.batch_size):
            b1 = min(n_tr, b0 + self.batch_size)
            xb = remove_polynomial(x[b0:b1], self.polyremoval)
            full = self.transform.power(xb, self.sfreq, self.freqs, self.n_cycles)
            power[b0:b1] = full[..., self.time_idx]
        power[..., ~self.valid] = np.nan
        return power
