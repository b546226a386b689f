"""
Analysis configuration: compiled-in constants of the ripple / control-event TFR study.

Everything the batch run needs is a field of :class:`AnalysisConfig`. The defaults
reproduce the published analysis; a YAML/JSON file can override individual fields
(see :func:`load_config`).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
import json
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

import numpy as np


def make_grid(start: float, stop: float, step: float) -> np.ndarray:
    """
    Inclusive, evenly stepped grid [start, stop] without float drift.

    np.arange accumulates rounding error over long grids; building from an
    integer count keeps e.g. -2.0:0.02:1.0 exactly 151 points.
    """
    start = float(start)
    stop = float(stop)
    step = float(step)
    if step <= 0:
        raise ValueError("Grid step must be > 0.")
    if stop < start:
        raise ValueError("Grid stop must be >= start.")
    n = int(np.floor((stop - start) / step + 1e-9)) + 1
    return np.round(start + step * np.arange(n, dtype=np.float64), 10)


def wavelet_cycles(
    freqs: np.ndarray,
    *,
    cycles_per_hz: float = 0.5,
    min_cycles: float = 5.0,
    low_freq_cycles: Sequence[float] = (2, 3, 3, 3, 3, 3, 4, 4),
) -> np.ndarray:
    """
    Number of Morlet cycles per frequency.

    ceil(f * cycles_per_hz), floored at min_cycles, then the lowest frequencies are
    overridden by low_freq_cycles (short wavelets so low-frequency atoms still fit the
    trial window).
    """
    freqs = np.asarray(freqs, dtype=np.float64)
    cycles = np.ceil(freqs * float(cycles_per_hz))
    cycles[cycles < float(min_cycles)] = float(min_cycles)
    low = np.asarray(low_freq_cycles, dtype=np.float64)
    n_low = min(low.shape[0], cycles.shape[0])
    cycles[:n_low] = low[:n_low]
    return cycles


@dataclass(frozen=True)
class AnalysisConfig:
    """Configuration for the NREM-control vs REM-control TFR analysis."""

    # Condition / channel definitions
    conditions: Tuple[str, ...] = ("NREM-ctrl", "REM-ctrl")
    channels: Tuple[str, ...] = ("NC", "HIPP")
    # Channel whose supplement file carries the sleep scoring
    stage_channel: str = "NC"
    # Channel the ripple / control events were detected on
    event_channel: str = "HIPP"

    n_subjects: int = 14
    n_realizations: int = 100
    fsample: float = 1000.0

    # Artifact padding (s), applied as [start + pad[0], end + pad[1]]
    artifact_pad: Tuple[float, float] = (-0.25, 0.25)
    # Sleep stages of interest (NREM)
    stages_of_interest: Tuple[int, ...] = (2, 3, 4, 5)
    # Minimal clean segment length (s); shorter islands are discarded
    min_sleep_len: float = 3.0
    # Trial window around each event (s)
    time_pad: Tuple[float, float] = (-3.1, 2.1)

    # TFR grids
    time_start: float = -2.0
    time_stop: float = 1.0
    time_step: float = 0.02
    freq_start: float = 1.0
    freq_stop: float = 20.0
    freq_step: float = 0.5

    # Morlet cycle schedule
    cycles_per_hz: float = 0.5
    min_cycles: float = 5.0
    low_freq_cycles: Tuple[float, ...] = (2, 3, 3, 3, 3, 3, 4, 4)
    # Wavelet support in standard deviations of the Gaussian envelope
    wavelet_gwidth: float = 3.0
    # Per-trial polynomial removal order before the transform
    polyremoval: int = 1
    # 'scipy' (FFT convolution) or 'mne' (tfr_array_morlet)
    spectral_backend: str = "scipy"

    # Cluster statistics
    stats_time_start: float = -1.0
    stats_time_stop: float = 1.0
    n_permutations: int = 1000
    cluster_alpha: float = 0.05
    alpha: float = 0.025
    # 'subject' (subject averages) or 'trial' (pooled realization-averaged trials)
    stats_unit: str = "subject"
    # 'signflip' (this package) or 'mne' (permutation_cluster_1samp_test)
    cluster_backend: str = "signflip"

    # Seeds for the randomized steps
    balance_seed: int = 0
    stats_seed: int = 0

    output_name: str = "tfr_nrem_remCtrl"

    def __post_init__(self):
        if len(self.conditions) != 2:
            raise ValueError("Exactly two control conditions are compared.")
        if self.stage_channel not in self.channels:
            raise ValueError(f"stage_channel '{self.stage_channel}' not in channels {self.channels}.")
        if self.fsample <= 0:
            raise ValueError("fsample must be > 0.")
        if self.n_realizations < 1:
            raise ValueError("n_realizations must be >= 1.")
        if self.time_pad[1] <= self.time_pad[0]:
            raise ValueError("time_pad must satisfy pad[0] < pad[1].")
        if self.stats_unit not in ("subject", "trial"):
            raise ValueError("stats_unit must be 'subject' or 'trial'.")
        if self.spectral_backend not in ("scipy", "mne"):
            raise ValueError("spectral_backend must be 'scipy' or 'mne'.")
        if self.cluster_backend not in ("signflip", "mne"):
            raise ValueError("cluster_backend must be 'signflip' or 'mne'.")
        if not (0.0 < self.alpha < 1.0 and 0.0 < self.cluster_alpha < 1.0):
            raise ValueError("alpha and cluster_alpha must be in (0, 1).")

    # ------------------------------------------------------------------
    # Derived quantities
    # ------------------------------------------------------------------

    @property
    def times(self) -> np.ndarray:
        return make_grid(self.time_start, self.time_stop, self.time_step)

    @property
    def freqs(self) -> np.ndarray:
        return make_grid(self.freq_start, self.freq_stop, self.freq_step)

    @property
    def stats_times(self) -> np.ndarray:
        return make_grid(self.stats_time_start, self.stats_time_stop, self.time_step)

    @property
    def n_cycles(self) -> np.ndarray:
        return wavelet_cycles(
            self.freqs,
            cycles_per_hz=self.cycles_per_hz,
            min_cycles=self.min_cycles,
            low_freq_cycles=self.low_freq_cycles,
        )

    def seconds_to_samples(self, sec: float) -> int:
        return int(round(float(sec) * self.fsample))

    @property
    def artifact_pad_samples(self) -> Tuple[int, int]:
        return (self.seconds_to_samples(self.artifact_pad[0]), self.seconds_to_samples(self.artifact_pad[1]))

    @property
    def trial_offsets(self) -> Tuple[int, int]:
        return (self.seconds_to_samples(self.time_pad[0]), self.seconds_to_samples(self.time_pad[1]))

    @property
    def min_sleep_samples(self) -> int:
        return self.seconds_to_samples(self.min_sleep_len)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, overrides: Optional[Mapping[str, Any]] = None) -> "AnalysisConfig":
        """Build a config from defaults + overrides. Unknown keys are an error."""
        base = cls()
        if not overrides:
            return base
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(overrides) - set(known))
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")

        updates: Dict[str, Any] = {}
        for key, value in overrides.items():
            default = getattr(base, key)
            if isinstance(default, tuple) and isinstance(value, (list, tuple)):
                value = tuple(value)
            updates[key] = value
        return replace(base, **updates)


def load_config(path: Union[str, Path]) -> AnalysisConfig:
    """Read YAML or JSON overrides and return the resulting AnalysisConfig."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    if path.suffix.lower() in (".yml", ".yaml"):
        import yaml

        with path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    else:
        with path.open("r", encoding="utf-8") as f:
            raw = json.load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return AnalysisConfig.from_dict(raw)
