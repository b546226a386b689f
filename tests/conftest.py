from pathlib import Path

import numpy as np
import pytest
from scipy.io import savemat

FS = 100.0
N_SAMPLES = 6000
N_REALIZATIONS = 2


def small_config_overrides():
    """Config for the synthetic study: 100 Hz, 3 s trials, coarse grids."""
    return {
        "n_subjects": 3,
        "n_realizations": N_REALIZATIONS,
        "fsample": FS,
        "artifact_pad": [-0.1, 0.1],
        "min_sleep_len": 1.0,
        "time_pad": [-1.5, 1.5],
        "time_start": -0.5,
        "time_stop": 0.5,
        "time_step": 0.1,
        "freq_start": 4.0,
        "freq_stop": 10.0,
        "freq_step": 2.0,
        "min_cycles": 3.0,
        "low_freq_cycles": [],
        "stats_time_start": -0.3,
        "stats_time_stop": 0.3,
        "n_permutations": 50,
    }


def _cell(x):
    c = np.empty((1,), dtype=object)
    c[0] = np.asarray(x, dtype=np.float64)[None, :]
    return c


def write_subject(root: Path, subject: int, *, ripples, rejects=None, seed=0):
    """Write one subject of the synthetic study (event samples are 1-based)."""
    rng = np.random.default_rng(seed)
    eegs = root / "EEGs"
    eegs.mkdir(parents=True, exist_ok=True)

    t = np.arange(N_SAMPLES) / FS
    for label in ("NC", "HIPP"):
        sig = rng.standard_normal(N_SAMPLES) + np.sin(2 * np.pi * 6.0 * t)
        savemat(str(eegs / f"pat{subject:02d}_{label}.mat"), {"trial": _cell(sig), "fsample": FS})

    savemat(
        str(eegs / f"pat{subject:02d}_NC_supplement.mat"),
        {
            "datalen": N_SAMPLES,
            "artifacts": np.array([[1000.0, 1100.0]]),
            "scoring": np.full(N_SAMPLES, 2.0),
        },
    )
    savemat(
        str(eegs / f"pat{subject:02d}_HIPP_supplement.mat"),
        {"datalen": N_SAMPLES, "artifacts": np.zeros((0, 2))},
    )

    ripples = np.asarray(ripples, dtype=np.float64)
    rej = np.zeros(ripples.shape[0], dtype=np.uint8) if rejects is None else np.asarray(rejects, dtype=np.uint8)
    (root / "Ripples").mkdir(parents=True, exist_ok=True)
    savemat(
        str(root / "Ripples" / f"pat{subject:02d}_HIPP_ripples.mat"),
        {"EvtInfo": {"maxTime": ripples, "numEvt": int(ripples.shape[0])}, "rejects": rej},
    )

    for rep in range(1, N_REALIZATIONS + 1):
        d = root / "Control events" / str(rep)
        d.mkdir(parents=True, exist_ok=True)
        for tag, base in (("controlNREM", 700.0), ("controlREM", 900.0)):
            ev = base + 10.0 * rep + 800.0 * np.arange(6)
            savemat(
                str(d / f"pat{subject:02d}_HIPP_{tag}.mat"),
                {"nonEvtInfo": {"maxTime": ev, "numEvt": int(ev.shape[0])}},
            )


@pytest.fixture
def study_root(tmp_path):
    """Three subjects; subject 3 has no usable ripples (dof = 0)."""
    root = tmp_path / "study"
    # 100 is out of range, 1050 overlaps the artifact, 4000 is rejected
    write_subject(root, 1, ripples=[100, 500, 1050, 2000, 3000, 4000, 5000], rejects=[0, 0, 0, 0, 0, 1, 0], seed=1)
    write_subject(root, 2, ripples=[600, 2100, 3100, 4100, 5100], seed=2)
    write_subject(root, 3, ripples=[1050], seed=3)
    return root
