"""
Study inputs (MATLAB .mat files) and the result container (.npz).

Input layout under a data root (NN = two-digit subject number, LABEL = channel):

    EEGs/patNN_LABEL.mat                          raw struct: trial, fsample
    EEGs/patNN_LABEL_supplement.mat               datalen, artifacts, [scoring]
    Ripples/patNN_HIPP_ripples.mat                EvtInfo.maxTime, EvtInfo.numEvt, rejects
    Control events/<rep>/patNN_HIPP_controlNREM.mat   nonEvtInfo.maxTime, nonEvtInfo.numEvt
    Control events/<rep>/patNN_HIPP_controlREM.mat

MATLAB files use 1-based sample indices and inclusive artifact intervals; the
loaders return 0-based event samples and half-open [start, end) intervals.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
from scipy.io import loadmat

from .errors import InputFileError

logger = logging.getLogger(__name__)

INDIV_DIMS = "Type x Subject x Channel x Freq x Time"
GRDAVG_DIMS = "Type x Channel x Freq x Time"
STATS_DIMS = "Channel x Freq x Time"
TRIAL_DIMS = "Type x Trial x Channel x Freq x Time"


# ═════════════════════════════════════════════════════════════════════════════
#  Loaded input records
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class Recording:
    """One channel of one subject: 1D float64 signal at fsample Hz."""

    signal: np.ndarray
    fsample: Optional[float] = None

    @property
    def n_samples(self) -> int:
        return int(self.signal.shape[0])


@dataclass
class Supplement:
    """Per-channel side information (artifacts as 0-based half-open intervals)."""

    datalen: int
    artifacts: np.ndarray
    scoring: Optional[np.ndarray] = None


@dataclass
class EventList:
    """Event centres as 0-based sample indices, plus optional rejection flags."""

    samples: np.ndarray
    rejects: Optional[np.ndarray] = None

    @property
    def n_events(self) -> int:
        return int(self.samples.shape[0])


# ═════════════════════════════════════════════════════════════════════════════
#  Path layout
# ═════════════════════════════════════════════════════════════════════════════

def control_file_tag(condition: str) -> str:
    """'NREM-ctrl' -> 'controlNREM'."""
    stage = str(condition).split("-")[0].strip()
    return f"control{stage}"


@dataclass(frozen=True)
class StudyLayout:
    """File naming of the study directory."""

    root: Path
    event_channel: str = "HIPP"

    def __post_init__(self):
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def recording_path(self, subject: int, label: str) -> Path:
        return self.root / "EEGs" / f"pat{int(subject):02d}_{label}.mat"

    def supplement_path(self, subject: int, label: str) -> Path:
        return self.root / "EEGs" / f"pat{int(subject):02d}_{label}_supplement.mat"

    def ripple_path(self, subject: int) -> Path:
        return self.root / "Ripples" / f"pat{int(subject):02d}_{self.event_channel}_ripples.mat"

    def control_path(self, subject: int, condition: str, realization: int) -> Path:
        """realization is 1-based, matching the directory names."""
        name = f"pat{int(subject):02d}_{self.event_channel}_{control_file_tag(condition)}.mat"
        return self.root / "Control events" / str(int(realization)) / name


# ═════════════════════════════════════════════════════════════════════════════
#  .mat helpers
# ═════════════════════════════════════════════════════════════════════════════

def _read_mat(path: Path, *, subject: Optional[int], channel: Optional[str]) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise InputFileError("Input file not found", subject=subject, channel=channel, path=path)
    try:
        return loadmat(str(path), squeeze_me=True, struct_as_record=False)
    except Exception as exc:
        raise InputFileError(
            f"Failed to parse MATLAB file: {type(exc).__name__}: {exc}",
            subject=subject,
            channel=channel,
            path=path,
        ) from exc


def _field(obj: Any, name: str, *, path: Path, subject: Optional[int], channel: Optional[str]) -> Any:
    if isinstance(obj, dict):
        if name in obj:
            return obj[name]
    elif hasattr(obj, name):
        return getattr(obj, name)
    raise InputFileError(f"Missing field '{name}'", subject=subject, channel=channel, path=path)


def _as_signal(trial: Any) -> np.ndarray:
    """FieldTrip 'trial' (cell of 1 x n, or a plain array) -> 1D float64."""
    arr = np.asarray(trial)
    if arr.dtype == object:
        cells = [np.asarray(c, dtype=np.float64).ravel() for c in arr.ravel()]
        return np.concatenate(cells) if cells else np.zeros((0,), dtype=np.float64)
    return np.asarray(arr, dtype=np.float64).ravel()


def _event_samples(max_time: Any, num_evt: Any, *, path: Path, subject: int, channel: str) -> np.ndarray:
    samples = np.atleast_1d(np.asarray(max_time, dtype=np.float64)).ravel()
    n_evt = int(np.asarray(num_evt).ravel()[0]) if np.asarray(num_evt).size else 0
    if n_evt == 0:
        return np.zeros((0,), dtype=np.int64)
    if samples.shape[0] != n_evt:
        raise InputFileError(
            f"numEvt={n_evt} does not match {samples.shape[0]} maxTime entries",
            subject=subject,
            channel=channel,
            path=path,
        )
    return np.rint(samples).astype(np.int64) - 1


# ═════════════════════════════════════════════════════════════════════════════
#  Loaders
# ═════════════════════════════════════════════════════════════════════════════

def load_recording(layout: StudyLayout, subject: int, label: str) -> Recording:
    path = layout.recording_path(subject, label)
    mat = _read_mat(path, subject=subject, channel=label)
    signal = _as_signal(_field(mat, "trial", path=path, subject=subject, channel=label))
    fsample = mat.get("fsample", None)
    fsample = None if fsample is None else float(np.asarray(fsample).ravel()[0])
    return Recording(signal=signal, fsample=fsample)


def load_supplement(layout: StudyLayout, subject: int, label: str, *, need_scoring: bool = False) -> Supplement:
    path = layout.supplement_path(subject, label)
    mat = _read_mat(path, subject=subject, channel=label)
    datalen = int(np.asarray(_field(mat, "datalen", path=path, subject=subject, channel=label)).ravel()[0])

    raw = np.asarray(_field(mat, "artifacts", path=path, subject=subject, channel=label), dtype=np.float64)
    if raw.size == 0:
        artifacts = np.zeros((0, 2), dtype=np.int64)
    else:
        raw = raw.reshape(-1, 2)
        # 1-based inclusive [s, e] -> 0-based half-open [s-1, e)
        artifacts = np.stack([np.rint(raw[:, 0]) - 1, np.rint(raw[:, 1])], axis=1).astype(np.int64)

    scoring = None
    if need_scoring:
        scoring = np.asarray(_field(mat, "scoring", path=path, subject=subject, channel=label)).ravel()
        if scoring.shape[0] != datalen:
            raise InputFileError(
                f"scoring length {scoring.shape[0]} != datalen {datalen}",
                subject=subject,
                channel=label,
                path=path,
            )
    return Supplement(datalen=datalen, artifacts=artifacts, scoring=scoring)


def load_ripple_events(layout: StudyLayout, subject: int) -> EventList:
    path = layout.ripple_path(subject)
    ch = layout.event_channel
    mat = _read_mat(path, subject=subject, channel=ch)
    info = _field(mat, "EvtInfo", path=path, subject=subject, channel=ch)
    samples = _event_samples(
        _field(info, "maxTime", path=path, subject=subject, channel=ch),
        _field(info, "numEvt", path=path, subject=subject, channel=ch),
        path=path,
        subject=subject,
        channel=ch,
    )

    rejects = None
    if "rejects" in mat:
        rejects = np.atleast_1d(np.asarray(mat["rejects"])).ravel().astype(bool)
        if rejects.size == 0 and samples.size == 0:
            rejects = np.zeros((0,), dtype=bool)
        if rejects.shape[0] != samples.shape[0]:
            raise InputFileError(
                f"rejects length {rejects.shape[0]} != number of ripples {samples.shape[0]}",
                subject=subject,
                channel=ch,
                path=path,
            )
    return EventList(samples=samples, rejects=rejects)


def load_control_events(layout: StudyLayout, subject: int, condition: str, realization: int) -> EventList:
    path = layout.control_path(subject, condition, realization)
    ch = layout.event_channel
    mat = _read_mat(path, subject=subject, channel=ch)
    info = _field(mat, "nonEvtInfo", path=path, subject=subject, channel=ch)
    samples = _event_samples(
        _field(info, "maxTime", path=path, subject=subject, channel=ch),
        _field(info, "numEvt", path=path, subject=subject, channel=ch),
        path=path,
        subject=subject,
        channel=ch,
    )
    return EventList(samples=samples)


# ═════════════════════════════════════════════════════════════════════════════
#  Result container
# ═════════════════════════════════════════════════════════════════════════════

def save_results(
    npz_path: Union[str, Path],
    *,
    params: Dict[str, Any],
    conditions: Sequence[str],
    channels: Sequence[str],
    subjects: Sequence[int],
    freqs: np.ndarray,
    times: np.ndarray,
    n_cycles: np.ndarray,
    dof: np.ndarray,
    indiv: np.ndarray,
    grdavg: np.ndarray,
    stats: Optional[Sequence[Any]] = None,
    stats_unit: Optional[str] = None,
    trial_indiv: Optional[np.ndarray] = None,
    timing: Optional[Dict[str, float]] = None,
) -> str:
    """
    Save the group analysis to one compressed npz file.

    stats is a sequence of ClusterStatResult (one per channel, in channel order).
    All numeric maps are stored as float64.

    Returns
    -------
    npz_path : str
        The output path (for chaining).
    """
    npz_path = str(npz_path)
    Path(npz_path).parent.mkdir(parents=True, exist_ok=True)

    data = {
        "params": np.array([dict(params)], dtype=object),
        "conditions": np.array([str(x) for x in conditions], dtype=object),
        "channels": np.array([str(x) for x in channels], dtype=object),
        "subjects": np.asarray(list(subjects), dtype=np.int64),
        "freqs": np.asarray(freqs, dtype=np.float64),
        "times": np.asarray(times, dtype=np.float64),
        "n_cycles": np.asarray(n_cycles, dtype=np.float64),
        "dof": np.asarray(dof, dtype=np.int64),
        "indiv": np.asarray(indiv, dtype=np.float64),
        "indiv_dims": np.array([INDIV_DIMS], dtype=object),
        "grdavg": np.asarray(grdavg, dtype=np.float64),
        "grdavg_dims": np.array([GRDAVG_DIMS], dtype=object),
    }

    if stats is not None:
        stats = list(stats)
        data["stats_channels"] = np.array([s.channel for s in stats], dtype=object)
        data["stats_unit"] = np.array([str(stats_unit or "subject")], dtype=object)
        data["stats_dims"] = np.array([STATS_DIMS], dtype=object)
        if stats:
            data["stats_freqs"] = np.asarray(stats[0].freqs, dtype=np.float64)
            data["stats_times"] = np.asarray(stats[0].times, dtype=np.float64)
            data["stats_tval"] = np.stack([s.tval for s in stats]).astype(np.float64)
            data["stats_pval"] = np.stack([s.pval for s in stats]).astype(np.float64)
            data["stats_mask"] = np.stack([s.mask for s in stats]).astype(bool)
        data["stats_available"] = np.array([bool(s.available) for s in stats], dtype=bool)
        data["stats_n_units"] = np.array([int(s.n_units) for s in stats], dtype=np.int64)
        clusters = np.empty((len(stats),), dtype=object)
        for ci, s in enumerate(stats):
            clusters[ci] = list(s.clusters)
        data["stats_clusters"] = clusters

    if trial_indiv is not None:
        data["trial_indiv"] = np.asarray(trial_indiv, dtype=np.float64)
        data["trial_indiv_dims"] = np.array([TRIAL_DIMS], dtype=object)
    if timing is not None:
        data["timing"] = np.array([dict(timing)], dtype=object)

    np.savez_compressed(npz_path, **data)
    logger.info("Saved results: %s", npz_path)
    return npz_path


def load_results(npz_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a result container written by save_results.

    Returns a dict with standardized keys; per-channel statistics are also
    grouped under out['stats'][channel].
    """
    d = np.load(str(npz_path), allow_pickle=True)

    out: Dict[str, Any] = {
        "params": dict(np.asarray(d["params"]).ravel()[0]),
        "conditions": [str(x) for x in np.asarray(d["conditions"]).tolist()],
        "channels": [str(x) for x in np.asarray(d["channels"]).tolist()],
        "subjects": np.asarray(d["subjects"]),
        "freqs": np.asarray(d["freqs"]),
        "times": np.asarray(d["times"]),
        "n_cycles": np.asarray(d["n_cycles"]),
        "dof": np.asarray(d["dof"]),
        "indiv": np.asarray(d["indiv"]),
        "indiv_dims": str(np.asarray(d["indiv_dims"]).ravel()[0]),
        "grdavg": np.asarray(d["grdavg"]),
        "grdavg_dims": str(np.asarray(d["grdavg_dims"]).ravel()[0]),
    }

    if "stats_channels" in d:
        channels: List[str] = [str(x) for x in np.asarray(d["stats_channels"]).tolist()]
        out["stats_unit"] = str(np.asarray(d["stats_unit"]).ravel()[0])
        out["stats_dims"] = str(np.asarray(d["stats_dims"]).ravel()[0])
        out["stats_available"] = np.asarray(d["stats_available"]).astype(bool)
        out["stats_n_units"] = np.asarray(d["stats_n_units"])
        clusters = list(np.asarray(d["stats_clusters"]).tolist())
        stats: Dict[str, Dict[str, Any]] = {}
        if "stats_tval" in d:
            out["stats_freqs"] = np.asarray(d["stats_freqs"])
            out["stats_times"] = np.asarray(d["stats_times"])
            out["stats_tval"] = np.asarray(d["stats_tval"])
            out["stats_pval"] = np.asarray(d["stats_pval"])
            out["stats_mask"] = np.asarray(d["stats_mask"]).astype(bool)
            for ci, ch in enumerate(channels):
                stats[ch] = {
                    "tval": out["stats_tval"][ci],
                    "pval": out["stats_pval"][ci],
                    "mask": out["stats_mask"][ci],
                    "available": bool(out["stats_available"][ci]),
                    "n_units": int(out["stats_n_units"][ci]),
                    "clusters": list(clusters[ci]),
                }
        out["stats"] = stats

    if "trial_indiv" in d:
        out["trial_indiv"] = np.asarray(d["trial_indiv"])
        out["trial_indiv_dims"] = str(np.asarray(d["trial_indiv_dims"]).ravel()[0])
    if "timing" in d:
        out["timing"] = dict(np.asarray(d["timing"]).ravel()[0])

    return out
