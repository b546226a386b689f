"""
Batch orchestrator: subjects -> balanced control TFRs -> group maps -> cluster statistics.

Workflow per subject:
1. Load recordings, supplements (artifacts, sleep scoring), ripple and control events
2. Build the global validity mask (padded artifacts, min clean length, NREM stages)
3. Extract ripple and control trials inside clean data
4. Balance control trials to the ripple count (per realization, seeded)
5. TFR of every balanced control trial, averaged over trials and realizations

Then: stack subjects, grand average, paired cluster test NREM-ctrl vs REM-ctrl per
channel, save one npz container.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .aggregation import GroupResult, RealizationAccumulator, SubjectResult, build_group_result
from .balancing import balance_control_trials
from .cluster_stats import ClusterPermutationTest, ClusterStatResult, make_cluster_test, run_channel_tests
from .config import AnalysisConfig
from .errors import InputFileError
from .io import (
    EventList,
    StudyLayout,
    load_control_events,
    load_recording,
    load_ripple_events,
    load_supplement,
    save_results,
)
from .masking import build_global_mask, build_validity_mask, stage_validity
from .spectral import TFREngine
from .trials import TrialSet, extract_trials, segment_trials
from .utils.logging_utils import get_run_logger, log_section

logger = logging.getLogger(__name__)


@dataclass
class SubjectInputs:
    """
    Everything one subject contributes, already converted to 0-based samples.

    data:
        (n_channels, n_samples) float64, channel order as in the config.
    artifacts:
        per channel, (n, 2) half-open artifact intervals.
    controls:
        controls[c][r] = events of control condition c, realization r.
    """

    subject: int
    data: np.ndarray
    artifacts: List[np.ndarray]
    scoring: np.ndarray
    ripples: EventList
    controls: List[List[EventList]]

    @property
    def n_samples(self) -> int:
        return int(self.data.shape[1])


SubjectLoader = Callable[[int], SubjectInputs]


def load_subject_inputs(layout: StudyLayout, subject: int, cfg: AnalysisConfig) -> SubjectInputs:
    """Read all input files of one subject (raises InputFileError on any problem)."""
    stage_sup = load_supplement(layout, subject, cfg.stage_channel, need_scoring=True)
    datalen = stage_sup.datalen

    signals: List[np.ndarray] = []
    artifacts: List[np.ndarray] = []
    for label in cfg.channels:
        rec = load_recording(layout, subject, label)
        sup = stage_sup if label == cfg.stage_channel else load_supplement(layout, subject, label)
        if rec.n_samples != datalen or sup.datalen != datalen:
            raise InputFileError(
                f"Length mismatch: recording={rec.n_samples}, supplement datalen={sup.datalen}, "
                f"stage datalen={datalen}",
                subject=subject,
                channel=label,
                path=layout.recording_path(subject, label),
            )
        if rec.fsample is not None and not np.isclose(rec.fsample, cfg.fsample):
            raise InputFileError(
                f"fsample {rec.fsample} != configured {cfg.fsample}",
                subject=subject,
                channel=label,
                path=layout.recording_path(subject, label),
            )
        signals.append(rec.signal)
        artifacts.append(sup.artifacts)

    ripples = load_ripple_events(layout, subject)
    controls = [
        [load_control_events(layout, subject, cond, rep + 1) for rep in range(cfg.n_realizations)]
        for cond in cfg.conditions
    ]
    return SubjectInputs(
        subject=int(subject),
        data=np.stack(signals),
        artifacts=artifacts,
        scoring=stage_sup.scoring,
        ripples=ripples,
        controls=controls,
    )


def build_subject_mask(inputs: SubjectInputs, cfg: AnalysisConfig) -> np.ndarray:
    """Global validity mask: every channel clean and the sleep stage of interest."""
    channel_masks = [
        build_validity_mask(
            iv,
            inputs.n_samples,
            pad_samples=cfg.artifact_pad_samples,
            min_valid_len=cfg.min_sleep_samples,
        )
        for iv in inputs.artifacts
    ]
    return build_global_mask(channel_masks, stage_validity(inputs.scoring, cfg.stages_of_interest))


def subject_seed(balance_seed: int, subject: int) -> np.random.SeedSequence:
    """Balancing seed of one subject, keyed on its id rather than its position in the run."""
    return np.random.SeedSequence([int(balance_seed), int(subject)])


def process_subject(
    inputs: SubjectInputs,
    cfg: AnalysisConfig,
    *,
    engine: TFREngine,
    seed: Union[None, int, np.random.SeedSequence] = None,
    keep_trials: bool = False,
) -> SubjectResult:
    """Balanced, realization-averaged control TFRs of one subject."""
    t0 = time.time()
    offsets = cfg.trial_offsets
    map_shape = (len(cfg.channels), *engine.shape)
    n_cond = len(cfg.conditions)

    valid = build_subject_mask(inputs, cfg)
    logger.info(
        "Subject %02d: valid samples %d/%d (%.1f%%)",
        inputs.subject,
        int(valid.sum()),
        inputs.n_samples,
        100.0 * float(valid.mean()) if valid.size else 0.0,
    )

    ripple_trials = extract_trials(
        inputs.ripples.samples, offsets, inputs.n_samples, valid, inputs.ripples.rejects
    )
    logger.info(
        "Subject %02d: ripples kept %d/%d", inputs.subject, ripple_trials.n_trials, inputs.ripples.n_events
    )

    control_sets: List[List[TrialSet]] = []
    for ci, cond in enumerate(cfg.conditions):
        sets = [extract_trials(ev.samples, offsets, inputs.n_samples, valid) for ev in inputs.controls[ci]]
        counts = np.array([ts.n_trials for ts in sets], dtype=np.int64)
        logger.info(
            "Subject %02d: %s trials per realization min=%d max=%d",
            inputs.subject,
            cond,
            int(counts.min()),
            int(counts.max()),
        )
        control_sets.append(sets)

    balanced = balance_control_trials(ripple_trials, control_sets, seed=seed)
    logger.info("Subject %02d: dof=%d", inputs.subject, balanced.dof)

    power = np.full((n_cond, *map_shape), np.nan, dtype=np.float64)
    trial_power = np.zeros((n_cond, balanced.dof, *map_shape), dtype=np.float64) if keep_trials else None

    if balanced.dof == 0:
        logger.warning("Subject %02d contributes no trials (dof=0)", inputs.subject)
    else:
        for ci in range(n_cond):
            acc = RealizationAccumulator(balanced.dof, map_shape, keep_trials=keep_trials)
            for ri in range(balanced.n_realizations):
                seg = segment_trials(inputs.data, balanced.trial_set(ci, ri))
                acc.add(engine.compute(seg))
            power[ci] = acc.mean()
            if keep_trials:
                trial_power[ci] = acc.trial_mean()

    logger.info("Subject %02d done in %.2fs", inputs.subject, time.time() - t0)
    return SubjectResult(
        subject=inputs.subject,
        dof=balanced.dof,
        power=power,
        trial_power=trial_power,
        n_ripple=ripple_trials.n_trials,
        n_available=balanced.n_available,
        meta={"n_valid_samples": int(valid.sum()), "n_samples": inputs.n_samples},
    )


def run_statistics(
    group: GroupResult,
    cfg: AnalysisConfig,
    *,
    test: Optional[ClusterPermutationTest] = None,
) -> List[ClusterStatResult]:
    """Paired cluster test of condition 0 vs condition 1, per channel."""
    if test is None:
        test = make_cluster_test(
            cfg.cluster_backend,
            n_permutations=cfg.n_permutations,
            cluster_alpha=cfg.cluster_alpha,
            alpha=cfg.alpha,
            seed=cfg.stats_seed,
        )
    units = group.paired_units(cfg.stats_unit)
    logger.info("Statistics: unit=%s, n_units=%d", cfg.stats_unit, int(units.shape[1]))
    return run_channel_tests(
        units,
        channels=group.channels,
        freqs=cfg.freqs,
        times=cfg.times,
        stats_times=cfg.stats_times,
        test=test,
    )


def run_analysis(
    cfg: AnalysisConfig,
    loader: SubjectLoader,
    *,
    subjects: Optional[Sequence[int]] = None,
    engine: Optional[TFREngine] = None,
    run_logger: Optional[logging.Logger] = None,
) -> Tuple[GroupResult, List[ClusterStatResult], Dict[str, float]]:
    """
    In-memory analysis over subjects (1-based ids); returns (group, stats, timing).

    loader(subject) supplies the inputs, so data need not come from disk.
    """
    log = run_logger or logger
    subjects = list(subjects) if subjects is not None else list(range(1, cfg.n_subjects + 1))
    engine = engine or TFREngine.from_config(cfg)
    keep_trials = cfg.stats_unit == "trial"
    timing: Dict[str, float] = {}

    t0 = time.time()
    results: List[SubjectResult] = []
    for subj in subjects:
        t_load = time.time()
        inputs = loader(int(subj))
        log.info("step=load_subject subject=%02d elapsed_sec=%.3f", int(subj), time.time() - t_load)

        t_proc = time.time()
        seed = subject_seed(cfg.balance_seed, subj)
        res = process_subject(inputs, cfg, engine=engine, seed=seed, keep_trials=keep_trials)
        log.info(
            "step=process_subject subject=%02d dof=%d ripples=%d elapsed_sec=%.3f",
            int(subj),
            res.dof,
            res.n_ripple,
            time.time() - t_proc,
        )
        results.append(res)
    timing["subjects_sec"] = time.time() - t0

    t0 = time.time()
    group = build_group_result(
        results,
        conditions=cfg.conditions,
        channels=cfg.channels,
        map_shape=(len(cfg.channels), *engine.shape),
    )
    timing["aggregate_sec"] = time.time() - t0
    log.info(
        "step=aggregate subjects_included=%d/%d elapsed_sec=%.3f",
        group.n_included,
        len(subjects),
        timing["aggregate_sec"],
    )

    t0 = time.time()
    stats = run_statistics(group, cfg)
    timing["statistics_sec"] = time.time() - t0
    for res in stats:
        if res.available:
            log.info(
                "step=statistics channel=%s n_units=%d clusters=%d significant=%d",
                res.channel,
                res.n_units,
                len(res.clusters),
                res.n_significant,
            )
        else:
            log.warning("step=statistics channel=%s unavailable (n_units=%d)", res.channel, res.n_units)
    log.info("step=statistics elapsed_sec=%.3f", timing["statistics_sec"])

    return group, stats, timing


def compute_and_save_control_tfr_analysis(
    *,
    data_root: Union[str, Path],
    output_dir: Union[str, Path],
    cfg: Optional[AnalysisConfig] = None,
    loader: Optional[SubjectLoader] = None,
    subjects: Optional[Sequence[int]] = None,
    log_dir: Optional[str] = "logs",
) -> Dict[str, str]:
    """
    One-stop function: run the full analysis and save the npz container.

    Parameters
    ----------
    data_root : str or Path
        Study directory (EEGs/, Ripples/, Control events/).
    output_dir : str or Path
        Where <cfg.output_name>.npz is written.
    cfg : AnalysisConfig, optional
        Defaults to the compiled-in configuration.
    loader : callable, optional
        subject -> SubjectInputs. Default: read .mat files under data_root.
    subjects : sequence of int, optional
        1-based subject ids. Default: 1..cfg.n_subjects.
    log_dir : str, optional
        Directory of the run log file (None: no file).

    Returns
    -------
    dict with keys:
        'results_path': str
    """
    cfg = cfg or AnalysisConfig()
    layout = StudyLayout(Path(data_root), event_channel=cfg.event_channel)
    if loader is None:
        def loader(subject: int) -> SubjectInputs:
            return load_subject_inputs(layout, subject, cfg)

    t_start = time.time()
    run_logger = get_run_logger(f"control_tfr_{cfg.output_name}", output_dir=log_dir)
    log_section(run_logger, "CONTROL TFR ANALYSIS START")
    run_logger.info("data_root=%s", str(layout.root))
    run_logger.info("output_dir=%s", str(output_dir))
    run_logger.info("conditions=%s channels=%s", list(cfg.conditions), list(cfg.channels))
    run_logger.info("n_subjects=%d n_realizations=%d fsample=%.1f", cfg.n_subjects, cfg.n_realizations, cfg.fsample)
    run_logger.info(
        "freqs=%.2f:%.2f:%.2f times=%.3f:%.3f:%.3f backend=%s",
        cfg.freq_start,
        cfg.freq_step,
        cfg.freq_stop,
        cfg.time_start,
        cfg.time_step,
        cfg.time_stop,
        cfg.spectral_backend,
    )
    run_logger.info(
        "stats unit=%s backend=%s n_permutations=%d cluster_alpha=%.3f alpha=%.3f",
        cfg.stats_unit,
        cfg.cluster_backend,
        cfg.n_permutations,
        cfg.cluster_alpha,
        cfg.alpha,
    )

    group, stats, timing = run_analysis(cfg, loader, subjects=subjects, run_logger=run_logger)

    t0 = time.time()
    npz_path = Path(output_dir) / f"{cfg.output_name}.npz"
    timing["total_sec"] = time.time() - t_start
    save_results(
        npz_path,
        params=cfg.to_dict(),
        conditions=group.conditions,
        channels=group.channels,
        subjects=group.subjects,
        freqs=cfg.freqs,
        times=cfg.times,
        n_cycles=cfg.n_cycles,
        dof=group.dof,
        indiv=group.indiv,
        grdavg=group.grdavg,
        stats=stats,
        trial_indiv=group.trial_indiv,
        stats_unit=cfg.stats_unit,
        timing=timing,
    )
    run_logger.info("step=save elapsed_sec=%.3f", time.time() - t0)
    run_logger.info("results_path=%s", str(npz_path))
    log_section(run_logger, f"CONTROL TFR ANALYSIS DONE total_sec={time.time() - t_start:.3f}")

    return {"results_path": str(npz_path)}
