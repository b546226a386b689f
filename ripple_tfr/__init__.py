"""
Ripple / control-event time-frequency analysis.

Importing `ripple_tfr` stays lightweight: the pipeline pulls in scipy (and mne for
the optional backends), so the public API is exposed lazily via PEP 562 `__getattr__`.
"""

from __future__ import annotations

import importlib
from typing import Any, Dict, Tuple

__version__ = "0.1.0"


# Lazy-exported symbols (module, attr)
_LAZY_EXPORTS: Dict[str, Tuple[str, str]] = {
    # configuration
    "AnalysisConfig": ("ripple_tfr.config", "AnalysisConfig"),
    "load_config": ("ripple_tfr.config", "load_config"),
    "wavelet_cycles": ("ripple_tfr.config", "wavelet_cycles"),
    # masking / trials / balancing
    "build_validity_mask": ("ripple_tfr.masking", "build_validity_mask"),
    "build_global_mask": ("ripple_tfr.masking", "build_global_mask"),
    "stage_validity": ("ripple_tfr.masking", "stage_validity"),
    "TrialSet": ("ripple_tfr.trials", "TrialSet"),
    "extract_trials": ("ripple_tfr.trials", "extract_trials"),
    "segment_trials": ("ripple_tfr.trials", "segment_trials"),
    "BalancedControls": ("ripple_tfr.balancing", "BalancedControls"),
    "balance_control_trials": ("ripple_tfr.balancing", "balance_control_trials"),
    # spectral / aggregation / statistics
    "TFREngine": ("ripple_tfr.spectral", "TFREngine"),
    "ScipyMorletTransform": ("ripple_tfr.spectral", "ScipyMorletTransform"),
    "MNEMorletTransform": ("ripple_tfr.spectral", "MNEMorletTransform"),
    "SubjectResult": ("ripple_tfr.aggregation", "SubjectResult"),
    "GroupResult": ("ripple_tfr.aggregation", "GroupResult"),
    "build_group_result": ("ripple_tfr.aggregation", "build_group_result"),
    "ClusterStatResult": ("ripple_tfr.cluster_stats", "ClusterStatResult"),
    "SignFlipClusterTest": ("ripple_tfr.cluster_stats", "SignFlipClusterTest"),
    "MNEClusterTest": ("ripple_tfr.cluster_stats", "MNEClusterTest"),
    # io / pipeline
    "StudyLayout": ("ripple_tfr.io", "StudyLayout"),
    "save_results": ("ripple_tfr.io", "save_results"),
    "load_results": ("ripple_tfr.io", "load_results"),
    "SubjectInputs": ("ripple_tfr.pipeline", "SubjectInputs"),
    "process_subject": ("ripple_tfr.pipeline", "process_subject"),
    "run_analysis": ("ripple_tfr.pipeline", "run_analysis"),
    "compute_and_save_control_tfr_analysis": ("ripple_tfr.pipeline", "compute_and_save_control_tfr_analysis"),
    # errors
    "InputFileError": ("ripple_tfr.errors", "InputFileError"),
    "InsufficientSubjectsError": ("ripple_tfr.errors", "InsufficientSubjectsError"),
}

__all__ = ["__version__", *_LAZY_EXPORTS.keys()]


def __getattr__(name: str) -> Any:
    """
    Lazy attribute access for heavy modules.

    Example:
      from ripple_tfr import compute_and_save_control_tfr_analysis
    """
    if name in _LAZY_EXPORTS:
        mod_name, attr = _LAZY_EXPORTS[name]
        mod = importlib.import_module(mod_name)
        return getattr(mod, attr)
    raise AttributeError(f"module 'ripple_tfr' has no attribute '{name}'")
