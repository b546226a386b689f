#!/usr/bin/env python3
"""
Run the NREM-control vs REM-control TFR analysis over all subjects.

Outputs (in --output):
- <output_name>.npz: subject maps, grand average, dof, cluster statistics
- config_snapshot.json: the effective AnalysisConfig
- run_summary.json: paths, dof per subject, significant clusters per channel
"""

import argparse
from dataclasses import replace
import json
import shutil
from pathlib import Path
from typing import Any, Dict

import sys
from pathlib import Path as _Path

_SCRIPT_DIR = _Path(__file__).parent.resolve()
_PROJECT_ROOT = _SCRIPT_DIR.parent.resolve()
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from ripple_tfr.config import AnalysisConfig, load_config
from ripple_tfr.io import load_results
from ripple_tfr.pipeline import compute_and_save_control_tfr_analysis


def _summary(results: Dict[str, Any]) -> Dict[str, Any]:
    stats = results.get("stats", {}) or {}
    return {
        "subjects": [int(x) for x in results["subjects"].tolist()],
        "dof": [int(x) for x in results["dof"].tolist()],
        "n_included": int((results["dof"] > 0).sum()),
        "stats_unit": results.get("stats_unit"),
        "channels": {
            ch: {
                "available": bool(s["available"]),
                "n_units": int(s["n_units"]),
                "n_clusters": len(s["clusters"]),
                "significant": [c for c in s["clusters"] if c["significant"]],
            }
            for ch, s in stats.items()
        },
        "timing": results.get("timing", {}),
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Ripple control-event TFR analysis with cluster statistics.")
    parser.add_argument("--config", type=str, default=None, help="YAML/JSON overrides of AnalysisConfig")
    parser.add_argument("--data-root", type=str, default=".", help="Study directory (EEGs/, Ripples/, Control events/)")
    parser.add_argument("--output", type=str, default="results", help="Output directory")
    parser.add_argument("--seed", type=int, default=None, help="Override balance_seed and stats_seed")
    args = parser.parse_args()

    if args.config:
        cfg = load_config(Path(args.config).expanduser())
    else:
        cfg = AnalysisConfig()
    if args.seed is not None:
        cfg = replace(cfg, balance_seed=int(args.seed), stats_seed=int(args.seed))

    output_dir = Path(args.output).expanduser()
    output_dir.mkdir(parents=True, exist_ok=True)

    # Save config snapshot for reproducibility
    cfg_snapshot = cfg.to_dict()
    cfg_snapshot["data_root"] = str(Path(args.data_root).expanduser())
    cfg_snapshot["output_dir"] = str(output_dir)
    snapshot_path = output_dir / "config_snapshot.json"
    with snapshot_path.open("w", encoding="utf-8") as f:
        json.dump(cfg_snapshot, f, ensure_ascii=True, indent=2)

    out_paths = compute_and_save_control_tfr_analysis(
        data_root=args.data_root,
        output_dir=output_dir,
        cfg=cfg,
    )

    results = load_results(out_paths["results_path"])
    summary = _summary(results)
    summary["results_path"] = out_paths["results_path"]
    summary["config_snapshot"] = str(snapshot_path)
    summary_path = output_dir / "run_summary.json"
    with summary_path.open("w", encoding="utf-8") as f:
        json.dump(summary, f, ensure_ascii=True, indent=2)

    # Backup logs to output_dir/logs
    logs_dir = Path("logs")
    if logs_dir.exists():
        logs_out = output_dir / "logs"
        logs_out.mkdir(parents=True, exist_ok=True)
        for log_path in logs_dir.glob("*.log"):
            shutil.copy2(log_path, logs_out / log_path.name)

    print("OK")
    print(f"- results: {out_paths['results_path']}")
    print(f"- subjects with data: {summary['n_included']}/{len(summary['subjects'])}")
    for ch, info in summary["channels"].items():
        state = f"{len(info['significant'])} significant cluster(s)" if info["available"] else "unavailable"
        print(f"- {ch}: {state}")
    print(f"- config snapshot: {snapshot_path}")
    print(f"- run summary: {summary_path}")


if __name__ == "__main__":
    main()
