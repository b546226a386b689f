import logging
from datetime import datetime
from pathlib import Path
from typing import Optional


def get_run_logger(
    run_name: str,
    *,
    output_dir: Optional[str] = "logs",
    console: bool = False,
) -> logging.Logger:
    """
    Create a file logger for a single run. Safe to call multiple times.

    If output_dir is None no log file is written (useful in tests).
    """
    name = str(run_name).strip().replace(" ", "_") or "run"
    logger = logging.getLogger(f"ripple_tfr.run.{name}")
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    if output_dir is not None:
        out_dir = Path(output_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        ts = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_path = out_dir / f"{name}_{ts}.log"

        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    if console:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        logger.addHandler(sh)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    logger.propagate = False
    if output_dir is not None:
        logger.info("Log file: %s", str(log_path))
    return logger


def log_section(logger: logging.Logger, title: Optional[str] = None, *, width: int = 72) -> None:
    line = "=" * int(width)
    if title:
        logger.info(line)
        logger.info("%s", str(title))
    logger.info(line)
