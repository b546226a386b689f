from ripple_tfr.utils.logging_utils import get_run_logger, log_section


def test_run_logger_writes_file(tmp_path):
    logger = get_run_logger("unit_file_run", output_dir=str(tmp_path))
    log_section(logger, "SECTION")
    logger.info("step=demo elapsed_sec=%.3f", 0.5)
    for h in logger.handlers:
        h.flush()

    logs = list(tmp_path.glob("unit_file_run_*.log"))
    assert len(logs) == 1
    text = logs[0].read_text(encoding="utf-8")
    assert "SECTION" in text
    assert "| INFO | step=demo elapsed_sec=0.500" in text


def test_run_logger_is_reused_and_can_skip_files(tmp_path):
    a = get_run_logger("unit_nofile_run", output_dir=None)
    b = get_run_logger("unit_nofile_run", output_dir=str(tmp_path))
    assert a is b
    assert not a.propagate
    assert list(tmp_path.iterdir()) == []
