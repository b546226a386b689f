import numpy as np
import pytest

from ripple_tfr.config import AnalysisConfig
from ripple_tfr.errors import InputFileError
from ripple_tfr.io import EventList, StudyLayout, load_results
from ripple_tfr.pipeline import (
    SubjectInputs,
    compute_and_save_control_tfr_analysis,
    load_subject_inputs,
    process_subject,
    run_analysis,
)
from ripple_tfr.spectral import TFREngine

from conftest import small_config_overrides


@pytest.fixture
def cfg():
    return AnalysisConfig.from_dict(small_config_overrides())


def test_subject_inputs_from_files(study_root, cfg):
    inputs = load_subject_inputs(StudyLayout(study_root), 1, cfg)
    assert inputs.data.shape == (2, 6000)
    assert len(inputs.artifacts) == 2
    assert len(inputs.controls) == 2 and len(inputs.controls[0]) == cfg.n_realizations


def test_process_subject_balances_to_ripple_count(study_root, cfg):
    inputs = load_subject_inputs(StudyLayout(study_root), 1, cfg)
    res = process_subject(inputs, cfg, engine=TFREngine.from_config(cfg), seed=0, keep_trials=True)
    # 4 usable ripples; REM controls lose one trial to the artifact
    assert res.n_ripple == 4
    assert res.n_available.tolist() == [[6, 6], [5, 5]]
    assert res.dof == 4
    assert res.power.shape == (2, 2, 4, 11)
    assert np.isfinite(res.power).all()
    assert res.trial_power.shape == (2, 4, 2, 4, 11)
    np.testing.assert_allclose(res.trial_power.mean(axis=1), res.power, rtol=1e-12)


def test_end_to_end(study_root, tmp_path, cfg):
    out = compute_and_save_control_tfr_analysis(
        data_root=study_root, output_dir=tmp_path / "out", cfg=cfg, log_dir=None
    )
    res = load_results(out["results_path"])

    assert res["dof"].tolist() == [4, 5, 0]
    assert res["indiv"].shape == (2, 3, 2, 4, 11)
    assert np.isnan(res["indiv"][:, 2]).all()
    assert np.isfinite(res["indiv"][:, :2]).all()
    np.testing.assert_allclose(res["grdavg"], res["indiv"][:, :2].mean(axis=1), rtol=1e-12)

    assert res["stats_times"].shape == (7,)
    for ch in ("NC", "HIPP"):
        st = res["stats"][ch]
        assert st["available"]
        assert st["n_units"] == 2
        assert st["tval"].shape == (4, 7)
        assert st["mask"].dtype == bool
    assert res["params"]["n_realizations"] == 2
    assert "trial_indiv" not in res


def test_same_seed_same_result(study_root, cfg):
    layout = StudyLayout(study_root)

    def loader(subject):
        return load_subject_inputs(layout, subject, cfg)

    g1, s1, _ = run_analysis(cfg, loader, subjects=[1, 2])
    g2, s2, _ = run_analysis(cfg, loader, subjects=[1, 2])
    assert np.array_equal(g1.indiv, g2.indiv)
    assert np.array_equal(s1[0].pval, s2[0].pval)


def test_subject_maps_do_not_depend_on_other_subjects(study_root, cfg):
    layout = StudyLayout(study_root)

    def loader(subject):
        return load_subject_inputs(layout, subject, cfg)

    both, _, _ = run_analysis(cfg, loader, subjects=[1, 2])
    alone, _, _ = run_analysis(cfg, loader, subjects=[2])
    assert np.array_equal(both.indiv[:, 1], alone.indiv[:, 0])


def test_single_subject_statistics_unavailable(study_root, cfg):
    layout = StudyLayout(study_root)
    group, stats, _ = run_analysis(cfg, lambda s: load_subject_inputs(layout, s, cfg), subjects=[2])
    assert group.n_included == 1
    assert all(not s.available for s in stats)


def test_trial_unit_pools_realization_averaged_trials(study_root):
    cfg = AnalysisConfig.from_dict({**small_config_overrides(), "stats_unit": "trial"})
    layout = StudyLayout(study_root)
    group, stats, _ = run_analysis(cfg, lambda s: load_subject_inputs(layout, s, cfg))
    assert group.trial_indiv.shape[1] == 9
    assert all(s.available and s.n_units == 9 for s in stats)


def test_trial_unit_stack_is_saved(study_root, tmp_path):
    cfg = AnalysisConfig.from_dict({**small_config_overrides(), "stats_unit": "trial"})
    out = compute_and_save_control_tfr_analysis(
        data_root=study_root, output_dir=tmp_path / "out", cfg=cfg, log_dir=None
    )
    res = load_results(out["results_path"])

    layout = StudyLayout(study_root)
    group, _, _ = run_analysis(cfg, lambda s: load_subject_inputs(layout, s, cfg))
    assert res["trial_indiv"].shape == (2, 9, 2, 4, 11)
    assert res["trial_indiv_dims"] == "Type x Trial x Channel x Freq x Time"
    assert res["trial_indiv"].tobytes() == group.trial_indiv.tobytes()
    assert res["stats"]["NC"]["n_units"] == 9


def test_in_memory_loader():
    cfg = AnalysisConfig.from_dict({**small_config_overrides(), "n_realizations": 1, "n_subjects": 1})
    rng = np.random.default_rng(0)
    n = 3000

    def loader(subject):
        return SubjectInputs(
            subject=subject,
            data=rng.standard_normal((2, n)),
            artifacts=[np.zeros((0, 2), dtype=np.int64)] * 2,
            scoring=np.full(n, 3),
            ripples=EventList(samples=np.array([500, 1500])),
            controls=[[EventList(samples=np.array([400, 1000, 2000]))], [EventList(samples=np.array([800]))]],
        )

    group, stats, timing = run_analysis(cfg, loader)
    assert group.dof.tolist() == [1]
    assert "statistics_sec" in timing
    assert not stats[0].available


def test_missing_input_is_fatal(tmp_path, cfg):
    with pytest.raises(InputFileError):
        compute_and_save_control_tfr_analysis(
            data_root=tmp_path / "nowhere", output_dir=tmp_path / "out", cfg=cfg, log_dir=None
        )


def test_single_ripple_single_subject():
    overrides = {
        **small_config_overrides(),
        "n_subjects": 1,
        "n_realizations": 3,
        "time_start": -1.4,
        "time_stop": 1.4,
    }
    cfg = AnalysisConfig.from_dict(overrides)
    rng = np.random.default_rng(4)
    n = 4000

    def loader(subject):
        return SubjectInputs(
            subject=subject,
            data=rng.standard_normal((2, n)),
            artifacts=[np.zeros((0, 2), dtype=np.int64)] * 2,
            scoring=np.full(n, 2),
            ripples=EventList(samples=np.array([2000])),
            controls=[
                [EventList(samples=np.array([500 + 100 * r, 2500])) for r in range(3)],
                [EventList(samples=np.array([1000 + 100 * r])) for r in range(3)],
            ],
        )

    engine = TFREngine.from_config(cfg)
    group, stats, _ = run_analysis(cfg, loader, engine=engine)

    assert group.dof.tolist() == [1]
    subj = group.indiv[:, 0]
    for c in range(2):
        for ch in range(2):
            assert np.array_equal(np.isnan(subj[c, ch]), ~engine.valid)
    assert (~engine.valid).any()
    np.testing.assert_array_equal(group.grdavg, subj)
    assert all(not s.available for s in stats)
