import os
import sys

import pandas
import pytest

import clonetree


FAST_SETTINGS = dict(
    cluster_restarts=3,
    chains=2,
    min_steps=6000,
    max_steps=6000,
    thinning=10,
    burnin=100,
    post_thin=2,
)


def test_single_clone(clonal_variants):
    result = clonetree.InferenceRun(clonal_variants,
                                    cluster_counts=range(2, 5),
                                    clone_counts=[2, 3],
                                    **FAST_SETTINGS).run()
    assert result.clustering.cluster_count == 2
    assert result.selector.clone_count == 2
    assignments = result.output.assignments
    assert list(assignments.index) == list(clonal_variants.index)
    assert (assignments["clone"] > 0).all()
    assert assignments["clone_vaf"].iloc[0] == pytest.approx(0.5, abs=0.03)


def test_two_groups_are_reproducible(two_group_variants):
    runs = [clonetree.InferenceRun(two_group_variants,
                                   cluster_counts=range(2, 5),
                                   clone_counts=[2], seed=5,
                                   **FAST_SETTINGS).run()
            for _ in range(2)]
    first, second = runs
    assert first.clustering.cluster_count == 3
    pandas.testing.assert_frame_equal(first.posterior.summary,
                                      second.posterior.summary)
    pandas.testing.assert_frame_equal(first.output.assignments,
                                      second.output.assignments)
    assert first.output.tree == second.output.tree
    total = sum(config.posterior
                for config in first.posterior.all_configurations)
    assert total == pytest.approx(1.0)
    assignments = first.output.assignments
    assert len(assignments) == 40
    assert assignments["clone"].iloc[0] != assignments["clone"].iloc[20]
    assert assignments["clone_vaf"].iloc[0] == pytest.approx(0.1, abs=0.03)
    assert assignments["clone_vaf"].iloc[20] == pytest.approx(0.4, abs=0.03)


def test_empty_input_fails_before_sampling():
    run = clonetree.InferenceRun.from_counts([], [], [])
    with pytest.raises(clonetree.InsufficientDataError) as excinfo:
        run.run()
    assert excinfo.value.stage == "clustering"


def test_full_cutoff_empties_the_posterior(two_group_variants):
    settings = dict(FAST_SETTINGS, min_steps=2000, max_steps=2000, burnin=20)
    run = clonetree.InferenceRun(two_group_variants,
                                 cluster_counts=[3], clone_counts=[3],
                                 config_cutoff=1.0, **settings)
    with pytest.raises(clonetree.EmptyPosteriorError) as excinfo:
        run.run()
    assert excinfo.value.stage == "aggregation"


@pytest.mark.parametrize("kargs", [
    {"convergence_window": 0},
    {"convergence_tolerance": -1.0},
    {"fraction_prior": 0.0},
])
def test_sampler_settings_are_forwarded(clonal_variants, kargs):
    run = clonetree.InferenceRun(clonal_variants, cluster_counts=[2],
                                 clone_counts=[2], **dict(FAST_SETTINGS,
                                                          **kargs))
    with pytest.raises(ValueError):
        run.run()


def test_unconverged_run_keeps_its_samples(clonal_variants):
    settings = dict(FAST_SETTINGS, min_steps=1000, max_steps=2000, burnin=20)
    result = clonetree.InferenceRun(clonal_variants, cluster_counts=[2],
                                    clone_counts=[2],
                                    convergence_tolerance=0.0,
                                    **settings).run()
    for chain in result.sampler.chains[2]:
        assert not chain.converged
        assert chain.steps == 2000


def test_unknown_observation_unit(clonal_variants):
    with pytest.raises(ValueError):
        clonetree.InferenceRun(clonal_variants, observation_unit="reads")


def test_command_line(tmp_path, monkeypatch):
    counts = tmp_path / "counts.tsv"
    lines = ["id\talt\ttotal"]
    lines += ["s{}\t{}\t100".format(j, alt)
              for j, alt in enumerate([48, 49, 50, 51, 52, 50])]
    counts.write_text("\n".join(lines) + "\n")
    outdir = tmp_path / "out"
    monkeypatch.setattr(sys, "argv", [
        "clonetree", str(counts), "-o", str(outdir),
        "--clusters", "2", "3", "--restarts", "2",
        "--clones", "2", "2", "--chains", "1",
        "--min-steps", "2000", "--max-steps", "2000",
        "--thinning", "10", "--burnin", "20", "--post-thin", "1",
        "--noise-vaf", "0.002", "--vaf-factor", "0.5",
        "--fraction-prior", "1.0", "--convergence-window", "5",
        "--observation-unit", "clusters", "--exclude-divergent",
    ])
    assert clonetree.main() == 0
    for name in ["cluster_bic.txt", "cluster_assignments.txt",
                 "clone_bic.txt", "configurations.txt", "clones.txt",
                 "assignments.txt"]:
        assert os.path.exists(os.path.join(str(outdir), name))
    assignments = pandas.read_table(outdir / "assignments.txt", index_col=0)
    assert list(assignments.index) == ["s{}".format(j) for j in range(6)]
