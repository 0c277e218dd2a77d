import math

import numpy
import pytest

import clonetree


def make_chain(count, log_liks, chain=0, problems=()):
    tree = clonetree.Tree.from_own_fractions(
        [-1] + [0] * count, numpy.full(count + 1, 1.0 / (count + 1)),
        [1], [1])
    samples = [clonetree.Sample(tree, value) for value in log_liks]
    return clonetree.ChainResult(count, chain, 0, samples, len(samples), 0, 0,
                                 True, False, list(problems))


def test_burnin_and_thinning():
    chains = {2: [make_chain(2, [0.0, 1.0, 2.0, 3.0, 4.0, 5.0])]}
    selector = clonetree.ModelSelector(chains, 10, burnin=2, thin=2)
    samples = selector.samples()
    assert [sample.log_likelihood for sample in samples] == [2.0, 4.0]
    row = selector.table.loc[2]
    assert row["samples"] == 2
    assert row["mean_log_likelihood"] == pytest.approx(3.0)
    assert row["bic"] == pytest.approx(6.0 - 4 * math.log(10))


def test_penalty_favours_fewer_clones():
    chains = {
        2: [make_chain(2, [-100.0] * 4, chain=j) for j in range(2)],
        3: [make_chain(3, [-99.0] * 4, chain=j) for j in range(2)],
    }
    selector = clonetree.ModelSelector(chains, 40, burnin=0, thin=1)
    assert selector.clone_count == 2
    assert len(selector.samples(3)) == 8


def test_ties_favour_fewer_clones():
    chains = {3: [make_chain(3, [-10.0])], 2: [make_chain(2, [-10.0])]}
    selector = clonetree.ModelSelector(chains, 1, burnin=0, thin=1)
    assert selector.clone_count == 2


def test_divergent_chains_can_be_excluded():
    chains = {2: [make_chain(2, [-50.0, -50.0]),
                  make_chain(2, [-10.0, -10.0], chain=1,
                             problems=["the root cell fraction is not 1"])]}
    kept = clonetree.ModelSelector(chains, 5, burnin=0, thin=1)
    dropped = clonetree.ModelSelector(chains, 5, burnin=0, thin=1,
                                      exclude_divergent=True)
    assert kept.table.loc[2, "mean_log_likelihood"] == pytest.approx(-30.0)
    assert dropped.table.loc[2, "mean_log_likelihood"] == pytest.approx(-50.0)
    assert dropped.table.loc[2, "chains"] == 1


def test_scale_reduction_flags_disagreeing_chains():
    chains = {2: [make_chain(2, [-10.0, -11.0, -10.0, -11.0]),
                  make_chain(2, [-50.0, -51.0, -50.0, -51.0], chain=1)]}
    selector = clonetree.ModelSelector(chains, 5, burnin=0, thin=1)
    assert selector.table.loc[2, "rhat"] > 1.1


def test_no_samples_after_burnin():
    chains = {2: [make_chain(2, [-1.0, -2.0])]}
    selector = clonetree.ModelSelector(chains, 5, burnin=100)
    with pytest.raises(clonetree.InferenceError) as excinfo:
        selector.clone_count
    assert excinfo.value.stage == "selection"


def test_scale_reduction_flags_chains_drifting_together():
    rng = numpy.random.default_rng(0)
    trend = numpy.linspace(-100.0, -10.0, 50)
    chains = {2: [make_chain(2, trend + rng.normal(0.0, 0.01, 50), chain=j)
                  for j in range(2)]}
    selector = clonetree.ModelSelector(chains, 5, burnin=0, thin=1)
    assert selector.table.loc[2, "rhat"] > 1.1


def test_scale_reduction_needs_two_chains():
    chains = {2: [make_chain(2, [-10.0, -11.0, -10.5, -12.0, -11.0])]}
    selector = clonetree.ModelSelector(chains, 5, burnin=0, thin=1)
    assert numpy.isnan(selector.table.loc[2, "rhat"])
