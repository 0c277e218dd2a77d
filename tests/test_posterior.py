import numpy
import pandas
import pytest

import clonetree


def make_tree(parents, edges, own=None):
    clusters = sorted(edges)
    if own is None:
        own = numpy.full(len(parents), 1.0 / len(parents))
    return clonetree.Tree.from_own_fractions(
        parents, own, [edges[cluster] for cluster in clusters], clusters)


@pytest.fixture
def samples():
    branching = make_tree([-1, 0, 0], {1: 1, 2: 2})
    relabeled = make_tree([-1, 0, 0], {1: 2, 2: 1}, own=[0.2, 0.3, 0.5])
    linear = make_tree([-1, 0, 1], {1: 1, 2: 2})
    nested = make_tree([-1, 0, 1], {1: 2, 2: 1})
    return [
        clonetree.Sample(branching, -12.0),
        clonetree.Sample(linear, -11.0),
        clonetree.Sample(relabeled, -10.0),
        clonetree.Sample(branching, -13.0),
        clonetree.Sample(linear, -9.0),
        clonetree.Sample(branching, -12.5),
        clonetree.Sample(nested, -8.0),
    ]


def test_configurations_are_ranked_by_posterior(samples):
    posterior = clonetree.PosteriorAggregator(samples, cutoff=0.0)
    configurations = posterior.configurations
    assert [config.id for config in configurations] == [1, 2, 3]
    assert [config.samples for config in configurations] == [4, 2, 1]
    assert configurations[0].posterior == pytest.approx(4 / 7)
    assert configurations[0].max_log_likelihood == pytest.approx(-10.0)
    assert configurations[0].tree == samples[2].tree
    assert configurations[1].mean_log_likelihood == pytest.approx(-10.0)


def test_posteriors_sum_to_one_before_cutoff(samples):
    posterior = clonetree.PosteriorAggregator(samples, cutoff=0.5)
    total = sum(config.posterior for config in posterior.all_configurations)
    assert total == pytest.approx(1.0)
    assert len(posterior.configurations) == 1


def test_filtered_samples_have_no_configuration(samples):
    posterior = clonetree.PosteriorAggregator(samples, cutoff=0.2)
    numpy.testing.assert_array_equal(posterior.sample_configurations,
                                     [1, 2, 1, 1, 2, 1, 0])
    assert posterior.best_configuration.id == 2
    summary = posterior.summary
    assert list(summary.index) == [1, 2]
    assert list(summary.columns) == ["posterior", "max_log_likelihood",
                                     "mean_log_likelihood", "samples"]


def test_best_configuration_ignores_filtered_ones(samples):
    posterior = clonetree.PosteriorAggregator(samples, cutoff=0.0)
    assert posterior.best_configuration.id == 3
    with pytest.raises(ValueError):
        posterior.configuration(4)


def test_full_cutoff_leaves_nothing(samples):
    posterior = clonetree.PosteriorAggregator(samples, cutoff=1.0)
    with pytest.raises(clonetree.EmptyPosteriorError) as excinfo:
        posterior.configurations
    assert excinfo.value.stage == "aggregation"


def test_single_configuration_survives_full_cutoff(samples):
    posterior = clonetree.PosteriorAggregator(samples[:1], cutoff=1.0)
    assert posterior.configurations[0].posterior == 1.0


def test_no_samples():
    with pytest.raises(clonetree.EmptyPosteriorError):
        clonetree.PosteriorAggregator([]).configurations


def test_summary_is_stable(samples):
    first = clonetree.PosteriorAggregator(samples).summary
    second = clonetree.PosteriorAggregator(samples).summary
    pandas.testing.assert_frame_equal(first, second)
