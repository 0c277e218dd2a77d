import numpy
import pytest

import clonetree


@pytest.fixture
def clonal_variants():
    """Ten variants around VAF 0.5 at depth 100."""
    alternative = [48, 49, 50, 51, 52, 50, 49, 51, 50, 50]
    return clonetree.VariantCollection.from_counts(alternative, [100] * 10)


@pytest.fixture
def two_group_variants():
    """Twenty variants around VAF 0.1 and twenty around 0.4, depth 200."""
    low = [18, 19, 20, 21, 22] * 4
    high = [76, 78, 80, 82, 84] * 4
    alternative = numpy.array(low + high)
    return clonetree.VariantCollection.from_counts(
        alternative, numpy.full(len(alternative), 200))


@pytest.fixture
def two_group_clustering(two_group_variants):
    clusterer = clonetree.VariantClusterer(two_group_variants,
                                           cluster_counts=[3], restarts=3)
    return clusterer.result
