import io

import numpy
import pytest

import clonetree


def test_from_counts_generates_ids_and_vaf():
    variants = clonetree.VariantCollection.from_counts([5, 0, 10], [10, 20, 10])
    assert list(variants.index) == ["snv1", "snv2", "snv3"]
    numpy.testing.assert_allclose(variants.vaf, [0.5, 0.0, 1.0])
    assert len(variants) == 3


def test_zero_depth_variant_has_zero_vaf():
    variants = clonetree.VariantCollection.from_counts([0], [0], ids=["a"])
    assert variants.vaf[0] == 0.0


@pytest.mark.parametrize("alternative,total,ids", [
    ([5, 11], [10, 10], None),
    ([-1], [10], None),
    ([1.5], [10], None),
    ([1, 2], [10], None),
    ([1, 2], [10, 10], ["a", "a"]),
    ([1, 2], [10, 10], ["a"]),
])
def test_malformed_counts_are_rejected(alternative, total, ids):
    with pytest.raises(ValueError):
        clonetree.VariantCollection.from_counts(alternative, total, ids)


def test_from_table_keeps_identity_columns():
    table = io.StringIO(
        "id\tchrom\tpos\talt\ttotal\n"
        "s1\t1\t100\t12\t40\n"
        "s2\t2\t200\t3\t30\n"
    )
    variants = clonetree.VariantCollection.from_table(table)
    assert list(variants.index) == ["s1", "s2"]
    assert list(variants.alternative) == [12, 3]
    assert list(variants.data["chromosome"]) == [1, 2]
    numpy.testing.assert_allclose(variants.vaf, [0.3, 0.1])


def test_from_table_requires_count_columns():
    with pytest.raises(ValueError):
        clonetree.VariantCollection.from_table(io.StringIO("id\talt\ns1\t3\n"))
