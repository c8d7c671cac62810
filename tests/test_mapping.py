"""
Test cases for MeshMapper and the cell/element map.
"""

import numpy as np
import pytest

from neutronics_coupling.geometry import GeometryIndex
from neutronics_coupling.mapping import MeshMapper, check_fractions

from conftest import SlabNeutronics


@pytest.fixture
def slab_index():
    """Three unit slabs along x."""
    return GeometryIndex(SlabNeutronics([0.0, 1.0, 2.0, 3.0]).find)


class TestMeshMapperBuild:
    """Test cases for centroid-based mapping."""

    def test_two_cell_example(self, two_cell_map):
        mapping, fractions = two_cell_map

        assert mapping.cells == [1, 2]
        assert mapping.cell_to_elements == [[0], [1]]
        assert mapping.element_to_cells == [[0], [1]]
        assert mapping.n_unmapped == 0
        np.testing.assert_allclose(fractions.cell_volumes, [10.0, 20.0])

    def test_cells_in_discovery_order(self, slab_index):
        mapper = MeshMapper(slab_index)
        centroids = [[2.5, 0, 0], [0.5, 0, 0], [2.2, 0, 0]]
        mapping, _ = mapper.build(centroids, [1.0, 1.0, 1.0])

        assert mapping.cells == [3, 1]
        assert mapping.cell_to_elements == [[0, 2], [1]]
        assert mapping.elements_of(3) == [0, 2]
        assert mapping.cell_index(1) == 1

    def test_unknown_cell_handle(self, two_cell_map):
        mapping, _ = two_cell_map
        with pytest.raises(KeyError):
            mapping.cell_index(42)

    def test_unmapped_elements(self, slab_index):
        mapper = MeshMapper(slab_index)
        centroids = [[0.5, 0, 0], [7.0, 0, 0], [-1.0, 0, 0]]
        mapping, fractions = mapper.build(centroids, [1.0, 2.0, 3.0])

        assert mapping.unmapped == [1, 2]
        assert mapping.n_unmapped == 2
        np.testing.assert_array_equal(mapping.mapped_mask, [True, False, False])
        assert fractions.element_fractions[1] == []
        assert fractions.weights.shape == (3, 1)
        assert fractions.weights[1].nnz == 0

    def test_unmapped_elements_logged(self, slab_index, caplog):
        mapper = MeshMapper(slab_index, name="fluid")
        with caplog.at_level("WARNING"):
            mapper.build([[9.0, 0, 0]], [1.0])
        assert "1 of 1 elements" in caplog.text

    def test_cell_volumes_sum_element_volumes(self, slab_index):
        mapper = MeshMapper(slab_index)
        centroids = [[0.1, 0, 0], [0.9, 0, 0], [1.5, 0, 0]]
        mapping, fractions = mapper.build(centroids, [2.0, 3.0, 4.0])

        np.testing.assert_allclose(fractions.cell_volumes, [5.0, 4.0])
        shares = fractions.cell_shares(1)
        assert shares == pytest.approx({0: 0.6})

    def test_volume_count_mismatch(self, slab_index):
        mapper = MeshMapper(slab_index)
        with pytest.raises(ValueError, match="element volumes"):
            mapper.build([[0.5, 0, 0]], [1.0, 2.0])

    def test_negative_volume(self, slab_index):
        mapper = MeshMapper(slab_index)
        with pytest.raises(ValueError, match="non-negative"):
            mapper.build([[0.5, 0, 0]], [-1.0])

    def test_rebuild_requeries(self, slab_index):
        mapper = MeshMapper(slab_index)
        mapper.build([[0.5, 0, 0]], [1.0])
        queries = slab_index.n_queries

        mapping, _ = mapper.rebuild([[1.5, 0, 0]], [1.0])
        assert mapping.cells == [2]
        assert slab_index.n_queries == queries + 1
        assert mapper.mapping is mapping


class TestSampledMapping:
    """Test cases for mapping elements that straddle cells."""

    def test_fractions_from_sample_points(self, slab_index):
        mapper = MeshMapper(slab_index)
        points = [
            [[0.2, 0, 0], [0.8, 0, 0], [1.2, 0, 0], [1.8, 0, 0]],
            [[2.5, 0, 0]],
        ]
        mapping, fractions = mapper.build_sampled(points, [8.0, 1.0])

        assert mapping.element_to_cells[0] == [0, 1]
        assert fractions.element_fractions[0] == pytest.approx([0.5, 0.5])
        np.testing.assert_allclose(fractions.cell_volumes, [4.0, 4.0, 1.0])
        np.testing.assert_allclose(fractions.weights.toarray()[0], [4.0, 4.0, 0.0])
        np.testing.assert_allclose(fractions.fraction_matrix.toarray()[0], [0.5, 0.5, 0.0])

    def test_missed_samples_are_dropped(self, slab_index):
        mapper = MeshMapper(slab_index)
        points = [[[0.5, 0, 0], [0.6, 0, 0], [1.5, 0, 0], [9.0, 0, 0]]]
        mapping, fractions = mapper.build_sampled(points, [3.0])

        assert fractions.element_fractions[0] == pytest.approx([2.0 / 3.0, 1.0 / 3.0])
        assert mapping.n_unmapped == 0

    def test_fraction_normalization(self, slab_index):
        """Mapped elements have fractions summing to one; others are unmapped."""
        rng = np.random.default_rng(7)
        points = [rng.uniform(-0.5, 3.5, size=(rng.integers(1, 6), 3)) for _ in range(200)]
        volumes = rng.uniform(0.1, 2.0, size=200)
        mapping, fractions = MeshMapper(slab_index).build_sampled(points, volumes)

        sums = fractions.fraction_sums()
        mapped = mapping.mapped_mask
        np.testing.assert_allclose(sums[mapped], 1.0, atol=1e-9)
        assert np.all(sums[~mapped] == 0.0)
        assert check_fractions(mapping, fractions) == []

    def test_cell_shares_sum_to_one_per_cell(self, slab_index):
        points = [
            [[0.2, 0, 0], [1.2, 0, 0]],
            [[0.4, 0, 0]],
            [[1.6, 0, 0], [1.7, 0, 0], [2.1, 0, 0]],
        ]
        mapping, fractions = MeshMapper(slab_index).build_sampled(points, [2.0, 1.0, 3.0])

        totals = np.zeros(mapping.n_cells)
        for e in range(mapping.n_elements):
            for c, share in fractions.cell_shares(e).items():
                totals[c] += share
        np.testing.assert_allclose(totals, 1.0)


class TestCheckFractions:
    """Test cases for the fraction invariant check."""

    def test_detects_bad_sum(self, two_cell_map):
        mapping, fractions = two_cell_map
        fractions.element_fractions[1] = [0.7]
        assert check_fractions(mapping, fractions) == [1]

    def test_detects_fraction_on_unmapped(self, two_cell_map):
        mapping, fractions = two_cell_map
        mapping.element_to_cells[0] = []
        assert check_fractions(mapping, fractions) == [0]
