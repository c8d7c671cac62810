"""
Correspondence between neutronics cells and thermal-hydraulic mesh elements.

Cells and elements live in flat arrays and the correspondence is stored as
index lists in both directions, plus a sparse weight matrix

    W[e, c] = f_ec * V_e

where ``f_ec`` is the fraction of element ``e``'s volume attributed to cell
``c``. Both field transfers are products with ``W`` or its transpose, so
the power down-mapping and the state up-mapping always agree on which
volume belongs to which cell.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Hashable, List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse

from .geometry import GeometryIndex, as_positions

logger = logging.getLogger(__name__)

FRACTION_TOLERANCE = 1e-9


@dataclass
class CellElementMap:
    """Index lists relating neutronics cells to T/H elements.

    Attributes:
        cells: Unique cell handles in order of first discovery.
        cell_to_elements: For each cell index, the ordered element indices
            mapped to it.
        element_to_cells: For each element index, the cell indices that
            contribute to it. Empty for unmapped elements.
        n_elements: Number of T/H elements the map was built from.
    """
    cells: List[Hashable]
    cell_to_elements: List[List[int]]
    element_to_cells: List[List[int]]
    n_elements: int

    @property
    def n_cells(self) -> int:
        return len(self.cells)

    @property
    def unmapped(self) -> List[int]:
        """Element indices that no cell claims."""
        return [e for e, owners in enumerate(self.element_to_cells) if not owners]

    @property
    def n_unmapped(self) -> int:
        return sum(1 for owners in self.element_to_cells if not owners)

    @property
    def mapped_mask(self) -> np.ndarray:
        return np.array([bool(owners) for owners in self.element_to_cells], dtype=bool)

    def cell_index(self, handle: Hashable) -> int:
        """Position of ``handle`` in :attr:`cells`."""
        try:
            return self.cells.index(handle)
        except ValueError:
            raise KeyError(f"Cell {handle!r} is not part of this map") from None

    def elements_of(self, handle: Hashable) -> List[int]:
        return self.cell_to_elements[self.cell_index(handle)]


@dataclass
class VolumeFractions:
    """Volume bookkeeping that accompanies a :class:`CellElementMap`.

    Attributes:
        element_fractions: Per element, the fraction of its volume attributed
            to each cell in ``element_to_cells[e]`` (same order).
        element_volumes: Nominal element volumes.
        cell_volumes: Mapped volume per cell, ``sum_e f_ec * V_e``.
        weights: Sparse (n_elements, n_cells) matrix of ``f_ec * V_e``.
        fraction_matrix: Sparse (n_elements, n_cells) matrix of ``f_ec``.
    """
    element_fractions: List[List[float]]
    element_volumes: np.ndarray
    cell_volumes: np.ndarray
    weights: sparse.csr_matrix = field(repr=False)
    fraction_matrix: sparse.csr_matrix = field(repr=False)

    def cell_shares(self, element: int) -> Dict[int, float]:
        """Share of each contributing cell's aggregate that goes to ``element``.

        For a cell ``c`` this is ``f_ec * V_e / cell_volumes[c]``; over all
        elements of one cell the shares sum to one.
        """
        start, stop = self.weights.indptr[element], self.weights.indptr[element + 1]
        shares = {}
        for c, w in zip(self.weights.indices[start:stop], self.weights.data[start:stop]):
            if self.cell_volumes[c] > 0.0:
                shares[int(c)] = float(w / self.cell_volumes[c])
        return shares

    def fraction_sums(self) -> np.ndarray:
        """Sum of fractions per element (0 for unmapped elements)."""
        return np.array([float(sum(f)) for f in self.element_fractions])

    @property
    def active_cells(self) -> np.ndarray:
        """Mask of cells with positive mapped volume."""
        return self.cell_volumes > 0.0


def _check_volumes(element_volumes, n_elements: int) -> np.ndarray:
    volumes = np.asarray(element_volumes, dtype=np.float64).ravel()
    if len(volumes) != n_elements:
        raise ValueError(
            f"Got {len(volumes)} element volumes for {n_elements} elements")
    if not np.all(np.isfinite(volumes)) or np.any(volumes < 0.0):
        raise ValueError("Element volumes must be finite and non-negative")
    return volumes


class MeshMapper:
    """Builds and owns the cell/element correspondence for one T/H mesh.

    A map is built from scratch every time; when element centroids move the
    caller invokes :meth:`rebuild`, incremental updates are not supported.

    Args:
        index: Geometry lookup used to place element sample points.
        name: Label used in log messages.
    """

    def __init__(self, index: GeometryIndex, name: str = "heat"):
        self.index = index
        self.name = name
        self.mapping: Optional[CellElementMap] = None
        self.fractions: Optional[VolumeFractions] = None

    def build(self,
              element_centroids,
              element_volumes) -> Tuple[CellElementMap, VolumeFractions]:
        """Map every element to the cell containing its centroid.

        Args:
            element_centroids: Array-like of shape (n_elements, 3).
            element_volumes: Array-like of shape (n_elements,).

        Returns:
            The new map and its volume fractions. Elements whose centroid is
            not found are left unmapped.
        """
        centroids = as_positions(element_centroids)
        return self.build_sampled([c.reshape(1, 3) for c in centroids], element_volumes)

    def build_sampled(self,
                      element_points: Sequence[Any],
                      element_volumes) -> Tuple[CellElementMap, VolumeFractions]:
        """Map elements using several sample points per element.

        The fraction of an element attributed to a cell is the share of the
        element's located points that fall in that cell. Points that are not
        found are dropped; an element with no located point is unmapped.

        Args:
            element_points: One (k, 3) array-like of sample points per element.
            element_volumes: Array-like of shape (n_elements,).
        """
        n_elements = len(element_points)
        volumes = _check_volumes(element_volumes, n_elements)
        point_sets = [as_positions(p) for p in element_points]

        counts = [len(p) for p in point_sets]
        flat = np.concatenate(point_sets) if n_elements else np.empty((0, 3))
        handles = self.index.locate_many(flat) if len(flat) else []

        cells: List[Hashable] = []
        slot: Dict[Hashable, int] = {}
        cell_to_elements: List[List[int]] = []
        element_to_cells: List[List[int]] = []
        element_fractions: List[List[float]] = []
        rows, cols, vals, fvals = [], [], [], []

        offset = 0
        for e in range(n_elements):
            hits: Dict[int, int] = {}
            for handle in handles[offset:offset + counts[e]]:
                if handle is None:
                    continue
                if handle not in slot:
                    slot[handle] = len(cells)
                    cells.append(handle)
                    cell_to_elements.append([])
                c = slot[handle]
                hits[c] = hits.get(c, 0) + 1
            offset += counts[e]

            n_found = sum(hits.values())
            owners = sorted(hits)
            fracs = [hits[c] / n_found for c in owners]
            element_to_cells.append(owners)
            element_fractions.append(fracs)
            for c, f in zip(owners, fracs):
                cell_to_elements[c].append(e)
                rows.append(e)
                cols.append(c)
                vals.append(f * volumes[e])
                fvals.append(f)

        shape = (n_elements, len(cells))
        rows = np.asarray(rows, dtype=np.int64)
        cols = np.asarray(cols, dtype=np.int64)
        weights = sparse.csr_matrix(
            (np.asarray(vals, dtype=np.float64), (rows, cols)), shape=shape)
        fraction_matrix = sparse.csr_matrix(
            (np.asarray(fvals, dtype=np.float64), (rows, cols)), shape=shape)
        cell_volumes = np.asarray(weights.sum(axis=0), dtype=np.float64).ravel()

        mapping = CellElementMap(
            cells=cells,
            cell_to_elements=cell_to_elements,
            element_to_cells=element_to_cells,
            n_elements=n_elements,
        )
        fractions = VolumeFractions(
            element_fractions=element_fractions,
            element_volumes=volumes,
            cell_volumes=cell_volumes,
            weights=weights,
            fraction_matrix=fraction_matrix,
        )

        if mapping.n_unmapped:
            logger.warning(
                f"[{self.name}] {mapping.n_unmapped} of {n_elements} elements have no "
                f"neutronics cell and are excluded from coupling")
        n_empty = int(np.count_nonzero(cell_volumes <= 0.0))
        if n_empty:
            logger.debug(f"[{self.name}] {n_empty} cells have zero mapped volume")
        logger.info(
            f"[{self.name}] mapped {n_elements - mapping.n_unmapped} elements onto "
            f"{mapping.n_cells} cells")

        self.mapping = mapping
        self.fractions = fractions
        return mapping, fractions

    def rebuild(self, element_centroids, element_volumes) -> Tuple[CellElementMap, VolumeFractions]:
        """Discard the current map and memoized lookups, then build again."""
        self.index.clear()
        self.mapping = None
        self.fractions = None
        return self.build(element_centroids, element_volumes)


def check_fractions(mapping: CellElementMap,
                    fractions: VolumeFractions,
                    tol: float = FRACTION_TOLERANCE) -> List[int]:
    """Return element indices that violate the fraction invariants.

    Every fraction must lie in [0, 1] and the fractions of a mapped element
    must sum to one within ``tol``; unmapped elements have no fractions.
    """
    bad = []
    for e, fracs in enumerate(fractions.element_fractions):
        if not mapping.element_to_cells[e]:
            if fracs:
                bad.append(e)
            continue
        if any(f < 0.0 or f > 1.0 for f in fracs) or abs(sum(fracs) - 1.0) > tol:
            bad.append(e)
    return bad
