"""
Conservative field transfer between neutronics cells and T/H elements.

Two conversions are provided:

* power down-mapping: a per-cell tally is renormalized to a prescribed total
  power and spread onto elements as a volumetric power density, such that
  ``sum(q_e * V_e) == total_power``;
* state up-mapping: per-element temperature and density are averaged onto
  cells with volume weights, leaving cells without mapped volume untouched.
"""
from typing import Optional, Tuple

import logging

import numpy as np
from scipy import sparse

from .mapping import CellElementMap, VolumeFractions

logger = logging.getLogger(__name__)


def _as_field(values, n: int, label: str) -> np.ndarray:
    arr = np.asarray(values, dtype=np.float64).ravel()
    if len(arr) != n:
        raise ValueError(f"{label} has {len(arr)} entries, expected {n}")
    return arr


def to_power_field(cell_tally,
                   total_power: float,
                   mapping: CellElementMap,
                   fractions: VolumeFractions) -> np.ndarray:
    """Convert a per-cell tally into a power density on T/H elements.

    The tally is scaled by ``total_power / sum_c(tally_c * V_c)`` where the
    sum runs only over cells with positive mapped volume ``V_c``; cells
    without mapped elements neither receive nor absorb power. Each element
    then receives ``sum_c factor * tally_c * f_ec``.

    Args:
        cell_tally: Non-negative values indexed like ``mapping.cells``. Any
            consistent unit works since the tally is renormalized.
        total_power: Power the field must integrate to [W].
        mapping: Cell/element correspondence.
        fractions: Volume fractions that belong to ``mapping``.

    Returns:
        Power density per element [W per unit volume]; zero on unmapped
        elements.

    Raises:
        ValueError: If the tally is malformed, or if a non-zero power has to
            be placed on cells whose weighted tally sums to zero.
    """
    tally = _as_field(cell_tally, mapping.n_cells, "Cell tally")
    if not np.all(np.isfinite(tally)) or np.any(tally < 0.0):
        raise ValueError("Cell tally must be finite and non-negative")
    if not np.isfinite(total_power) or total_power < 0.0:
        raise ValueError(f"total_power must be finite and non-negative, got {total_power}")

    if total_power == 0.0:
        return np.zeros(mapping.n_elements)

    active = fractions.active_cells
    denominator = float(np.dot(tally[active], fractions.cell_volumes[active]))
    if denominator <= 0.0:
        raise ValueError(
            f"Cannot distribute {total_power:.6e} W: tally is zero on all "
            f"{int(active.sum())} mapped cells")

    factor = total_power / denominator
    density = np.where(active, tally * factor, 0.0)
    field = np.asarray(fractions.fraction_matrix @ density, dtype=np.float64).ravel()

    logger.debug(
        f"Power renormalization factor {factor:.6e} over {int(active.sum())} cells, "
        f"peak density {field.max(initial=0.0):.6e}")
    return field


def integrate(field, volumes) -> float:
    """Total of a volumetric field, ``sum(field * volumes)``."""
    return float(np.dot(np.asarray(field, dtype=np.float64),
                        np.asarray(volumes, dtype=np.float64)))


class CellAccumulator:
    """Volume-weighted averaging of element values onto cells.

    Contributions from several element sets (e.g. several T/H solvers that
    share cells) can be added before the average is taken. Each cell keeps a
    reference value, the first value it received, and accumulates weighted
    deviations from it; a cell whose elements all report the same value
    therefore averages to exactly that value.

    Args:
        n_cells: Number of cells in the target index space.
    """

    def __init__(self, n_cells: int):
        self.n_cells = n_cells
        self.reference = np.full(n_cells, np.nan)
        self.deviation = np.zeros(n_cells)
        self.weight = np.zeros(n_cells)

    def add(self,
            values,
            weights: sparse.spmatrix,
            cell_lookup: Optional[np.ndarray] = None,
            mask: Optional[np.ndarray] = None) -> None:
        """Accumulate element values.

        Args:
            values: One value per element (rows of ``weights``).
            weights: Sparse (n_elements, n_local_cells) volume weights.
            cell_lookup: Target cell index for each local cell; identity if
                omitted.
            mask: Optional boolean mask of elements allowed to contribute.
        """
        n_elements, n_local = weights.shape
        vals = _as_field(values, n_elements, "Element values")
        if mask is not None:
            keep = _as_field(mask, n_elements, "Element mask") != 0.0
            weights = sparse.diags(keep.astype(np.float64)) @ weights

        wt = sparse.csr_matrix(weights.T)
        wt.eliminate_zeros()
        counts = np.diff(wt.indptr)
        has = counts > 0
        if not np.all(np.isfinite(vals[wt.indices])):
            raise ValueError("Element values must be finite on mapped elements")

        local_ref = np.zeros(n_local)
        local_ref[has] = vals[wt.indices[wt.indptr[:-1][has]]]
        dev = sparse.csr_matrix(
            (wt.data * (vals[wt.indices] - np.repeat(local_ref, counts)), wt.indices, wt.indptr),
            shape=wt.shape)
        local_dev = np.asarray(dev.sum(axis=1)).ravel()
        local_w = np.asarray(wt.sum(axis=1)).ravel()

        target = np.arange(n_local) if cell_lookup is None else np.asarray(cell_lookup)
        idx = target[has]
        fresh = np.isnan(self.reference[idx])
        self.reference[idx[fresh]] = local_ref[has][fresh]
        self.deviation[idx] += local_dev[has] + (local_ref[has] - self.reference[idx]) * local_w[has]
        self.weight[idx] += local_w[has]

    @property
    def covered(self) -> np.ndarray:
        """Mask of cells that received positive weight."""
        return self.weight > 0.0

    def average(self, previous) -> np.ndarray:
        """Weighted averages, with ``previous`` kept where no weight arrived."""
        out = _as_field(previous, self.n_cells, "Previous cell values").copy()
        ok = self.covered
        out[ok] = self.reference[ok] + self.deviation[ok] / self.weight[ok]
        return out


def to_cell_state(element_temperatures,
                  element_densities,
                  mapping: CellElementMap,
                  element_volumes,
                  previous_temperatures,
                  previous_densities,
                  fluid_mask=None,
                  fractions: Optional[VolumeFractions] = None) -> Tuple[np.ndarray, np.ndarray]:
    """Average element temperature and density onto neutronics cells.

    ``T_c = sum(w_ec * T_e) / sum(w_ec)`` with ``w_ec = f_ec * V_e``. A cell
    with no mapped volume keeps its previous temperature and density. When
    ``fluid_mask`` is given only fluid elements contribute to density, and
    cells without fluid keep their previous density.

    Args:
        element_temperatures: Temperature per element [K].
        element_densities: Density per element [g/cm^3].
        mapping: Cell/element correspondence.
        element_volumes: Volume per element; used to build weights when
            ``fractions`` is not supplied.
        previous_temperatures: Current cell temperatures, same order as
            ``mapping.cells``.
        previous_densities: Current cell densities.
        fluid_mask: Optional per-element flag, true for fluid elements.
        fractions: Volume fractions of ``mapping``; if omitted, each element
            contributes its full volume to each cell that claims it.

    Returns:
        Tuple of (cell_temperatures, cell_densities).
    """
    if fractions is None:
        volumes = _as_field(element_volumes, mapping.n_elements, "Element volumes")
        rows, cols, vals = [], [], []
        for e, owners in enumerate(mapping.element_to_cells):
            for c in owners:
                rows.append(e)
                cols.append(c)
                vals.append(volumes[e] / len(owners))
        weights = sparse.csr_matrix(
            (np.asarray(vals, dtype=np.float64),
             (np.asarray(rows, dtype=np.int64), np.asarray(cols, dtype=np.int64))),
            shape=(mapping.n_elements, mapping.n_cells))
    else:
        weights = fractions.weights

    temperature = CellAccumulator(mapping.n_cells)
    temperature.add(element_temperatures, weights)
    density = CellAccumulator(mapping.n_cells)
    density.add(element_densities, weights, mask=fluid_mask)

    n_kept = int(np.count_nonzero(~temperature.covered))
    if n_kept:
        logger.debug(f"{n_kept} cells without mapped volume keep their previous state")

    return (temperature.average(previous_temperatures),
            density.average(previous_densities))


def relax(new, old, alpha: float) -> np.ndarray:
    """Under-relax ``new`` towards ``old``: ``alpha*new + (1-alpha)*old``.

    With ``alpha == 1`` or no previous value, ``new`` is returned as is.
    """
    if not 0.0 < alpha <= 1.0:
        raise ValueError(f"Relaxation factor must be in (0, 1], got {alpha}")
    new = np.asarray(new, dtype=np.float64)
    if old is None or alpha == 1.0:
        return new
    return alpha * new + (1.0 - alpha) * np.asarray(old, dtype=np.float64)
