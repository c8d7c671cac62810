"""
Capability sets for the physics solvers driven by the coupling loop.

Any object exposing these methods can be coupled; no base class has to be
inherited. The protocols are runtime checkable so the controller can reject
objects that are missing part of the contract before a step starts.
"""
from typing import Hashable, List, Optional, Protocol, Sequence, runtime_checkable

import numpy as np


@runtime_checkable
class Solver(Protocol):
    """Step lifecycle shared by every coupled solver."""

    def init_step(self) -> None:
        """Prepare internal state for the upcoming time step."""

    def solve_step(self) -> None:
        """Run one solve; blocks until the solver is done."""

    def finalize_step(self) -> None:
        """Close out the time step (output, checkpoints, bookkeeping)."""


@runtime_checkable
class NeutronicsSolver(Solver, Protocol):
    """Particle-transport solver that owns the geometry and material state."""

    def find(self, positions: np.ndarray) -> List[Optional[Hashable]]:
        """Cell handle containing each position, ``None`` where not found."""

    def create_tallies(self, cells: Sequence[Hashable]) -> None:
        """Set up heat-deposition tallies over ``cells``."""

    def heat_source(self, total_power: float) -> np.ndarray:
        """Volumetric heat source per tallied cell, normalized to ``total_power``."""

    def set_temperature(self, cell: Hashable, T: float) -> None: ...

    def set_density(self, cell: Hashable, rho: float) -> None: ...

    def get_temperature(self, cell: Hashable) -> float: ...

    def get_density(self, cell: Hashable) -> float: ...

    def get_volume(self, cell: Hashable) -> float: ...

    def n_cells(self) -> int: ...


@runtime_checkable
class HeatFluidsSolver(Solver, Protocol):
    """Thermal-hydraulics solver with a flat array of mesh elements."""

    def centroids(self) -> np.ndarray:
        """Element centroids, shape (n_elements, 3)."""

    def volumes(self) -> np.ndarray:
        """Element volumes, shape (n_elements,)."""

    def temperature(self) -> np.ndarray: ...

    def density(self) -> np.ndarray: ...

    def fluid_mask(self) -> np.ndarray:
        """True for elements whose density feeds back to neutronics."""

    def set_heat_source(self, q: np.ndarray) -> None:
        """Volumetric heat source per element for the next solve."""
