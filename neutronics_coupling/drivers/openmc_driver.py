"""
Neutronics collaborator backed by the OpenMC C API (``openmc.lib``).

Cells are addressed by ``(cell_id, instance)`` handles so that distributed
cells (one cell repeated through a lattice) can carry a separate
temperature per instance. Heat deposition is tallied with a
``kappa-fission`` score on a cell-instance filter.
"""
from pathlib import Path
from typing import Dict, Hashable, List, Optional, Sequence, Tuple, Union

import logging

import numpy as np
import openmc.lib
from openmc.exceptions import GeometryError

logger = logging.getLogger(__name__)

CellHandle = Tuple[int, int]


class OpenmcDriver:
    """Drive an in-memory OpenMC model for the coupling loop.

    Use as a context manager so that ``openmc.lib`` is initialized and
    finalized around the coupled run::

        with OpenmcDriver(model_dir) as neutronics:
            controller = CouplingController(neutronics, heat, total_power=...)
            controller.run(n_timesteps)

    Args:
        model_dir: Directory with the OpenMC XML input; current directory if None.
        args: Extra command-line arguments passed to ``openmc.lib.init``.
        output: Let OpenMC print its own output.
        statepoint: Write a statepoint after every Picard iteration, named
            ``openmc_t{timestep}_i{iteration}.h5``.
        volumes: Optional cell volumes [cm^3] by handle, overriding the
            volume of the filling material.
    """

    def __init__(self,
                 model_dir: Optional[Union[str, Path]] = None,
                 args: Optional[Sequence[str]] = None,
                 output: bool = False,
                 statepoint: bool = False,
                 volumes: Optional[Dict[CellHandle, float]] = None,
                 intracomm=None):
        self.model_dir = Path(model_dir) if model_dir is not None else None
        self.args = list(args) if args else []
        self.output = output
        self.statepoint = statepoint
        self.volumes = dict(volumes) if volumes else {}
        self.intracomm = intracomm
        self.cells: List[CellHandle] = []
        self.tally = None
        self.timestep = 0
        self._initialized = False

    def __enter__(self) -> "OpenmcDriver":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.finalize()

    def initialize(self) -> None:
        args = list(self.args)
        if self.model_dir is not None:
            args.insert(0, str(self.model_dir))
        openmc.lib.init(args=args or None, intracomm=self.intracomm, output=self.output)
        self._initialized = True

    def finalize(self) -> None:
        if self._initialized:
            openmc.lib.finalize()
            self._initialized = False

    @property
    def bounding_box(self):
        ll, ur = openmc.lib.global_bounding_box()
        return np.asarray(ll), np.asarray(ur)

    # ------------------------------------------------------------------
    # Geometry

    def find(self, positions) -> List[Optional[CellHandle]]:
        """Cell instance containing each position, None where OpenMC finds none."""
        handles = []
        for xyz in np.asarray(positions, dtype=np.float64).reshape(-1, 3):
            try:
                cell, instance = openmc.lib.find_cell(tuple(xyz))
            except GeometryError:
                handles.append(None)
                continue
            handles.append((cell.id, int(instance)))
        return handles

    def _cell(self, handle: CellHandle):
        return openmc.lib.cells[handle[0]]

    def _material(self, handle: CellHandle):
        fill = self._cell(handle).fill
        if isinstance(fill, list):
            fill = fill[handle[1]] if len(fill) > 1 else fill[0]
        if not isinstance(fill, openmc.lib.Material):
            raise ValueError(f"Cell {handle[0]} is not filled with a material")
        return fill

    # ------------------------------------------------------------------
    # Material state

    def set_temperature(self, cell: CellHandle, T: float) -> None:
        self._cell(cell).set_temperature(T, cell[1])

    def get_temperature(self, cell: CellHandle) -> float:
        return float(self._cell(cell).get_temperature(cell[1]))

    def set_density(self, cell: CellHandle, rho: float) -> None:
        self._material(cell).set_density(rho, 'g/cm3')

    def get_density(self, cell: CellHandle) -> float:
        return float(self._material(cell).get_density('g/cm3'))

    def get_volume(self, cell: CellHandle) -> float:
        if cell in self.volumes:
            return float(self.volumes[cell])
        volume = self._material(cell).volume
        if volume is None:
            raise ValueError(f"No volume known for cell {cell[0]} instance {cell[1]}")
        return float(volume)

    def n_cells(self) -> int:
        """Number of cells in the loaded geometry, coupled or not."""
        return len(openmc.lib.cells)

    # ------------------------------------------------------------------
    # Tallies

    def create_tallies(self, cells: Sequence[Hashable]) -> None:
        """Tally recoverable fission energy in every coupled cell instance."""
        self.cells = list(cells)
        bins = [(self._cell(h), h[1]) for h in self.cells]
        cell_filter = openmc.lib.CellInstanceFilter(bins)
        if self.tally is None:
            self.tally = openmc.lib.Tally()
            self.tally.scores = ['kappa-fission']
        self.tally.filters = [cell_filter]
        self.tally.active = True
        logger.info(f"Created kappa-fission tally over {len(self.cells)} cell instances")

    def heat_source(self, total_power: float) -> np.ndarray:
        """Volumetric heat source [W/cm^3] per tallied cell for ``total_power`` [W]."""
        if self.tally is None:
            raise RuntimeError("create_tallies() must be called before heat_source()")
        energy = np.asarray(self.tally.mean, dtype=np.float64).ravel()
        total = energy.sum()
        if total <= 0.0:
            raise ValueError("kappa-fission tally is zero; no fissionable coupled cells?")
        volumes = np.array([self.get_volume(h) for h in self.cells])
        return total_power * energy / total / volumes

    # ------------------------------------------------------------------
    # Step lifecycle

    def init_step(self) -> None:
        logger.debug(f"OpenMC init for time step {self.timestep}")

    def solve_step(self) -> None:
        openmc.lib.reset()
        openmc.lib.run(output=self.output)

    def write_step(self, timestep: int, iteration: int) -> None:
        if self.statepoint:
            openmc.lib.statepoint_write(filename=f"openmc_t{timestep}_i{iteration}.h5")

    def finalize_step(self) -> None:
        self.timestep += 1
