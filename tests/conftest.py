"""
Pytest configuration and fixtures for neutronics_coupling tests.
"""

import tempfile
from pathlib import Path
from typing import List, Optional

import numpy as np
import pytest

from neutronics_coupling.geometry import GeometryIndex
from neutronics_coupling.mapping import MeshMapper


class SlabNeutronics:
    """Neutronics stand-in whose cells are slabs along one axis.

    Cell ``i`` (ids start at 1) holds points with
    ``edges[i-1] <= coordinate < edges[i]``; points outside the outer edges
    are not found. Every call that matters for ordering is appended to
    ``events`` as ``'n.<method>'``.
    """

    def __init__(self, edges, tally=None, axis=0, temperature=293.6, density=1.0,
                 events: Optional[List[str]] = None, fail_on_solve=None, fail_on_finalize=False,
                 tally_sequence=None):
        self.edges = np.asarray(edges, dtype=np.float64)
        self.axis = axis
        self.cell_ids = list(range(1, len(self.edges)))
        tally = np.ones(len(self.cell_ids)) if tally is None else tally
        self.tally_values = dict(zip(self.cell_ids, tally))
        self.tally_sequence = tally_sequence
        self.temperatures = {c: temperature for c in self.cell_ids}
        self.densities = {c: density for c in self.cell_ids}
        self.events = events if events is not None else []
        self.fail_on_solve = fail_on_solve
        self.fail_on_finalize = fail_on_finalize
        self.tallied = []
        self.n_find = 0
        self.n_solves = 0
        self.n_heat_source = 0
        self.n_init = 0
        self.n_finalize = 0
        self.writes = []

    def find(self, positions):
        self.n_find += 1
        out = []
        for point in np.asarray(positions, dtype=np.float64).reshape(-1, 3):
            x = point[self.axis]
            if x < self.edges[0] or x >= self.edges[-1]:
                out.append(None)
            else:
                i = int(np.searchsorted(self.edges, x, side='right')) - 1
                out.append(self.cell_ids[i])
        return out

    def create_tallies(self, cells):
        self.events.append('n.create_tallies')
        self.tallied = list(cells)

    def heat_source(self, total_power):
        self.events.append('n.heat_source')
        if self.tally_sequence is not None:
            values = self.tally_sequence[self.n_heat_source % len(self.tally_sequence)]
            self.tally_values = dict(zip(self.cell_ids, values))
        self.n_heat_source += 1
        return np.array([self.tally_values[c] for c in self.tallied], dtype=np.float64)

    def set_temperature(self, cell, T):
        self.events.append('n.set_temperature')
        self.temperatures[cell] = T

    def set_density(self, cell, rho):
        self.events.append('n.set_density')
        self.densities[cell] = rho

    def get_temperature(self, cell):
        return self.temperatures[cell]

    def get_density(self, cell):
        return self.densities[cell]

    def get_volume(self, cell):
        i = self.cell_ids.index(cell)
        return float(self.edges[i + 1] - self.edges[i])

    def n_cells(self):
        return len(self.cell_ids)

    def init_step(self):
        self.events.append('n.init_step')
        self.n_init += 1

    def solve_step(self):
        self.events.append('n.solve_step')
        self.n_solves += 1
        if self.fail_on_solve is not None and self.n_solves == self.fail_on_solve:
            raise RuntimeError("transport solve failed")

    def write_step(self, timestep, iteration):
        self.events.append('n.write_step')
        self.writes.append((timestep, iteration))

    def finalize_step(self):
        self.events.append('n.finalize_step')
        self.n_finalize += 1
        if self.fail_on_finalize:
            raise RuntimeError("statepoint write failed")


class LinearHeat:
    """T/H stand-in with ``T = T0 + slope * q`` and a density drop in fluid."""

    def __init__(self, centroids, volumes, fluid=None, T0=300.0, rho0=0.7, slope=1.0,
                 events: Optional[List[str]] = None, label='h'):
        self._centroids = np.asarray(centroids, dtype=np.float64)
        self._volumes = np.asarray(volumes, dtype=np.float64)
        n = len(self._volumes)
        self._fluid = np.ones(n, dtype=bool) if fluid is None else np.asarray(fluid, dtype=bool)
        self.T0 = T0
        self.rho0 = rho0
        self.slope = slope
        self.events = events if events is not None else []
        self.label = label
        self.q = np.zeros(n)
        self._temperature = np.full(n, T0)
        self._density = np.where(self._fluid, rho0, 0.0)
        self.n_solves = 0
        self.n_init = 0
        self.n_finalize = 0

    def centroids(self):
        return self._centroids

    def volumes(self):
        return self._volumes

    def temperature(self):
        return self._temperature.copy()

    def density(self):
        return self._density.copy()

    def fluid_mask(self):
        return self._fluid.copy()

    def set_heat_source(self, q):
        self.events.append(f'{self.label}.set_heat_source')
        self.q = np.asarray(q, dtype=np.float64).copy()

    def init_step(self):
        self.events.append(f'{self.label}.init_step')
        self.n_init += 1

    def solve_step(self):
        self.events.append(f'{self.label}.solve_step')
        self.n_solves += 1
        self._temperature = self.T0 + self.slope * self.q
        self._density = np.where(self._fluid, self.rho0 - 1e-3 * self.q, 0.0)

    def finalize_step(self):
        self.events.append(f'{self.label}.finalize_step')
        self.n_finalize += 1


@pytest.fixture
def events():
    """Shared call log for ordering checks."""
    return []


@pytest.fixture
def two_cell_neutronics(events):
    """Two slab cells of volume 10 and 20 with tallies 1 and 3."""
    return SlabNeutronics([0.0, 10.0, 30.0], tally=[1.0, 3.0], events=events)


@pytest.fixture
def two_element_heat(events):
    """One element filling each slab cell."""
    return LinearHeat(
        centroids=[[5.0, 0.5, 0.5], [20.0, 0.5, 0.5]],
        volumes=[10.0, 20.0],
        events=events,
    )


@pytest.fixture
def two_cell_map(two_cell_neutronics, two_element_heat):
    """Map and fractions for the two-cell example."""
    mapper = MeshMapper(GeometryIndex(two_cell_neutronics.find))
    return mapper.build(two_element_heat.centroids(), two_element_heat.volumes())


@pytest.fixture
def temp_hdf5_file():
    """Temporary HDF5 file for testing."""
    with tempfile.NamedTemporaryFile(suffix='.h5', delete=False) as f:
        yield Path(f.name)
    Path(f.name).unlink(missing_ok=True)
