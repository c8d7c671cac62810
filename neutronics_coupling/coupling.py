"""
Picard coupling between one neutronics solver and one or more T/H solvers.

Each time step runs

    Init -> Exchange(1) -> ... -> Exchange(n) -> Converged | MaxIterExceeded

where one exchange is, strictly in this order: pull the heat source from
neutronics, map it onto every T/H mesh and solve T/H, average the new
temperature and density onto neutronics cells and push them, then solve
neutronics. ``finalize_step`` is called on every solver once per step,
whatever the outcome.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .convergence import NORMS, check_field_convergence
from .drivers.base import HeatFluidsSolver, NeutronicsSolver
from .geometry import GeometryIndex, index_from_driver
from .mapping import CellElementMap, MeshMapper, VolumeFractions
from .transfer import CellAccumulator, relax, to_power_field

logger = logging.getLogger(__name__)

TEMPERATURE_IC = ('neutronics', 'heat')


class CouplingState(Enum):
    INIT = 'init'
    EXCHANGE = 'exchange'
    CONVERGED = 'converged'
    MAX_ITER_EXCEEDED = 'max_iter_exceeded'


@dataclass
class ThermalCoupling:
    """One T/H solver taking part in the coupling.

    Attributes:
        solver: The T/H collaborator.
        power_fraction: Share of the total power deposited on this solver's
            mesh.
        name: Label used in logs and results.
    """
    solver: Any
    power_fraction: float = 1.0
    name: Optional[str] = None
    mapper: Optional[MeshMapper] = field(default=None, repr=False)
    cell_lookup: Optional[np.ndarray] = field(default=None, repr=False)
    power_field: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def mapping(self) -> CellElementMap:
        return self.mapper.mapping

    @property
    def fractions(self) -> VolumeFractions:
        return self.mapper.fractions


@dataclass
class StepResult:
    """Outcome of one coupled time step.

    Attributes:
        timestep: Time step index.
        state: Final state, CONVERGED or MAX_ITER_EXCEEDED.
        iterations: Number of exchanges performed.
        history: One record per exchange.
        unmapped: Number of unmapped elements per T/H solver.
    """
    timestep: int
    state: CouplingState
    iterations: int = 0
    history: List[Dict[str, float]] = field(default_factory=list)
    unmapped: Dict[str, int] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.state is CouplingState.CONVERGED

    def to_dataframe(self) -> pd.DataFrame:
        """Iteration history as a DataFrame, one row per exchange."""
        df = pd.DataFrame(self.history)
        df.insert(0, 'timestep', self.timestep)
        return df

    def to_hdf5(self, filepath: Union[str, Path]) -> None:
        from .io import save_history
        save_history([self], filepath)


def _as_coupling(item: Any, i: int) -> ThermalCoupling:
    coupling = item if isinstance(item, ThermalCoupling) else ThermalCoupling(solver=item)
    if coupling.name is None:
        coupling.name = f"heat{i}"
    if not isinstance(coupling.solver, HeatFluidsSolver):
        raise TypeError(f"{coupling.name}: {type(coupling.solver).__name__} is not a T/H solver")
    if not 0.0 <= coupling.power_fraction <= 1.0:
        raise ValueError(f"{coupling.name}: power_fraction must be in [0, 1]")
    return coupling


class CouplingController:
    """Drives the Picard exchange between neutronics and T/H solvers.

    Args:
        neutronics: Neutronics collaborator; also provides point location.
        couplings: A T/H solver, a :class:`ThermalCoupling`, or a sequence of
            either.
        total_power: Power the heat source is normalized to [W].
        max_iterations: Cap on exchanges per time step.
        tolerance: Relative change of temperature and power below which an
            exchange counts as converged.
        norm: Norm for the relative change ('l1', 'l2', 'linf').
        alpha: Under-relaxation of the power field.
        alpha_T: Under-relaxation of cell temperatures.
        alpha_rho: Under-relaxation of cell densities.
        temperature_ic: Initial cell temperatures: 'neutronics' keeps the
            neutronics model values, 'heat' pushes the T/H initial state
            before the first neutronics solve.
        convergence_check: Optional ``f(previous, current) -> bool`` replacing
            the default criterion; both arguments are dicts with
            'temperature' and 'power' arrays ('power' is None before the
            first exchange).
        index: Geometry lookup; built over ``neutronics.find`` if omitted.
    """

    def __init__(self,
                 neutronics: NeutronicsSolver,
                 couplings: Union[Any, Sequence[Any]],
                 total_power: float,
                 max_iterations: int = 5,
                 tolerance: float = 1e-3,
                 norm: str = 'linf',
                 alpha: float = 1.0,
                 alpha_T: float = 1.0,
                 alpha_rho: float = 1.0,
                 temperature_ic: str = 'neutronics',
                 convergence_check: Optional[Callable[[Dict, Dict], bool]] = None,
                 index: Optional[GeometryIndex] = None):
        if not isinstance(neutronics, NeutronicsSolver):
            raise TypeError(f"{type(neutronics).__name__} is not a neutronics solver")
        if not np.isfinite(total_power) or total_power < 0.0:
            raise ValueError(f"total_power must be finite and non-negative, got {total_power}")
        if int(max_iterations) != max_iterations or max_iterations < 1:
            raise ValueError(f"max_iterations must be a positive integer, got {max_iterations}")
        if not tolerance > 0.0:
            raise ValueError(f"tolerance must be positive, got {tolerance}")
        if norm not in NORMS:
            raise ValueError(f"Unknown norm '{norm}'. Supported: {list(NORMS)}")
        for label, a in (('alpha', alpha), ('alpha_T', alpha_T), ('alpha_rho', alpha_rho)):
            if not 0.0 < a <= 1.0:
                raise ValueError(f"{label} must be in (0, 1], got {a}")
        if temperature_ic not in TEMPERATURE_IC:
            raise ValueError(f"temperature_ic must be one of {list(TEMPERATURE_IC)}")

        if isinstance(couplings, ThermalCoupling) or not isinstance(couplings, (list, tuple)):
            couplings = [couplings]
        if not couplings:
            raise ValueError("At least one T/H solver is required")
        self.couplings = [_as_coupling(c, i) for i, c in enumerate(couplings)]
        if len({c.name for c in self.couplings}) != len(self.couplings):
            raise ValueError("T/H coupling names must be unique")
        if sum(c.power_fraction for c in self.couplings) > 1.0 + 1e-12:
            raise ValueError("Power fractions of the T/H solvers add up to more than 1")

        self.neutronics = neutronics
        self.total_power = float(total_power)
        self.max_iterations = int(max_iterations)
        self.tolerance = tolerance
        self.norm = norm
        self.alpha = alpha
        self.alpha_T = alpha_T
        self.alpha_rho = alpha_rho
        self.temperature_ic = temperature_ic
        self.convergence_check = convergence_check
        self.index = index if index is not None else index_from_driver(neutronics)

        self.state = CouplingState.INIT
        self.cells: List[Any] = []
        self.cell_temperatures: Optional[np.ndarray] = None
        self.cell_densities: Optional[np.ndarray] = None
        self.results: List[StepResult] = []
        self._ready = False
        self._primed = False
        self._timestep = 0

    @property
    def solvers(self) -> List[Any]:
        """Neutronics first, then the T/H solvers in coupling order."""
        return [self.neutronics] + [c.solver for c in self.couplings]

    # ------------------------------------------------------------------
    # Mapping

    def setup(self) -> None:
        """Map every T/H mesh onto neutronics cells and create tallies."""
        cells: List[Any] = []
        slot: Dict[Any, int] = {}
        for c in self.couplings:
            c.mapper = MeshMapper(self.index, name=c.name)
            mapping, _ = c.mapper.build(c.solver.centroids(), c.solver.volumes())
            lookup = []
            for handle in mapping.cells:
                if handle not in slot:
                    slot[handle] = len(cells)
                    cells.append(handle)
                lookup.append(slot[handle])
            c.cell_lookup = np.asarray(lookup, dtype=np.int64)
            c.power_field = None

        if not cells:
            raise ValueError("No T/H element could be located in the neutronics geometry")

        self.cells = cells
        self.neutronics.create_tallies(cells)
        self.cell_temperatures = np.array(
            [self.neutronics.get_temperature(h) for h in cells], dtype=np.float64)
        self.cell_densities = np.array(
            [self.neutronics.get_density(h) for h in cells], dtype=np.float64)
        self._log_volume_coverage()
        logger.info(
            f"Coupling {len(cells)} of {self.neutronics.n_cells()} neutronics cells "
            f"to {len(self.couplings)} T/H solver(s)")
        self._ready = True

    def remap(self) -> None:
        """Rebuild all maps from scratch, e.g. after the T/H mesh moved."""
        if self.state is CouplingState.EXCHANGE:
            raise RuntimeError("Cannot remap while an exchange is in progress")
        self.index.clear()
        self._ready = False
        self._primed = False
        self.setup()

    def _log_volume_coverage(self) -> None:
        mapped = np.zeros(len(self.cells))
        for c in self.couplings:
            np.add.at(mapped, c.cell_lookup, c.fractions.cell_volumes)
        geometric = np.array([self.neutronics.get_volume(h) for h in self.cells], dtype=np.float64)
        ok = geometric > 0.0
        if np.any(ok):
            ratio = mapped[ok] / geometric[ok]
            logger.debug(
                f"Mapped/geometric cell volume ratio: min {ratio.min():.4f}, max {ratio.max():.4f}")

    # ------------------------------------------------------------------
    # Time stepping

    def run(self, n_timesteps: int) -> List[StepResult]:
        """Run ``n_timesteps`` coupled steps and return their results."""
        return [self.step() for _ in range(n_timesteps)]

    def step(self, timestep: Optional[int] = None) -> StepResult:
        """Run one coupled time step.

        Returns:
            The step result. Non-convergence is reported through
            ``result.state``; exceptions raised by a solver propagate
            unchanged after every solver has been finalized. A failing
            ``finalize_step`` is logged and only raised if the step itself
            succeeded.
        """
        if not self._ready:
            self.setup()
        timestep = self._timestep if timestep is None else timestep
        result = StepResult(
            timestep=timestep,
            state=CouplingState.INIT,
            unmapped={c.name: c.mapping.n_unmapped for c in self.couplings},
        )
        self.state = CouplingState.INIT
        logger.info(f"=== Time step {timestep} ===")

        failed = True
        try:
            for solver in self.solvers:
                solver.init_step()
            if not self._primed:
                self._prime()

            previous = {'temperature': self.cell_temperatures.copy(), 'power': None}
            for n in range(1, self.max_iterations + 1):
                self.state = CouplingState.EXCHANGE
                current = self._exchange()
                result.iterations = n

                check = check_field_convergence(current, previous, self.tolerance, self.norm)
                if self.convergence_check is not None:
                    converged = bool(self.convergence_check(previous, current))
                else:
                    converged = check['converged']
                result.history.append(self._record(n, current, check))
                self._write_step(timestep, n)
                logger.info(
                    f"Picard iteration {n}: dT = {check['field_errors']['temperature']:.3e}, "
                    f"dq = {check['field_errors']['power']:.3e}")

                if converged:
                    self.state = CouplingState.CONVERGED
                    break
                previous = current
            else:
                self.state = CouplingState.MAX_ITER_EXCEEDED
                logger.warning(
                    f"Time step {timestep} did not converge in {self.max_iterations} iterations")
            result.state = self.state
            failed = False
        finally:
            if self.state is CouplingState.EXCHANGE:
                self.state = CouplingState.INIT
            self._finalize_all(propagate=not failed)

        self._timestep = timestep + 1
        self.results.append(result)
        return result

    def _prime(self) -> None:
        if self.temperature_ic == 'heat':
            self._push_state(*self._up_map())
        self.neutronics.solve_step()
        self._primed = True

    def _exchange(self) -> Dict[str, np.ndarray]:
        tally = np.asarray(self.neutronics.heat_source(self.total_power), dtype=np.float64).ravel()
        if len(tally) != len(self.cells):
            raise ValueError(
                f"heat_source returned {len(tally)} values for {len(self.cells)} cells")

        for c in self.couplings:
            q = to_power_field(tally[c.cell_lookup], self.total_power * c.power_fraction,
                               c.mapping, c.fractions)
            c.power_field = relax(q, c.power_field, self.alpha)
            c.solver.set_heat_source(c.power_field)
            c.solver.solve_step()

        T, rho, has_T, has_rho = self._up_map()
        T = relax(T, self.cell_temperatures, self.alpha_T)
        rho = relax(rho, self.cell_densities, self.alpha_rho)
        self._push_state(T, rho, has_T, has_rho)

        self.neutronics.solve_step()
        return {
            'temperature': self.cell_temperatures.copy(),
            'power': np.concatenate([c.power_field for c in self.couplings]),
        }

    def _up_map(self):
        n = len(self.cells)
        temperature = CellAccumulator(n)
        density = CellAccumulator(n)
        for c in self.couplings:
            weights = c.fractions.weights
            temperature.add(c.solver.temperature(), weights, c.cell_lookup)
            density.add(c.solver.density(), weights, c.cell_lookup, mask=c.solver.fluid_mask())
        return (temperature.average(self.cell_temperatures),
                density.average(self.cell_densities),
                temperature.covered,
                density.covered)

    def _push_state(self, T, rho, has_T=None, has_rho=None) -> None:
        has_T = np.ones(len(self.cells), dtype=bool) if has_T is None else has_T
        has_rho = np.ones(len(self.cells), dtype=bool) if has_rho is None else has_rho
        for i, handle in enumerate(self.cells):
            if has_T[i]:
                self.neutronics.set_temperature(handle, float(T[i]))
            if has_rho[i]:
                self.neutronics.set_density(handle, float(rho[i]))
        self.cell_temperatures = np.where(has_T, T, self.cell_temperatures)
        self.cell_densities = np.where(has_rho, rho, self.cell_densities)

    def _record(self, n: int, current: Dict[str, np.ndarray], check: Dict) -> Dict[str, float]:
        T, q = current['temperature'], current['power']
        return {
            'iteration': n,
            'temperature_change': check['field_errors']['temperature'],
            'power_change': check['field_errors']['power'],
            'mean_temperature': float(T.mean()),
            'max_temperature': float(T.max()),
            'max_power_density': float(q.max(initial=0.0)),
        }

    def _write_step(self, timestep: int, iteration: int) -> None:
        for solver in self.solvers:
            write = getattr(solver, 'write_step', None)
            if write is not None:
                write(timestep, iteration)

    def _finalize_all(self, propagate: bool = True) -> None:
        """Finalize every solver; the first failure is raised only if ``propagate``."""
        error = None
        for solver in self.solvers:
            try:
                solver.finalize_step()
            except Exception as e:
                logger.error(f"finalize_step failed on {type(solver).__name__}: {e}")
                if error is None:
                    error = e
        if error is not None and propagate:
            raise error
