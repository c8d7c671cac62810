"""
Neutronics Coupling: Picard coupling of Monte Carlo neutronics to thermal-hydraulics.

This package maps thermal-hydraulic mesh elements onto neutronics cells,
transfers power down and temperature/density up through a shared volume
weight matrix, and drives the fixed-point iteration between the solvers.

Main API is exposed from the following submodules:
- geometry, mapping: point location and the cell/element map
- transfer: conservative power and state transfer
- coupling, convergence: the Picard controller and its convergence checks
- drivers: solver capability sets and the surrogate heat solver
- config, io: configuration profiles and HDF5 persistence
"""

__version__ = "0.1.0"

# --- Mapping API ---
from .geometry import GeometryIndex, index_from_driver
from .mapping import CellElementMap, VolumeFractions, MeshMapper, check_fractions

# --- Transfer API ---
from .transfer import to_power_field, to_cell_state, relax, integrate, CellAccumulator

# --- Coupling API ---
from .convergence import relative_change, check_field_convergence
from .coupling import CouplingController, CouplingState, ThermalCoupling, StepResult

# --- Drivers ---
from .drivers.base import Solver, NeutronicsSolver, HeatFluidsSolver
from .drivers.surrogate_heat import SurrogateHeatDriver

# --- Configuration and I/O ---
from .config import DEFAULT_COUPLING, SINGLE_ROD, SHORT_BUNDLE, load_config
from .io import save_mapping, load_mapping, save_history, load_history

__all__ = [
    # Mapping
    "GeometryIndex", "index_from_driver",
    "CellElementMap", "VolumeFractions", "MeshMapper", "check_fractions",

    # Transfer
    "to_power_field", "to_cell_state", "relax", "integrate", "CellAccumulator",

    # Coupling
    "relative_change", "check_field_convergence",
    "CouplingController", "CouplingState", "ThermalCoupling", "StepResult",

    # Drivers
    "Solver", "NeutronicsSolver", "HeatFluidsSolver", "SurrogateHeatDriver",

    # Configuration and I/O
    "DEFAULT_COUPLING", "SINGLE_ROD", "SHORT_BUNDLE", "load_config",
    "save_mapping", "load_mapping", "save_history", "load_history",
]
