"""
Solver collaborators for the coupling loop.

The OpenMC driver is imported from ``drivers.openmc_driver`` directly so that
the rest of the package works without OpenMC installed.
"""
from .base import Solver, NeutronicsSolver, HeatFluidsSolver
from .surrogate_heat import SurrogateHeatDriver

__all__ = ["Solver", "NeutronicsSolver", "HeatFluidsSolver", "SurrogateHeatDriver"]
