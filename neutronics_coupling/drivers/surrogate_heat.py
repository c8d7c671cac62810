"""
Surrogate thermal-hydraulics solver for a square bundle of fuel pins.

The mesh has, for every pin and axial segment, ``n_fuel_rings`` fuel rings
and ``n_clad_rings`` clad rings (solid elements), followed by one element per
coolant channel and axial segment (fluid elements). Channels are
coolant-centred: ``(n_pins_x + 1) * (n_pins_y + 1)`` of them sit on the
pin-cell corners, so corner and edge channels carry a quarter and a half of
an interior channel's flow area. Element ordering is pin-major:

    solid:   index = (pin * n_axial + axial) * n_rings + ring
    coolant: index = n_solid + channel * n_axial + axial
    channel: row * (n_pins_x + 1) + col

The solve is an analytic stand-in for a real conduction/convection code:
axial coolant enthalpy rise, a film drop at the clad surface, a logarithmic
clad profile, a gap conductance and a parabolic fuel profile with constant
conductivities. Lengths are in cm, power in W, temperatures in K.
"""
from typing import Any, Dict, Sequence

import logging
import math

import numpy as np

logger = logging.getLogger(__name__)


class SurrogateHeatDriver:
    """Pin-bundle T/H surrogate.

    Args:
        clad_inner_radius: Clad inner radius [cm].
        clad_outer_radius: Clad outer radius [cm].
        pellet_radius: Fuel pellet radius [cm].
        n_fuel_rings: Number of equal-width radial rings in the fuel.
        n_clad_rings: Number of equal-width radial rings in the clad.
        n_pins_x: Pins along x.
        n_pins_y: Pins along y.
        pin_pitch: Pin pitch [cm].
        z: Axial segment edges [cm], increasing.
        mass_flowrate: Total coolant mass flow rate [kg/s].
        inlet_temperature: Coolant inlet temperature [K].
        fuel_conductivity: Fuel thermal conductivity [W/cm-K].
        clad_conductivity: Clad thermal conductivity [W/cm-K].
        gap_conductance: Pellet-clad gap conductance [W/cm^2-K].
        heat_transfer_coeff: Clad-to-coolant film coefficient [W/cm^2-K].
        coolant_cp: Coolant specific heat [J/kg-K].
        coolant_density: Coolant density at ``density_reference_temperature`` [g/cm^3].
        density_reference_temperature: Reference temperature of the density fit [K].
        density_slope: d(rho)/dT of the coolant [g/cm^3-K].
    """

    def __init__(self,
                 clad_inner_radius: float,
                 clad_outer_radius: float,
                 pellet_radius: float,
                 n_fuel_rings: int,
                 n_clad_rings: int,
                 n_pins_x: int,
                 n_pins_y: int,
                 pin_pitch: float,
                 z: Sequence[float],
                 mass_flowrate: float,
                 inlet_temperature: float = 523.15,
                 fuel_conductivity: float = 0.03,
                 clad_conductivity: float = 0.17,
                 gap_conductance: float = 0.6,
                 heat_transfer_coeff: float = 3.4,
                 coolant_cp: float = 5.5e3,
                 coolant_density: float = 0.74,
                 density_reference_temperature: float = 565.0,
                 density_slope: float = -2.5e-3):
        if clad_inner_radius <= 0:
            raise ValueError("clad_inner_radius must be positive")
        if clad_outer_radius <= clad_inner_radius:
            raise ValueError("clad_outer_radius must exceed clad_inner_radius")
        if pellet_radius >= clad_inner_radius:
            raise ValueError("pellet_radius must be smaller than clad_inner_radius")
        if n_fuel_rings <= 0 or n_clad_rings <= 0:
            raise ValueError("Ring counts must be positive")
        if n_pins_x <= 0 or n_pins_y <= 0:
            raise ValueError("Pin counts must be positive")
        if pin_pitch <= 2.0 * clad_outer_radius:
            raise ValueError("pin_pitch must exceed the clad outer diameter")
        if mass_flowrate <= 0.0:
            raise ValueError("mass_flowrate must be positive")

        z = np.asarray(z, dtype=np.float64)
        if z.ndim != 1 or len(z) < 2 or np.any(np.diff(z) <= 0.0):
            raise ValueError("z must hold at least two increasing axial edges")

        self.clad_inner_radius = clad_inner_radius
        self.clad_outer_radius = clad_outer_radius
        self.pellet_radius = pellet_radius
        self.n_fuel_rings = int(n_fuel_rings)
        self.n_clad_rings = int(n_clad_rings)
        self.n_pins_x = int(n_pins_x)
        self.n_pins_y = int(n_pins_y)
        self.n_pins = self.n_pins_x * self.n_pins_y
        self.pin_pitch = pin_pitch
        self.z = z
        self.n_axial = len(z) - 1
        self.mass_flowrate = mass_flowrate
        self.inlet_temperature = inlet_temperature
        self.fuel_conductivity = fuel_conductivity
        self.clad_conductivity = clad_conductivity
        self.gap_conductance = gap_conductance
        self.heat_transfer_coeff = heat_transfer_coeff
        self.coolant_cp = coolant_cp
        self.coolant_density_ref = coolant_density
        self.density_reference_temperature = density_reference_temperature
        self.density_slope = density_slope

        self.r_grid_fuel = np.linspace(0.0, pellet_radius, self.n_fuel_rings + 1)
        self.r_grid_clad = np.linspace(clad_inner_radius, clad_outer_radius, self.n_clad_rings + 1)
        self.pin_centers = self._pin_centers()
        self.n_channels = (self.n_pins_x + 1) * (self.n_pins_y + 1)
        self.channel_areas = self._channel_areas()
        self.channel_flowrates = self.channel_areas / self.channel_areas.sum() * mass_flowrate
        self.channel_centers = self._channel_centers()
        self.pin_channels = self._pin_channels()

        self.n_solid = self.n_pins * self.n_axial * self.n_rings
        self.n_fluid = self.n_channels * self.n_axial
        self.n_elements = self.n_solid + self.n_fluid

        self._centroids = self._build_centroids()
        self._volumes = self._build_volumes()
        self._source = np.zeros(self.n_elements)
        self._temperature = np.full(self.n_elements, float(inlet_temperature))
        self._density = np.zeros(self.n_elements)
        self._density[self.n_solid:] = self.coolant_density(self._temperature[self.n_solid:])
        self.n_solves = 0
        self.n_steps = 0

    @classmethod
    def from_config(cls, params: Dict[str, Any]) -> "SurrogateHeatDriver":
        """Create a driver from a profile dictionary (see ``config.py``)."""
        return cls(**params)

    def __repr__(self) -> str:
        return (f"SurrogateHeatDriver({self.n_pins_x}x{self.n_pins_y} pins, "
                f"{self.n_axial} axial, {self.n_rings} rings)")

    @property
    def n_rings(self) -> int:
        return self.n_fuel_rings + self.n_clad_rings

    # ------------------------------------------------------------------
    # Geometry

    def _pin_centers(self) -> np.ndarray:
        # Bundle centred on x = y = 0, row 0 at the top
        width_x = self.n_pins_x * self.pin_pitch
        width_y = self.n_pins_y * self.pin_pitch
        centers = np.empty((self.n_pins, 2))
        for row in range(self.n_pins_y):
            for col in range(self.n_pins_x):
                pin = row * self.n_pins_x + col
                centers[pin, 0] = -width_x / 2.0 + self.pin_pitch / 2.0 + col * self.pin_pitch
                centers[pin, 1] = width_y / 2.0 - (self.pin_pitch / 2.0 + row * self.pin_pitch)
        return centers

    def channel_index(self, row: int, col: int) -> int:
        return row * (self.n_pins_x + 1) + col

    def _channel_areas(self) -> np.ndarray:
        interior = self.pin_pitch ** 2 - math.pi * self.clad_outer_radius ** 2
        areas = np.empty(self.n_channels)
        for row in range(self.n_pins_y + 1):
            for col in range(self.n_pins_x + 1):
                row_edge = row in (0, self.n_pins_y)
                col_edge = col in (0, self.n_pins_x)
                if row_edge and col_edge:
                    area = interior / 4.0
                elif row_edge or col_edge:
                    area = interior / 2.0
                else:
                    area = interior
                areas[self.channel_index(row, col)] = area
        return areas

    def _channel_centers(self) -> np.ndarray:
        # Pin-cell corners, with boundary channels moved p/8 into the bundle
        width_x = self.n_pins_x * self.pin_pitch
        width_y = self.n_pins_y * self.pin_pitch
        inset = self.pin_pitch / 8.0
        centers = np.empty((self.n_channels, 2))
        for row in range(self.n_pins_y + 1):
            for col in range(self.n_pins_x + 1):
                x = -width_x / 2.0 + col * self.pin_pitch
                y = width_y / 2.0 - row * self.pin_pitch
                centers[self.channel_index(row, col), 0] = np.clip(
                    x, -width_x / 2.0 + inset, width_x / 2.0 - inset)
                centers[self.channel_index(row, col), 1] = np.clip(
                    y, -width_y / 2.0 + inset, width_y / 2.0 - inset)
        return centers

    def _pin_channels(self) -> np.ndarray:
        """Indices of the four channels on the corners of each pin cell."""
        table = np.empty((self.n_pins, 4), dtype=int)
        for row in range(self.n_pins_y):
            for col in range(self.n_pins_x):
                table[row * self.n_pins_x + col] = [
                    self.channel_index(row, col), self.channel_index(row, col + 1),
                    self.channel_index(row + 1, col), self.channel_index(row + 1, col + 1),
                ]
        return table

    def _ring_edges(self):
        inner = np.concatenate([self.r_grid_fuel[:-1], self.r_grid_clad[:-1]])
        outer = np.concatenate([self.r_grid_fuel[1:], self.r_grid_clad[1:]])
        return inner, outer

    def _build_centroids(self) -> np.ndarray:
        inner, outer = self._ring_edges()
        r_mid = 0.5 * (inner + outer)
        z_mid = 0.5 * (self.z[:-1] + self.z[1:])

        solid = np.empty((self.n_pins, self.n_axial, self.n_rings, 3))
        solid[..., 0] = self.pin_centers[:, 0, None, None] + r_mid[None, None, :]
        solid[..., 1] = self.pin_centers[:, 1, None, None]
        solid[..., 2] = z_mid[None, :, None]

        fluid = np.empty((self.n_channels, self.n_axial, 3))
        fluid[..., 0] = self.channel_centers[:, 0, None]
        fluid[..., 1] = self.channel_centers[:, 1, None]
        fluid[..., 2] = z_mid[None, :]

        return np.vstack([solid.reshape(-1, 3), fluid.reshape(-1, 3)])

    def _build_volumes(self) -> np.ndarray:
        inner, outer = self._ring_edges()
        dz = np.diff(self.z)
        ring_area = math.pi * (outer ** 2 - inner ** 2)
        solid = np.broadcast_to(dz[None, :, None] * ring_area[None, None, :],
                                (self.n_pins, self.n_axial, self.n_rings))
        fluid = self.channel_areas[:, None] * dz[None, :]
        return np.concatenate([solid.ravel(), fluid.ravel()])

    # ------------------------------------------------------------------
    # Coupling interface

    def centroids(self) -> np.ndarray:
        return self._centroids.copy()

    def volumes(self) -> np.ndarray:
        return self._volumes.copy()

    def temperature(self) -> np.ndarray:
        return self._temperature.copy()

    def density(self) -> np.ndarray:
        return self._density.copy()

    def fluid_mask(self) -> np.ndarray:
        mask = np.zeros(self.n_elements, dtype=bool)
        mask[self.n_solid:] = True
        return mask

    def set_heat_source(self, q) -> None:
        q = np.asarray(q, dtype=np.float64).ravel()
        if len(q) != self.n_elements:
            raise ValueError(f"Heat source has {len(q)} values, expected {self.n_elements}")
        self._source = q.copy()

    def init_step(self) -> None:
        pass

    def finalize_step(self) -> None:
        self.n_steps += 1

    def coolant_density(self, T) -> np.ndarray:
        """Linear coolant density fit [g/cm^3], floored at 1% of the reference."""
        rho = self.coolant_density_ref + self.density_slope * (
            np.asarray(T, dtype=np.float64) - self.density_reference_temperature)
        return np.maximum(rho, 0.01 * self.coolant_density_ref)

    def channel_power(self) -> np.ndarray:
        """Power taken up by each channel per axial segment [W].

        Each pin hands a quarter of its solid power to every channel on its
        pin-cell corners; power deposited in the coolant stays in its channel.
        """
        deposited = self._source * self._volumes
        solid = deposited[:self.n_solid].reshape(
            self.n_pins, self.n_axial, self.n_rings).sum(axis=2)
        power = deposited[self.n_solid:].reshape(self.n_channels, self.n_axial).copy()
        for k in range(4):
            np.add.at(power, self.pin_channels[:, k], 0.25 * solid)
        return power

    def solve_step(self) -> None:
        """Solve for temperature and coolant density given the heat source."""
        logger.info("Solving surrogate heat equation...")
        deposited = self._source * self._volumes
        solid_power = deposited[:self.n_solid].reshape(
            self.n_pins, self.n_axial, self.n_rings).sum(axis=2)
        total = self.channel_power()
        dz = np.diff(self.z)[None, :]

        # Coolant: enthalpy rise per channel, flow split by flow area
        flow = self.channel_flowrates[:, None]
        cumulative = np.cumsum(total, axis=1)
        T_cool = self.inlet_temperature + (cumulative - 0.5 * total) / (flow * self.coolant_cp)
        T_sink = T_cool[self.pin_channels].mean(axis=1)

        # Clad outer surface, clad log profile, gap, then fuel parabola
        T_clad_out = T_sink + solid_power / (2.0 * math.pi * self.clad_outer_radius * dz
                                             * self.heat_transfer_coeff)
        line_term = solid_power / (2.0 * math.pi * self.clad_conductivity * dz)
        T_clad_in = T_clad_out + line_term * math.log(self.clad_outer_radius / self.clad_inner_radius)
        T_fuel_surface = T_clad_in + solid_power / (2.0 * math.pi * self.pellet_radius * dz
                                                    * self.gap_conductance)
        q_fuel = solid_power / (math.pi * self.pellet_radius ** 2 * dz)

        T = np.empty((self.n_pins, self.n_axial, self.n_rings))
        r_in, r_out = self.r_grid_fuel[:-1], self.r_grid_fuel[1:]
        # Volume average of (R^2 - r^2) over each fuel ring
        shape = self.pellet_radius ** 2 - 0.5 * (r_in ** 2 + r_out ** 2)
        T[..., :self.n_fuel_rings] = (T_fuel_surface[..., None]
                                      + q_fuel[..., None] * shape / (4.0 * self.fuel_conductivity))
        r_mid = 0.5 * (self.r_grid_clad[:-1] + self.r_grid_clad[1:])
        T[..., self.n_fuel_rings:] = (T_clad_out[..., None]
                                      + line_term[..., None] * np.log(self.clad_outer_radius / r_mid))

        self._temperature = np.concatenate([T.ravel(), T_cool.ravel()])
        self._density = np.zeros(self.n_elements)
        self._density[self.n_solid:] = self.coolant_density(T_cool.ravel())
        self.n_solves += 1
        logger.debug(
            f"Surrogate solve {self.n_solves}: T_max = {self._temperature.max():.1f} K, "
            f"T_out = {T_cool[:, -1].mean():.1f} K")
