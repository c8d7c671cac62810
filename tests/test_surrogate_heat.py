"""
Test cases for the pin-bundle surrogate T/H driver.
"""

import math

import numpy as np
import pytest

from neutronics_coupling.config import SHORT_BUNDLE, get_heat_profile
from neutronics_coupling.coupling import CouplingController
from neutronics_coupling.drivers.base import HeatFluidsSolver
from neutronics_coupling.drivers.surrogate_heat import SurrogateHeatDriver
from neutronics_coupling.transfer import integrate

from conftest import SlabNeutronics


@pytest.fixture
def bundle():
    """3x3 bundle, 5 axial segments, 4 fuel and 2 clad rings."""
    return SurrogateHeatDriver.from_config(get_heat_profile('short_bundle'))


class TestSurrogateGeometry:
    """Test cases for the surrogate mesh."""

    def test_is_heat_fluids_solver(self, bundle):
        assert isinstance(bundle, HeatFluidsSolver)

    def test_element_counts(self, bundle):
        assert bundle.n_pins == 9
        assert bundle.n_axial == 5
        assert bundle.n_rings == 6
        assert bundle.n_solid == 9 * 5 * 6
        assert bundle.n_channels == 16
        assert bundle.n_fluid == 16 * 5
        assert bundle.centroids().shape == (bundle.n_elements, 3)
        assert bundle.volumes().shape == (bundle.n_elements,)

    def test_pin_centers(self, bundle):
        p = SHORT_BUNDLE['pin_pitch']
        np.testing.assert_allclose(bundle.pin_centers[0], [-p, p])
        np.testing.assert_allclose(bundle.pin_centers[4], [0.0, 0.0], atol=1e-12)
        np.testing.assert_allclose(bundle.pin_centers[8], [p, -p])

    def test_total_volume(self, bundle):
        cfg = SHORT_BUNDLE
        height = cfg['z'][-1] - cfg['z'][0]
        per_pin = (cfg['pin_pitch'] ** 2
                   - math.pi * cfg['clad_inner_radius'] ** 2
                   + math.pi * cfg['pellet_radius'] ** 2)
        assert bundle.volumes().sum() == pytest.approx(9 * height * per_pin)

    def test_centroids_stay_in_pin_cell(self, bundle):
        c = bundle.centroids()
        half = 0.5 * SHORT_BUNDLE['pin_pitch']
        solid = c[:bundle.n_solid].reshape(bundle.n_pins, bundle.n_axial, bundle.n_rings, 3)
        for pin in range(bundle.n_pins):
            center = bundle.pin_centers[pin]
            assert np.all(np.abs(solid[pin, ..., :2] - center) < half)

    def test_channel_points_in_coolant(self, bundle):
        fluid = bundle.centroids()[bundle.n_solid:, :2]
        width = 3 * SHORT_BUNDLE['pin_pitch']
        assert np.all(np.abs(fluid) < 0.5 * width)
        gaps = np.hypot(fluid[:, None, 0] - bundle.pin_centers[None, :, 0],
                        fluid[:, None, 1] - bundle.pin_centers[None, :, 1])
        assert np.all(gaps > SHORT_BUNDLE['clad_outer_radius'])

    def test_channel_areas_and_flows(self, bundle):
        p = SHORT_BUNDLE['pin_pitch']
        interior = p ** 2 - math.pi * SHORT_BUNDLE['clad_outer_radius'] ** 2
        areas = bundle.channel_areas.reshape(4, 4)

        assert areas[0, 0] == pytest.approx(interior / 4)
        assert areas[3, 3] == pytest.approx(interior / 4)
        assert areas[0, 2] == pytest.approx(interior / 2)
        assert areas[1, 2] == pytest.approx(interior)
        assert bundle.channel_areas.sum() == pytest.approx(9 * interior)
        assert bundle.channel_flowrates.sum() == pytest.approx(SHORT_BUNDLE['mass_flowrate'])
        np.testing.assert_allclose(bundle.channel_flowrates / bundle.channel_areas,
                                   SHORT_BUNDLE['mass_flowrate'] / (9 * interior))

    def test_pin_channels(self, bundle):
        # centre pin (row 1, col 1) touches channels (1,1), (1,2), (2,1), (2,2)
        assert list(bundle.pin_channels[4]) == [5, 6, 9, 10]
        assert list(bundle.pin_channels[0]) == [0, 1, 4, 5]

    def test_element_ordering(self, bundle):
        c = bundle.centroids()
        z_mid = 0.5 * (bundle.z[:-1] + bundle.z[1:])
        # solid: (pin * n_axial + axial) * n_rings + ring
        index = (4 * bundle.n_axial + 2) * bundle.n_rings + 1
        assert c[index, 2] == pytest.approx(z_mid[2])
        assert c[index, 1] == pytest.approx(bundle.pin_centers[4, 1])
        # coolant: n_solid + channel * n_axial + axial, channel 5 at row 1, col 1
        p = SHORT_BUNDLE['pin_pitch']
        point = c[bundle.n_solid + 5 * bundle.n_axial + 3]
        np.testing.assert_allclose(point, [-0.5 * p, 0.5 * p, z_mid[3]])

    def test_fluid_mask(self, bundle):
        mask = bundle.fluid_mask()
        assert mask.sum() == bundle.n_fluid
        assert not mask[:bundle.n_solid].any()
        assert mask[bundle.n_solid:].all()

    @pytest.mark.parametrize("override", [
        {'pellet_radius': 0.5},
        {'clad_outer_radius': 0.4},
        {'pin_pitch': 0.9},
        {'n_fuel_rings': 0},
        {'n_pins_x': 0},
        {'mass_flowrate': 0.0},
        {'z': [0.0]},
        {'z': [0.0, 10.0, 5.0]},
    ])
    def test_invalid_input(self, override):
        params = get_heat_profile('short_bundle')
        params.update(override)
        with pytest.raises(ValueError):
            SurrogateHeatDriver(**params)


class TestSurrogateSolve:
    """Test cases for the analytic solve."""

    def test_initial_state(self, bundle):
        T = bundle.temperature()
        np.testing.assert_allclose(T, SHORT_BUNDLE['inlet_temperature'])
        rho = bundle.density()
        assert np.all(rho[:bundle.n_solid] == 0.0)
        assert np.all(rho[bundle.n_solid:] > 0.0)

    def test_zero_source(self, bundle):
        bundle.set_heat_source(np.zeros(bundle.n_elements))
        bundle.solve_step()
        np.testing.assert_allclose(bundle.temperature(), SHORT_BUNDLE['inlet_temperature'])
        assert bundle.n_solves == 1

    def test_heat_source_length(self, bundle):
        with pytest.raises(ValueError, match="expected"):
            bundle.set_heat_source(np.zeros(3))

    def test_radial_profile(self, bundle):
        q = np.zeros(bundle.n_elements)
        q[:bundle.n_solid] = 100.0
        bundle.set_heat_source(q)
        bundle.solve_step()

        T = bundle.temperature()
        solid = T[:bundle.n_solid].reshape(bundle.n_pins, bundle.n_axial, bundle.n_rings)
        coolant = T[bundle.n_solid:].reshape(bundle.n_channels, bundle.n_axial)
        sink = coolant[bundle.pin_channels].mean(axis=1)

        # hottest at the centerline, decreasing outwards, clad above coolant
        assert np.all(np.diff(solid, axis=2) < 0.0)
        assert np.all(solid[..., -1] > sink)
        # coolant heats up along the flow
        assert np.all(np.diff(coolant, axis=1) > 0.0)

    def test_energy_balance(self, bundle):
        q = np.full(bundle.n_elements, 50.0)
        bundle.set_heat_source(q)
        bundle.solve_step()

        power = bundle.channel_power()
        assert power.shape == (bundle.n_channels, bundle.n_axial)
        assert power.sum() == pytest.approx(integrate(q, bundle.volumes()))

        coolant = bundle.temperature()[bundle.n_solid:].reshape(bundle.n_channels, bundle.n_axial)
        flow = bundle.channel_flowrates
        # last segment temperature is taken at the segment midpoint
        rise = (power.sum(axis=1) - 0.5 * power[:, -1]) / (flow * bundle.coolant_cp)
        np.testing.assert_allclose(coolant[:, -1] - SHORT_BUNDLE['inlet_temperature'], rise)

    def test_coolant_density_decreases(self, bundle):
        rho = bundle.coolant_density([550.0, 600.0])
        assert rho[1] < rho[0]
        assert bundle.coolant_density(1e6) == pytest.approx(0.01 * bundle.coolant_density_ref)

    def test_step_bookkeeping(self, bundle):
        bundle.init_step()
        bundle.finalize_step()
        assert bundle.n_steps == 1


class TestSurrogateCoupled:
    """Surrogate driven by the controller against axial slab cells."""

    def test_coupled_step(self, bundle):
        neutronics = SlabNeutronics(bundle.z, axis=2)
        controller = CouplingController(neutronics, bundle, total_power=5.0e4, tolerance=1e-8)
        result = controller.step()

        assert result.converged
        assert result.unmapped == {'heat0': 0}
        assert controller.cells == [1, 2, 3, 4, 5]
        assert bundle.channel_power().sum() == pytest.approx(5.0e4)
        inlet = SHORT_BUNDLE['inlet_temperature']
        assert all(T > inlet for T in neutronics.temperatures.values())
        assert bundle.n_steps == 1
