# neutronics_coupling/config.py

"""
Configuration profiles for coupled runs and surrogate T/H geometries.
"""
import copy
import json
from pathlib import Path
from typing import Any, Dict, Union

from .convergence import NORMS
from .coupling import TEMPERATURE_IC

DEFAULT_COUPLING = {
    'total_power': 1.0e6,      # W
    'timesteps': 1,
    'max_picard_iter': 5,
    'tolerance': 1.0e-3,
    'norm': 'linf',
    'alpha': 1.0,              # power under-relaxation
    'alpha_T': 1.0,            # temperature under-relaxation
    'alpha_rho': 1.0,          # density under-relaxation
    'temperature_ic': 'neutronics',
}

# One 17x17 PWR-like rod, 10 axial segments over 3.6 m
SINGLE_ROD = {
    'clad_inner_radius': 0.418,
    'clad_outer_radius': 0.475,
    'pellet_radius': 0.406,
    'n_fuel_rings': 10,
    'n_clad_rings': 3,
    'n_pins_x': 1,
    'n_pins_y': 1,
    'pin_pitch': 1.26,
    'z': [i * 36.0 for i in range(11)],
    'mass_flowrate': 0.3,
    'inlet_temperature': 523.15,
}

# 3x3 bundle, short active height for quick runs
SHORT_BUNDLE = {
    'clad_inner_radius': 0.418,
    'clad_outer_radius': 0.475,
    'pellet_radius': 0.406,
    'n_fuel_rings': 4,
    'n_clad_rings': 2,
    'n_pins_x': 3,
    'n_pins_y': 3,
    'pin_pitch': 1.26,
    'z': [0.0, 10.0, 20.0, 30.0, 40.0, 50.0],
    'mass_flowrate': 2.7,
    'inlet_temperature': 523.15,
}

HEAT_PROFILES = {
    'single_rod': SINGLE_ROD,
    'short_bundle': SHORT_BUNDLE,
}


def validate_coupling(cfg: Dict[str, Any]) -> None:
    """Raise ValueError if a coupling configuration is not usable."""
    unknown = set(cfg) - set(DEFAULT_COUPLING)
    if unknown:
        raise ValueError(f"Unknown coupling options: {sorted(unknown)}")
    if not cfg['total_power'] >= 0.0:
        raise ValueError(f"total_power must be non-negative, got {cfg['total_power']}")
    for key in ('timesteps', 'max_picard_iter'):
        if int(cfg[key]) != cfg[key] or cfg[key] < 1:
            raise ValueError(f"{key} must be a positive integer, got {cfg[key]}")
    if not cfg['tolerance'] > 0.0:
        raise ValueError(f"tolerance must be positive, got {cfg['tolerance']}")
    if cfg['norm'] not in NORMS:
        raise ValueError(f"norm must be one of {list(NORMS)}, got '{cfg['norm']}'")
    for key in ('alpha', 'alpha_T', 'alpha_rho'):
        if not 0.0 < cfg[key] <= 1.0:
            raise ValueError(f"{key} must be in (0, 1], got {cfg[key]}")
    if cfg['temperature_ic'] not in TEMPERATURE_IC:
        raise ValueError(f"temperature_ic must be one of {list(TEMPERATURE_IC)}")


def load_config(path: Union[str, Path, None] = None) -> Dict[str, Any]:
    """Coupling configuration from a JSON file merged over ``DEFAULT_COUPLING``.

    Args:
        path: JSON file with a flat object of coupling options. With None the
            defaults are returned.

    Returns:
        A validated configuration dictionary.
    """
    cfg = copy.deepcopy(DEFAULT_COUPLING)
    if path is not None:
        with open(path) as f:
            user = json.load(f)
        if not isinstance(user, dict):
            raise ValueError(f"{path}: expected a JSON object")
        cfg.update(user)
    validate_coupling(cfg)
    return cfg


def get_heat_profile(name: str) -> Dict[str, Any]:
    """Copy of a named surrogate geometry profile."""
    if name not in HEAT_PROFILES:
        raise ValueError(f"Unknown heat profile '{name}'. Available: {list(HEAT_PROFILES)}")
    return copy.deepcopy(HEAT_PROFILES[name])
