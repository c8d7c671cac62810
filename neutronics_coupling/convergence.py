"""Convergence checking utilities for Picard iteration."""

import numpy as np
from typing import Dict, Optional, Union
import logging

logger = logging.getLogger(__name__)

NORMS = ('l1', 'l2', 'linf')


def relative_change(
    current: np.ndarray,
    previous: Optional[np.ndarray],
    norm: str = 'linf',
    eps: float = 1e-300
) -> float:
    """
    Relative change between two consecutive iterates of a field.

    Parameters
    ----------
    current : np.ndarray
        Field values at the current iteration.
    previous : np.ndarray or None
        Field values at the previous iteration. ``None`` means there is no
        previous iterate and the change is infinite.
    norm : str, optional
        One of 'l1', 'l2' or 'linf', by default 'linf'
    eps : float, optional
        Floor for the denominator, by default 1e-300

    Returns
    -------
    float
        ``||current - previous|| / ||previous||`` in the requested norm.
    """
    if norm not in NORMS:
        raise ValueError(f"Unknown norm '{norm}'. Supported: {list(NORMS)}")
    if previous is None:
        return float('inf')

    current = np.asarray(current, dtype=np.float64)
    previous = np.asarray(previous, dtype=np.float64)
    if current.shape != previous.shape:
        raise ValueError(f"Shape mismatch: {current.shape} vs {previous.shape}")
    if current.size == 0:
        return 0.0

    diff = current - previous
    if norm == 'l1':
        num, den = np.abs(diff).sum(), np.abs(previous).sum()
    elif norm == 'l2':
        num, den = np.linalg.norm(diff), np.linalg.norm(previous)
    else:
        num, den = np.abs(diff).max(), np.abs(previous).max()

    if num == 0.0:
        return 0.0
    return float(num / max(den, eps))


def check_field_convergence(
    current_fields: Dict[str, np.ndarray],
    previous_fields: Dict[str, Optional[np.ndarray]],
    tolerance: float,
    norm: str = 'linf'
) -> Dict[str, Union[bool, float, Dict]]:
    """
    Check whether every coupled field changed by less than ``tolerance``.

    Parameters
    ----------
    current_fields : Dict[str, np.ndarray]
        Fields at the current iteration, e.g. {'temperature': ..., 'power': ...}
    previous_fields : Dict[str, np.ndarray or None]
        Fields at the previous iteration, same keys.
    tolerance : float
        Relative tolerance on the change of each field.
    norm : str, optional
        Norm used to measure changes, by default 'linf'

    Returns
    -------
    Dict[str, Union[bool, float, Dict]]
        Dictionary containing:
        - converged: Overall convergence status (bool)
        - worst_error: Largest relative change across fields (float)
        - field_errors: Relative change per field
        - field_convergence: Convergence status per field
        - reason: Human-readable summary
    """
    if not current_fields:
        return {
            'converged': False,
            'worst_error': float('inf'),
            'field_errors': {},
            'field_convergence': {},
            'reason': 'No fields provided'
        }

    field_errors = {}
    field_convergence = {}
    worst_error = 0.0

    for name, current in current_fields.items():
        if name not in previous_fields:
            logger.warning(f"No previous iterate for field '{name}', treating as not converged")
        error = relative_change(current, previous_fields.get(name), norm=norm)
        field_errors[name] = error
        field_convergence[name] = error <= tolerance
        worst_error = max(worst_error, error)

    converged = all(field_convergence.values())
    return {
        'converged': converged,
        'worst_error': worst_error,
        'field_errors': field_errors,
        'field_convergence': field_convergence,
        'reason': 'Converged' if converged else f'Worst change: {worst_error:.3e} > {tolerance:.3e}'
    }
