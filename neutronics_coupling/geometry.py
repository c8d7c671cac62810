"""
Point-location queries against the neutronics geometry.

The neutronics collaborator owns the geometry and answers "which cell
contains this point". This module wraps that query so that the mapping
code sees one consistent, deterministic contract: a cell handle for a
hit, ``None`` for a miss. A miss is never replaced by a default cell.
"""
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence, Tuple

import numpy as np
import logging

logger = logging.getLogger(__name__)

Position = Tuple[float, float, float]
CellHandle = Hashable


def as_positions(positions) -> np.ndarray:
    """Convert positions to a float64 array of shape (n, 3).

    Args:
        positions: A single (x, y, z) point or a sequence of points.

    Returns:
        Array of shape (n, 3).

    Raises:
        ValueError: If the input cannot be read as 3-D points or contains
            non-finite coordinates.
    """
    arr = np.asarray(positions, dtype=np.float64)
    if arr.ndim == 1:
        arr = arr.reshape(1, -1)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Expected points with 3 coordinates, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise ValueError("Positions must have finite coordinates")
    return arr


class GeometryIndex:
    """Deterministic point-in-cell lookup over a neutronics geometry.

    Args:
        find: Batch query of the neutronics collaborator. Called with an
            (n, 3) array, returns one cell handle per point or ``None`` where
            no cell contains the point.
        lower_left: Optional lower corner of the modeled domain. Points
            outside the box are reported as not found without querying.
        upper_right: Optional upper corner of the modeled domain.
        cache: Memoize results per exact position.
    """

    def __init__(self,
                 find: Callable[[np.ndarray], Sequence[Optional[CellHandle]]],
                 lower_left: Optional[Sequence[float]] = None,
                 upper_right: Optional[Sequence[float]] = None,
                 cache: bool = True):
        if (lower_left is None) != (upper_right is None):
            raise ValueError("lower_left and upper_right must be given together")
        self._find = find
        self.lower_left = None if lower_left is None else np.asarray(lower_left, dtype=np.float64)
        self.upper_right = None if upper_right is None else np.asarray(upper_right, dtype=np.float64)
        if self.lower_left is not None and np.any(self.upper_right < self.lower_left):
            raise ValueError("upper_right must not be below lower_left")
        self.cache = cache
        self._memo: Dict[Position, Optional[CellHandle]] = {}
        self.n_queries = 0

    def __repr__(self) -> str:
        return f"GeometryIndex(bounds={self.bounds}, cached={len(self._memo)})"

    @property
    def bounds(self) -> Optional[Tuple[np.ndarray, np.ndarray]]:
        if self.lower_left is None:
            return None
        return self.lower_left, self.upper_right

    def in_domain(self, points: np.ndarray) -> np.ndarray:
        """Boolean mask of points inside the bounding box (all True if unbounded)."""
        if self.lower_left is None:
            return np.ones(len(points), dtype=bool)
        return np.all((points >= self.lower_left) & (points <= self.upper_right), axis=1)

    def locate(self, position) -> Optional[CellHandle]:
        """Return the cell containing ``position``, or ``None`` if not found."""
        return self.locate_many(as_positions(position))[0]

    def locate_many(self, positions) -> List[Optional[CellHandle]]:
        """Locate several points at once.

        Points already seen are answered from the memo, the rest are sent to
        the collaborator in one batch, in their original order.
        """
        points = as_positions(positions)
        results: List[Optional[CellHandle]] = [None] * len(points)
        inside = self.in_domain(points)

        pending = []
        for i, point in enumerate(points):
            if not inside[i]:
                continue
            key = tuple(point.tolist())
            if self.cache and key in self._memo:
                results[i] = self._memo[key]
            else:
                pending.append(i)

        if pending:
            found = list(self._find(points[pending]))
            self.n_queries += len(pending)
            if len(found) != len(pending):
                raise ValueError(
                    f"find() returned {len(found)} results for {len(pending)} positions")
            for i, handle in zip(pending, found):
                results[i] = handle
                if self.cache:
                    self._memo[tuple(points[i].tolist())] = handle

        n_outside = int(np.count_nonzero(~inside))
        if n_outside:
            logger.debug(f"{n_outside} positions lie outside the domain bounding box")
        return results

    def clear(self) -> None:
        """Forget memoized lookups; required after the geometry changes."""
        self._memo.clear()


def index_from_driver(driver: Any, **kwargs) -> GeometryIndex:
    """Build a GeometryIndex over a neutronics collaborator's ``find``."""
    bounds = getattr(driver, 'bounding_box', None)
    if bounds is not None and 'lower_left' not in kwargs:
        kwargs['lower_left'], kwargs['upper_right'] = bounds
    return GeometryIndex(driver.find, **kwargs)
