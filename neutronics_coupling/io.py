"""
HDF5 persistence for cell/element maps and coupling histories.
"""
import json
import logging
from pathlib import Path
from typing import Hashable, List, Optional, Sequence, Tuple, Union

import h5py
import numpy as np
import pandas as pd
from scipy import sparse

from .mapping import CellElementMap, VolumeFractions

logger = logging.getLogger(__name__)

HISTORY_COLUMNS = (
    'iteration', 'temperature_change', 'power_change',
    'mean_temperature', 'max_temperature', 'max_power_density',
)


def _decode_handle(label: str) -> Hashable:
    value = json.loads(label)
    return tuple(value) if isinstance(value, list) else value


def save_mapping(mapping: CellElementMap,
                 fractions: VolumeFractions,
                 filepath: Union[str, Path],
                 name: str = 'heat') -> None:
    """Save a map and its volume fractions to an HDF5 group ``name``.

    Cell handles are stored as JSON strings; tuples come back as tuples.

    Args:
        mapping: Cell/element correspondence.
        fractions: Volume fractions belonging to ``mapping``.
        filepath: HDF5 file, opened in append mode.
        name: Group name, one per T/H solver.
    """
    lengths = [len(owners) for owners in mapping.element_to_cells]
    indptr = np.concatenate([[0], np.cumsum(lengths)]).astype(np.int64)
    indices = np.array([c for owners in mapping.element_to_cells for c in owners], dtype=np.int64)
    values = np.array([f for fracs in fractions.element_fractions for f in fracs], dtype=np.float64)
    labels = [json.dumps(h, default=str) for h in mapping.cells]

    with h5py.File(filepath, 'a') as f:
        if name in f:
            del f[name]
        grp = f.create_group(name)
        grp.create_dataset('cells', data=np.array(labels, dtype=object),
                           dtype=h5py.string_dtype())
        grp.create_dataset('indptr', data=indptr)
        grp.create_dataset('indices', data=indices)
        grp.create_dataset('fractions', data=values)
        grp.create_dataset('element_volumes', data=fractions.element_volumes)
        grp.create_dataset('cell_volumes', data=fractions.cell_volumes)
        grp.attrs['n_elements'] = mapping.n_elements
        grp.attrs['n_cells'] = mapping.n_cells
        grp.attrs['n_unmapped'] = mapping.n_unmapped
    logger.info(f"Saved map '{name}' ({mapping.n_cells} cells) to {filepath}")


def load_mapping(filepath: Union[str, Path],
                 name: str = 'heat',
                 cells: Optional[Sequence[Hashable]] = None) -> Tuple[CellElementMap, VolumeFractions]:
    """Load a map saved with :func:`save_mapping`.

    Args:
        filepath: HDF5 file.
        name: Group name.
        cells: Cell handles to use instead of the stored labels, in the
            stored order.

    Returns:
        Tuple of (mapping, fractions).
    """
    with h5py.File(filepath, 'r') as f:
        grp = f[name]
        labels = [s.decode() if isinstance(s, bytes) else s for s in grp['cells'][()]]
        indptr = grp['indptr'][()]
        indices = grp['indices'][()]
        values = grp['fractions'][()]
        element_volumes = grp['element_volumes'][()]
        n_elements = int(grp.attrs['n_elements'])

    if cells is None:
        cells = [_decode_handle(s) for s in labels]
    elif len(cells) != len(labels):
        raise ValueError(f"Got {len(cells)} cell handles for {len(labels)} stored cells")
    cells = list(cells)

    element_to_cells: List[List[int]] = []
    element_fractions: List[List[float]] = []
    cell_to_elements: List[List[int]] = [[] for _ in cells]
    for e in range(n_elements):
        owners = [int(c) for c in indices[indptr[e]:indptr[e + 1]]]
        element_to_cells.append(owners)
        element_fractions.append([float(v) for v in values[indptr[e]:indptr[e + 1]]])
        for c in owners:
            cell_to_elements[c].append(e)

    shape = (n_elements, len(cells))
    fraction_matrix = sparse.csr_matrix((values, indices, indptr), shape=shape)
    weights = sparse.csr_matrix(
        (values * np.repeat(element_volumes, np.diff(indptr)), indices, indptr), shape=shape)

    mapping = CellElementMap(
        cells=cells,
        cell_to_elements=cell_to_elements,
        element_to_cells=element_to_cells,
        n_elements=n_elements,
    )
    fractions = VolumeFractions(
        element_fractions=element_fractions,
        element_volumes=element_volumes,
        cell_volumes=np.asarray(weights.sum(axis=0), dtype=np.float64).ravel(),
        weights=weights,
        fraction_matrix=fraction_matrix,
    )
    return mapping, fractions


def save_history(results: Sequence, filepath: Union[str, Path]) -> None:
    """Save the per-iteration history of coupled time steps.

    Args:
        results: ``StepResult`` objects, one per time step.
        filepath: Output HDF5 file path
    """
    with h5py.File(filepath, 'w') as f:
        f.attrs['n_timesteps'] = len(results)
        for result in results:
            grp = f.create_group(f'timestep_{result.timestep}')
            grp.attrs['timestep'] = result.timestep
            grp.attrs['state'] = result.state.value
            grp.attrs['iterations'] = result.iterations
            grp.attrs['unmapped'] = json.dumps(result.unmapped)
            for column in HISTORY_COLUMNS:
                data = [record[column] for record in result.history]
                grp.create_dataset(column, data=np.asarray(data, dtype=np.float64))
    logger.info(f"Saved history of {len(results)} time steps to {filepath}")


def load_history(filepath: Union[str, Path]) -> pd.DataFrame:
    """Read a history file into one DataFrame with a row per iteration."""
    frames = []
    with h5py.File(filepath, 'r') as f:
        for key in f:
            grp = f[key]
            df = pd.DataFrame({column: grp[column][()] for column in HISTORY_COLUMNS})
            df['iteration'] = df['iteration'].astype(int)
            df.insert(0, 'timestep', int(grp.attrs['timestep']))
            df['state'] = grp.attrs['state']
            frames.append(df)
    if not frames:
        return pd.DataFrame(columns=['timestep', *HISTORY_COLUMNS, 'state'])
    return pd.concat(frames, ignore_index=True).sort_values(
        ['timestep', 'iteration'], ignore_index=True)
