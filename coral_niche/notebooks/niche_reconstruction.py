"""
Paleocoordinate Reconstruction
==============================

Rotates modern collection coordinates back to their position at the
collection's stage, using a plate rotation model served by the GPlates
Web Service.

The reconstruction collaborator has the contract::

    reconstruct(points, age, model) -> (n, 2) array of [paleo_lng, paleo_lat]

where ``points`` is an ``(n, 2)`` array of ``[lng, lat]`` sharing one age
(Ma). Unreconstructable points come back as NaN. ``gplates_reconstruct``
is the default implementation; tests and offline runs pass their own.

Calls are issued once per distinct age. A failed call (service error, age
outside the model) leaves NaN for that age's points and raises a
``RuntimeWarning``; it never aborts the batch.

Reference
---------
Müller, R. D., et al. (2018). GPlates: Building a virtual Earth through
deep time. Geochemistry, Geophysics, Geosystems, 19, 2243-2261.
https://doi.org/10.1029/2018GC007584

Scotese, C. R., & Wright, N. (2018). PALEOMAP Paleodigital Elevation
Models (PaleoDEMS) for the Phanerozoic.
"""

import warnings
from functools import partial
from typing import Callable, Optional

import numpy as np
import pandas as pd
import requests


# =============================================================================
# GPLATES WEB SERVICE
# =============================================================================

def gplates_reconstruct(points, age: float, model, timeout: float = 120) -> np.ndarray:
    """
    Reconstruct points to ``age`` with the GPlates Web Service.

    Parameters
    ----------
    points : array-like, shape (n, 2)
        Modern ``[lng, lat]`` in degrees.
    age : float
        Reconstruction age in Ma.
    model : RotationModel
        Model name and service URL; ages outside
        ``[model.min_age, model.max_age]`` are not sent.
    timeout : float
        Request timeout in seconds.

    Returns
    -------
    np.ndarray, shape (n, 2)
        Paleo ``[lng, lat]``; NaN for invalid input points, ages outside
        the model and points the service returns as null.

    Raises
    ------
    requests.RequestException
        On HTTP or connection errors.
    ValueError
        If the response does not have one coordinate per point.
    """
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    out = np.full(pts.shape, np.nan)
    if not (model.min_age <= age <= model.max_age):
        return out

    valid = np.isfinite(pts).all(axis=1)
    if not valid.any():
        return out

    params = {
        'points': ','.join(f"{lng:.4f},{lat:.4f}" for lng, lat in pts[valid]),
        'time': f"{age:g}",
        'model': model.name,
        'return_null_points': '',
    }
    resp = requests.post(f"{model.url.rstrip('/')}/reconstruct/reconstruct_points/",
                         data=params, timeout=timeout)
    resp.raise_for_status()
    coords = resp.json().get('coordinates', [])
    if len(coords) != int(valid.sum()):
        raise ValueError(
            f"Expected {int(valid.sum())} reconstructed points at {age} Ma, "
            f"got {len(coords)}"
        )

    out[valid] = [[np.nan, np.nan] if c is None else c[:2] for c in coords]
    return out


# =============================================================================
# BATCHED RECONSTRUCTION
# =============================================================================

def reconstruct_points(
    points: pd.DataFrame,
    ages: pd.Series,
    model,
    reconstruct: Callable,
    lng_col: str = 'modern_lng',
    lat_col: str = 'modern_lat',
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Reconstruct many points, one collaborator call per distinct age.

    Parameters
    ----------
    points : pd.DataFrame
        Rows with modern coordinates.
    ages : pd.Series
        Reconstruction age (Ma) per row, aligned to ``points.index``.
        Rows with NaN age are left NaN.
    model : RotationModel
    reconstruct : callable
        ``reconstruct(points, age, model) -> (n, 2) array``.

    Returns
    -------
    pd.DataFrame
        ``paleo_lng`` and ``paleo_lat`` aligned to ``points.index``.
    """
    out = pd.DataFrame(np.nan, index=points.index, columns=['paleo_lng', 'paleo_lat'])
    failed = []

    for age, idx in ages.dropna().groupby(ages.dropna()).groups.items():
        xy = points.loc[idx, [lng_col, lat_col]].to_numpy(dtype=np.float64)
        try:
            result = np.asarray(reconstruct(xy, float(age), model),
                                dtype=np.float64).reshape(-1, 2)
        except Exception as exc:
            failed.append(f"{age:g} Ma ({exc})")
            continue
        if result.shape != xy.shape:
            failed.append(f"{age:g} Ma (got {result.shape[0]} of {xy.shape[0]} points)")
            continue
        out.loc[idx, 'paleo_lng'] = result[:, 0]
        out.loc[idx, 'paleo_lat'] = result[:, 1]

    if failed:
        warnings.warn(
            f"Reconstruction with {model.name} failed for {len(failed)} age(s); "
            f"affected points are NaN: {'; '.join(failed)}",
            RuntimeWarning,
        )

    n_null = int(out['paleo_lat'].isna().sum())
    if verbose:
        n_ages = ages.dropna().nunique()
        print(f"  reconstruction ({model.name}): {len(out) - n_null} of {len(out)} "
              f"points over {n_ages} ages")
    return out


def reconstruct_collections(
    collections: pd.DataFrame,
    config,
    reconstruct: Optional[Callable] = None,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Add paleocoordinates to a collection table, at each stage's midpoint.

    Parameters
    ----------
    collections : pd.DataFrame
        Output of ``build_collections`` (needs ``modern_lng``,
        ``modern_lat`` and ``stage``).
    config : NicheConfig
        Supplies the stage table, rotation model and request timeout.
    reconstruct : callable, optional
        Collaborator; defaults to ``gplates_reconstruct``.

    Returns
    -------
    pd.DataFrame
        Copy of ``collections`` with ``paleo_lng`` and ``paleo_lat``.
    """
    if reconstruct is None:
        reconstruct = partial(gplates_reconstruct, timeout=config.timeout)

    mid = config.mid_ages
    ages = collections['stage'].map(lambda s: mid.get(int(s)) if pd.notna(s) else np.nan)
    ages = pd.to_numeric(ages, errors='coerce')

    paleo = reconstruct_points(collections, ages, config.rotation_model,
                               reconstruct, verbose=verbose)
    out = collections.copy()
    out[['paleo_lng', 'paleo_lat']] = paleo
    return out
