"""
Coral Niche Alignment Module
============================

This module aligns fossil occurrence records with gridded paleotemperature
fields on a common stratigraphic and spatial frame:

1. **Cleaning**: drop records lacking genus, coordinates, stage or a valid
   taxonomic identification; restrict to an age floor and a taxon subset
2. **Stage binning**: assign each record one stage from its age range
3. **Collections**: deduplicate (collection, location, stage) tuples
4. **Layer matching**: pick the nearest available raster layer per stage
5. **Field sampling**: nearest-cell extraction of the temperature value
6. **Fan-out**: copy collection-level results back onto every record

Missing-data semantics
----------------------
Gaps that only affect single records (missing paleocoordinates, points
outside the raster's valid cells) are kept as NaN and reported through
``RuntimeWarning``. They are removed by ``complete_cases`` right before a
step that needs complete data. A sampled value of 0.0 is a real value.

Binning policy
--------------
Default is midpoint containment: the midpoint of ``[age_late, age_early]``
falls in the stage with ``top_age <= mid < bottom_age``. A midpoint on a
boundary therefore goes to the older stage. ``policy='overlap'`` picks the
stage with the largest overlap instead (ties to the older stage).

Example Workflow
----------------
>>> from niche_config import load_config
>>> from niche_alignment import clean_records, assign_stages, match_layers
>>> config = load_config()
>>> occ = clean_records(occ, max_age=config.max_age, orders=config.orders)
>>> occ = assign_stages(occ, config)
>>> layer_for_stage = match_layers(temperature_series, config.mid_ages)
"""

import warnings
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
import xarray as xr

from niche_config import ECOLOGY_GROUPS


COLLECTION_KEY = ['collection_id', 'modern_lng', 'modern_lat', 'stage']
VALID_RANKS = ('genus', 'subgenus', 'species', 'subspecies')


# =============================================================================
# SECTION 1: CLEANING
# =============================================================================

def clean_records(
    df: pd.DataFrame,
    max_age: Optional[float] = None,
    orders: Optional[Sequence[str]] = None,
    genera: Optional[Sequence[str]] = None,
    require_ecology: bool = False,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Drop occurrence records that cannot enter the niche analysis.

    Removed rows (in order of the checks):
    - null or empty ``genus``
    - null coordinates, or longitude outside [-180, 180] / latitude
      outside [-90, 90]
    - ``stage`` null (only checked once a ``stage`` column exists)
    - ``accepted_rank`` not genus-level or finer (only if the column exists)
    - ``age_early`` older than ``max_age`` or missing (if ``max_age`` given)
    - ``order`` not in ``orders`` / ``genus`` not in ``genera`` (if given)
    - ``ecology_tag`` not ``'z'``/``'az'`` (if ``require_ecology``)

    Parameters
    ----------
    df : pd.DataFrame
        Occurrence table. NOT modified in place.
    max_age : float, optional
        Age floor in Ma; older records are dropped.
    orders, genera : sequence of str, optional
        Taxonomic subset to keep.
    require_ecology : bool, default False
        Keep only records with a ``z``/``az`` ecology tag.
    verbose : bool, default True
        Print how many rows each check removed.

    Returns
    -------
    pd.DataFrame
        Subset of ``df`` (same columns, original index). Applying the
        function again with the same arguments removes nothing.
    """
    checks = []

    genus = df['genus']
    checks.append(('genus', genus.notna() & (genus.astype(str).str.strip() != '')))

    lng = pd.to_numeric(df['modern_lng'], errors='coerce')
    lat = pd.to_numeric(df['modern_lat'], errors='coerce')
    checks.append(('coordinates',
                   lng.between(-180.0, 180.0) & lat.between(-90.0, 90.0)))

    if 'stage' in df.columns:
        checks.append(('stage', df['stage'].notna()))

    if 'accepted_rank' in df.columns:
        checks.append(('rank', df['accepted_rank'].isin(VALID_RANKS)))

    if max_age is not None:
        early = pd.to_numeric(df['age_early'], errors='coerce')
        checks.append(('age', early.notna() & (early <= max_age)))

    if orders is not None:
        checks.append(('order', df['order'].isin(list(orders))))

    if genera is not None:
        checks.append(('genera', df['genus'].isin(list(genera))))

    if require_ecology:
        checks.append(('ecology', df['ecology_tag'].isin(list(ECOLOGY_GROUPS))))

    keep = pd.Series(True, index=df.index)
    dropped = []
    for name, mask in checks:
        mask = mask.fillna(False).astype(bool)
        n_drop = int((keep & ~mask).sum())
        if n_drop:
            dropped.append(f"{name}={n_drop}")
        keep &= mask

    out = df.loc[keep].copy()
    out.attrs = dict(df.attrs)

    if verbose:
        detail = f" (dropped {', '.join(dropped)})" if dropped else ""
        print(f"  cleaning: kept {len(out)} of {len(df)} records{detail}")

    return out


def attach_ecology(occurrences: pd.DataFrame, traits: pd.DataFrame) -> pd.DataFrame:
    """
    Join genus ecology tags onto occurrence records.

    Tags already present on a record win; missing tags are filled from the
    trait table. Genera absent from the table keep NaN.

    Returns
    -------
    pd.DataFrame
        Copy of ``occurrences`` with a filled ``ecology_tag`` column.
    """
    lookup = traits.drop_duplicates('genus').set_index('genus')['ecology_tag']
    out = occurrences.copy()
    from_traits = out['genus'].map(lookup)
    if 'ecology_tag' in out.columns:
        out['ecology_tag'] = out['ecology_tag'].where(
            out['ecology_tag'].notna(), from_traits)
    else:
        out['ecology_tag'] = from_traits
    out.attrs = dict(occurrences.attrs)
    return out


# =============================================================================
# SECTION 2: STAGE BINNING
# =============================================================================

def _is_supported(stage, oldest_supported_age: float) -> bool:
    return stage.bottom_age <= oldest_supported_age


def stage_for_age(age: float, stages, oldest_supported_age: float) -> Optional[int]:
    """
    Return the index of the stage containing ``age``, or None.

    Stages cover ``[top_age, bottom_age)``, so an age on a boundary belongs
    to the older stage. Ages at or beyond ``oldest_supported_age``, negative
    ages and NaN give None.

    Examples
    --------
    >>> stage_for_age(66.0, config.stages, config.oldest_supported_age)  # K/Pg
    78
    """
    if age is None or not np.isfinite(age):
        return None
    if age >= oldest_supported_age:
        return None
    for stage in stages:
        if stage.contains(age):
            return stage.index
    return None


def stage_by_overlap(age_early: float, age_late: float, stages,
                     oldest_supported_age: float) -> Optional[int]:
    """
    Return the stage with the greatest overlap with ``[age_late, age_early]``.

    Ties go to the older stage (first in table order). A zero-length range
    falls back to midpoint containment.
    """
    if not (np.isfinite(age_early) and np.isfinite(age_late)):
        return None
    old, young = max(age_early, age_late), min(age_early, age_late)
    if old == young:
        return stage_for_age(old, stages, oldest_supported_age)

    overlap = np.array([
        max(0.0, min(old, s.bottom_age) - max(young, s.top_age))
        for s in stages
    ])
    if overlap.max() <= 0.0:
        return None
    best = stages[int(np.argmax(overlap))]
    if not _is_supported(best, oldest_supported_age):
        return None
    return best.index


def assign_stages(
    df: pd.DataFrame,
    config,
    policy: str = 'midpoint',
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Append a ``stage`` column (nullable integer) to an occurrence table.

    Parameters
    ----------
    df : pd.DataFrame
        Needs ``age_early`` and ``age_late`` in Ma. NOT modified in place.
    config : NicheConfig
        Supplies the stage table and ``oldest_supported_age``.
    policy : {'midpoint', 'overlap'}
        Binning rule; see module docstring.

    Returns
    -------
    pd.DataFrame
        Copy with ``stage`` (``Int64``; ``<NA>`` where unassignable) and
        ``age_mid`` columns.
    """
    if policy not in ('midpoint', 'overlap'):
        raise ValueError(f"Unknown binning policy '{policy}'. Use 'midpoint' or 'overlap'.")

    out = df.copy()
    early = pd.to_numeric(out['age_early'], errors='coerce')
    late = pd.to_numeric(out['age_late'], errors='coerce')
    out['age_mid'] = (early + late) / 2.0

    stages = config.stages
    oldest = config.oldest_supported_age

    if policy == 'midpoint':
        lookup = {m: stage_for_age(m, stages, oldest)
                  for m in out['age_mid'].dropna().unique()}
        assigned = out['age_mid'].map(lookup)
    else:
        cache = {}
        values = []
        for pair in zip(early, late):
            if pair not in cache:
                cache[pair] = stage_by_overlap(pair[0], pair[1], stages, oldest)
            values.append(cache[pair])
        assigned = pd.Series(values, index=out.index, dtype=object)

    out['stage'] = pd.array(assigned.astype('float64'), dtype='Int64')
    out.attrs = dict(df.attrs)

    if verbose:
        n_na = int(out['stage'].isna().sum())
        print(f"  stage binning ({policy}): {len(out) - n_na} assigned, "
              f"{n_na} unassigned")
    return out


# =============================================================================
# SECTION 3: COLLECTIONS
# =============================================================================

def build_collections(df: pd.DataFrame) -> pd.DataFrame:
    """
    Deduplicate records into collections.

    Returns
    -------
    pd.DataFrame
        Unique ``(collection_id, modern_lng, modern_lat, stage)`` rows for
        records with a stage, with a 0-based default index.
    """
    staged = df.loc[df['stage'].notna(), COLLECTION_KEY]
    return staged.drop_duplicates().reset_index(drop=True)


def fan_out(records: pd.DataFrame, collections: pd.DataFrame,
            columns: Sequence[str]) -> pd.DataFrame:
    """
    Copy collection-level columns onto every record of that collection.

    Records without a matching collection get NaN. Row order and index
    of ``records`` are preserved.
    """
    cols = [c for c in columns if c not in COLLECTION_KEY]
    merged = records.merge(collections[COLLECTION_KEY + cols],
                           on=COLLECTION_KEY, how='left', validate='many_to_one')
    merged.index = records.index
    merged.attrs = dict(records.attrs)
    return merged


def complete_cases(df: pd.DataFrame, columns: Sequence[str] = ('temperature',),
                   verbose: bool = True) -> pd.DataFrame:
    """Drop rows with NaN in any of ``columns``."""
    out = df.dropna(subset=list(columns))
    if verbose and len(out) < len(df):
        print(f"  complete cases on {list(columns)}: dropped {len(df) - len(out)} "
              f"of {len(df)} rows")
    return out


# =============================================================================
# SECTION 4: LAYER MATCHING
# =============================================================================

def _layer_ages(layers) -> np.ndarray:
    if isinstance(layers, xr.DataArray):
        return np.asarray(layers['age'].values, dtype=np.float64)
    if isinstance(layers, dict):
        return np.asarray(list(layers.keys()), dtype=np.float64)
    return np.asarray(list(layers), dtype=np.float64)


def match_layers(layers, mid_ages: Union[pd.Series, dict]) -> pd.Series:
    """
    Select the nearest available raster layer for every stage.

    Parameters
    ----------
    layers : xr.DataArray, dict or sequence
        The raster series (its ``age`` coordinate is used), a mapping of
        age label -> layer, or the age labels themselves. Order matters
        for ties.
    mid_ages : pd.Series or dict
        Stage midpoints (Ma) keyed by stage index, e.g.
        ``config.mid_ages``.

    Returns
    -------
    pd.Series
        Age label of the selected layer per stage (name ``raster_age``),
        defined for every stage. Ties (equal distance to two labels) go to
        the label listed first: for labels (100, 200, 300) a midpoint of
        150 selects 100. There is no distance limit.
    """
    labels = _layer_ages(layers)
    if labels.size == 0:
        raise ValueError("Raster series has no layers")

    mids = pd.Series(mid_ages, dtype=np.float64)
    # rounding keeps float noise from breaking exact ties
    dist = np.round(np.abs(mids.values[:, None] - labels[None, :]), 9)
    choice = dist.argmin(axis=1)

    out = pd.Series(labels[choice], index=mids.index, name='raster_age')
    out.index.name = 'stage'
    return out


def match_table(layers, config) -> pd.DataFrame:
    """
    Stage table with the matched layer and its offset from the midpoint.

    Returns
    -------
    pd.DataFrame
        Indexed by stage: ``name, mid_age, raster_age, offset``. A non-zero
        ``offset`` marks a nearest-layer substitution.
    """
    table = config.stage_table()[['name', 'mid_age']].copy()
    table['raster_age'] = match_layers(layers, table['mid_age'])
    table['offset'] = (table['raster_age'] - table['mid_age']).abs()
    return table


# =============================================================================
# SECTION 5: FIELD SAMPLING
# =============================================================================

def _nearest_cell(centres: np.ndarray, values: np.ndarray):
    """
    Index of the nearest grid centre and a mask of points off the grid.

    ``centres`` must be ascending. Equidistant points go to the lower
    centre. Points more than half a cell beyond the outermost centres are
    off the grid.
    """
    n = centres.size
    if n < 2:
        raise ValueError("Grid needs at least two cells along each axis")

    idx = np.clip(np.searchsorted(centres, values), 1, n - 1)
    left = centres[idx - 1]
    right = centres[idx]
    with np.errstate(invalid='ignore'):
        idx = np.where(values - left <= right - values, idx - 1, idx)
        half_lo = (centres[1] - centres[0]) / 2.0
        half_hi = (centres[-1] - centres[-2]) / 2.0
        outside = ~((values >= centres[0] - half_lo) & (values <= centres[-1] + half_hi))
    return idx, outside


def _to_grid_longitude(lng: np.ndarray, grid_lon: np.ndarray) -> np.ndarray:
    if np.nanmax(grid_lon) > 180.0:
        return np.mod(lng, 360.0)
    return np.mod(lng + 180.0, 360.0) - 180.0


def _is_global(grid_lon: np.ndarray) -> bool:
    step = grid_lon[1] - grid_lon[0]
    return bool(np.isclose(step * grid_lon.size, 360.0))


def sample_field(layer: xr.DataArray, lng, lat):
    """
    Nearest-cell value of a gridded field at one or more points.

    Parameters
    ----------
    layer : xr.DataArray
        2-D field with ``lat`` and ``lon`` dimensions (a singleton ``age``
        dimension is squeezed).
    lng, lat : float or array-like
        Point coordinates in degrees. Longitudes are mapped onto the
        grid's convention (0-360 or -180-180); on grids spanning the
        full circle they wrap across the seam.

    Returns
    -------
    float or np.ndarray
        Cell values; NaN for NaN coordinates, points off the grid and
        masked (NaN) cells. Scalar inputs give a float.
    """
    scalar = np.ndim(lng) == 0 and np.ndim(lat) == 0
    lng = np.atleast_1d(np.asarray(lng, dtype=np.float64))
    lat = np.atleast_1d(np.asarray(lat, dtype=np.float64))

    if 'age' in layer.dims:
        layer = layer.squeeze('age', drop=True)
    layer = layer.transpose('lat', 'lon').sortby('lat').sortby('lon')

    grid_lat = np.asarray(layer['lat'].values, dtype=np.float64)
    grid_lon = np.asarray(layer['lon'].values, dtype=np.float64)
    lng = _to_grid_longitude(lng, grid_lon)

    i_lat, off_lat = _nearest_cell(grid_lat, lat)
    i_lon, off_lon = _nearest_cell(grid_lon, lng)
    if _is_global(grid_lon):
        # wrap across the seam of a full-circle grid
        i_lon = np.where(off_lon & (lng > grid_lon[-1]), 0, i_lon)
        i_lon = np.where(off_lon & (lng < grid_lon[0]), grid_lon.size - 1, i_lon)
        off_lon = np.isnan(lng)

    values = np.asarray(layer.values, dtype=np.float64)[i_lat, i_lon]
    values = np.where(off_lat | off_lon, np.nan, values)
    return float(values[0]) if scalar else values


def sample_series(
    series: xr.DataArray,
    points: pd.DataFrame,
    time_key: str = 'raster_age',
    lng_col: str = 'paleo_lng',
    lat_col: str = 'paleo_lat',
    warn: bool = True,
) -> pd.Series:
    """
    Extract one value per point from the layer named in its ``time_key``.

    Parameters
    ----------
    series : xr.DataArray
        Raster series with dims ``(age, lat, lon)``.
    points : pd.DataFrame
        Rows with coordinates and the age label of their layer.
    time_key : str, default 'raster_age'
        Column holding the layer's age label (from ``match_layers``).

    Returns
    -------
    pd.Series
        Sampled values aligned to ``points.index``. NaN where the label
        or coordinates are missing or the point falls off valid cells.
    """
    out = pd.Series(np.nan, index=points.index, name='temperature')
    keyed = points.dropna(subset=[time_key])
    for label, group in keyed.groupby(time_key):
        layer = series.sel(age=label)
        out.loc[group.index] = sample_field(
            layer, group[lng_col].values, group[lat_col].values)

    if warn:
        has_input = points[[lng_col, lat_col, time_key]].notna().all(axis=1)
        n_missing = int((has_input & out.isna()).sum())
        if n_missing > 0:
            warnings.warn(
                f"{n_missing} of {int(has_input.sum())} points fall outside "
                f"the valid raster cells; their values are NaN",
                RuntimeWarning,
            )
    return out
