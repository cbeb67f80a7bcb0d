"""
Coral Niche Data Readers
========================

This module provides the versioned dataset providers and the readers that
turn fetched files into pandas DataFrames (occurrences, traits) and xarray
DataArrays (paleotemperature series).

Every object returned by a provider carries provenance in ``.attrs``:
``dataset``, ``variable``, ``version``, ``resolution``, ``access_date``,
``source_call``, ``provider`` and ``path``.

Providers
---------
LocalCacheProvider:
    Reads only from the on-disk cache. Fully offline; a missing file is
    fatal (``FileNotFoundError``).
NetworkProvider:
    Downloads missing files into the cache (PBDB API for occurrences, the
    dataset archive for everything else), then reads through the cache.

Cache layout::

    <cache_dir>/<dataset>/<variable>/<version>/<dataset>_<variable>_<version>_<resolution>.<ext>

Supported inputs
----------------
- PBDB occurrence exports (CSV or JSON, ``vocab=pbdb`` field names)
- Genus trait tables (CSV with ``genus`` and an ecology column)
- Paleotemperature NetCDF files with an age/time dimension

Dependencies
------------
- pandas, numpy
- xarray, netCDF4 (for NetCDF files)
- requests (network provider and PBDB queries)

Example
-------
>>> from niche_config import load_config
>>> from niche_data_readers import get_provider
>>> config = load_config(cache_dir='data/cache')
>>> provider = get_provider(config)
>>> occ = provider.fetch('pbdb', 'occurrences', '20240101', 'genus')
>>> occ.attrs['access_date']
'2024-01-01'
"""
import glob
import json
import os
from datetime import date, datetime
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
import requests
import xarray as xr


# =============================================================================
# COLUMN MAPS
# =============================================================================

# PBDB (vocab=pbdb) -> occurrence record schema
_PBDB_COLUMNS = {
    'occurrence_no': 'occurrence_id',
    'collection_no': 'collection_id',
    'lng': 'modern_lng',
    'lat': 'modern_lat',
    'max_ma': 'age_early',
    'min_ma': 'age_late',
}

OCCURRENCE_COLUMNS = ['genus', 'order', 'collection_id', 'modern_lng',
                      'modern_lat', 'age_early', 'age_late', 'ecology_tag']

_AGE_NAMES = ('age', 'time', 'ma', 'Ma', 'slice')
_LAT_NAMES = ('lat', 'latitude', 'y')
_LON_NAMES = ('lon', 'longitude', 'lng', 'x')

# File format per variable; anything else is gridded (NetCDF)
_FORMATS = {'occurrences': '.csv', 'ecology': '.csv'}
_EXTENSIONS = ('.csv', '.json', '.nc')


# =============================================================================
# READERS
# =============================================================================

def _standardize_occurrences(df: pd.DataFrame) -> pd.DataFrame:
    """Rename PBDB fields and coerce types to the occurrence schema."""
    df = df.rename(columns={k: v for k, v in _PBDB_COLUMNS.items()
                            if k in df.columns and v not in df.columns})

    missing = [c for c in OCCURRENCE_COLUMNS
               if c not in df.columns and c != 'ecology_tag']
    if missing:
        raise ValueError(f"Occurrence table lacks required columns: {missing}")

    if 'ecology_tag' not in df.columns:
        df['ecology_tag'] = np.nan

    for col in ('modern_lng', 'modern_lat', 'age_early', 'age_late'):
        df[col] = pd.to_numeric(df[col], errors='coerce')

    # PBDB leaves genus empty for higher-rank identifications
    df['genus'] = df['genus'].replace('', np.nan)
    return df.reset_index(drop=True)


def read_occurrences(filepath: str) -> pd.DataFrame:
    """
    Read a PBDB occurrence download.

    Parameters
    ----------
    filepath : str
        CSV or JSON file (``occs/list`` output with ``vocab=pbdb`` and
        ``show=class,coords``). Files already in the record schema are
        accepted as-is.

    Returns
    -------
    pd.DataFrame
        One row per occurrence with columns ``genus, order,
        collection_id, modern_lng, modern_lat, age_early, age_late,
        ecology_tag`` (plus any extra PBDB fields present, e.g.
        ``occurrence_id``, ``family``, ``accepted_rank``). Ages in Ma.

    Reference
    ---------
    Peters, S. E., & McClennen, M. (2016). The Paleobiology Database
    application programming interface. Paleobiology, 42(1), 1-7.
    https://doi.org/10.1017/pab.2015.39
    """
    if filepath.endswith('.json'):
        with open(filepath, 'r') as f:
            payload = json.load(f)
        df = pd.DataFrame(payload.get('records', payload))
    else:
        df = pd.read_csv(filepath, low_memory=False)

    df = _standardize_occurrences(df)
    df.attrs = {
        'dataset': 'pbdb',
        'reference': 'Peters & McClennen (2016)',
        'doi': '10.1017/pab.2015.39',
        'quantity': 'occurrences',
        'age_units': 'Ma',
    }
    return df


def read_traits(filepath: str) -> pd.DataFrame:
    """
    Read a genus-level ecology trait table.

    The table needs a ``genus`` column and an ecology column named
    ``ecology_tag``, ``ecology`` or ``symbiosis``. Tags are lower-cased;
    anything other than ``'z'`` or ``'az'`` becomes NaN. Duplicate genera
    keep their first entry.

    Returns
    -------
    pd.DataFrame
        Columns ``genus, ecology_tag``.
    """
    df = pd.read_csv(filepath)
    tag_col = next((c for c in ('ecology_tag', 'ecology', 'symbiosis')
                    if c in df.columns), None)
    if 'genus' not in df.columns or tag_col is None:
        raise ValueError(
            f"Trait table {filepath} needs 'genus' and an ecology column "
            f"('ecology_tag', 'ecology' or 'symbiosis'); found {list(df.columns)}"
        )

    tags = df[tag_col].astype(str).str.strip().str.lower()
    df = pd.DataFrame({
        'genus': df['genus'].astype(str).str.strip(),
        'ecology_tag': tags.where(tags.isin(['z', 'az'])),
    })
    df = df.drop_duplicates(subset='genus', keep='first').reset_index(drop=True)
    df.attrs = {'dataset': 'traits', 'quantity': 'ecology'}
    return df


def _find_name(names, candidates) -> Optional[str]:
    for c in candidates:
        if c in names:
            return c
    return None


def read_temperature_series(filepath: str,
                            variable: Optional[str] = None) -> xr.DataArray:
    """
    Read a paleotemperature series from NetCDF.

    Parameters
    ----------
    filepath : str
        NetCDF file with one gridded field per time slice.
    variable : str, optional
        Data variable to read. Defaults to the first data variable.

    Returns
    -------
    xr.DataArray
        Dims ``(age, lat, lon)``, each coordinate ascending. Fill values
        (|x| > 1e20 or the declared ``_FillValue``) are NaN; NaN cells
        form the valid-data mask.

    Note
    ----
    Time coordinates named ``time``, ``ma`` or ``slice`` are renamed to
    ``age`` and are taken to be in Ma.

    Requires: pip install xarray netCDF4
    """
    with xr.open_dataset(filepath, mask_and_scale=True) as ds:
        if variable is None:
            if not ds.data_vars:
                raise ValueError(f"No data variables in {filepath}")
            variable = list(ds.data_vars)[0]
        if variable not in ds:
            raise ValueError(
                f"Variable '{variable}' not in {filepath}; "
                f"available: {list(ds.data_vars)}"
            )
        da = ds[variable].load()

    da = normalize_series(da)
    da.attrs.update({'variable': variable, 'path': os.path.abspath(filepath)})
    return da


def normalize_series(da: xr.DataArray) -> xr.DataArray:
    """Rename coordinates to ``age/lat/lon``, sort them and mask fill values."""
    names = set(da.dims)
    age = _find_name(names, _AGE_NAMES)
    lat = _find_name(names, _LAT_NAMES)
    lon = _find_name(names, _LON_NAMES)
    if lat is None or lon is None:
        raise ValueError(f"Cannot identify lat/lon dimensions in {da.dims}")

    rename = {k: v for k, v in ((age, 'age'), (lat, 'lat'), (lon, 'lon'))
              if k is not None and k != v}
    da = da.rename(rename)
    if 'age' not in da.dims:
        da = da.expand_dims(age=[float(da.attrs.get('age', 0.0))])

    da = da.transpose('age', 'lat', 'lon').astype(np.float64)
    da = da.sortby('age').sortby('lat').sortby('lon')

    fill = da.attrs.get('_FillValue')
    da = da.where(np.abs(da) < 1e20)
    if fill is not None:
        da = da.where(~np.isclose(da, float(fill), rtol=1e-5))
    return da


def build_raster_series(layers: dict, name: str = 'temperature') -> xr.DataArray:
    """
    Stack individual time-slice grids into one series.

    Parameters
    ----------
    layers : dict of {float: xr.DataArray}
        Age label (Ma) -> 2-D grid with lat/lon dimensions. All grids must
        share the same coordinates.

    Returns
    -------
    xr.DataArray
        Dims ``(age, lat, lon)`` sorted by ascending age.
    """
    if not layers:
        raise ValueError("At least one raster layer required")
    items = sorted(layers.items(), key=lambda kv: float(kv[0]))
    ages = [float(a) for a, _ in items]
    grids = [normalize_series(grid).isel(age=0, drop=True) for _, grid in items]
    series = xr.concat(grids, dim=pd.Index(ages, name='age'))
    return series.transpose('age', 'lat', 'lon').rename(name)


# =============================================================================
# PBDB API
# =============================================================================

def fetch_pbdb_occurrences(taxa: Union[str, Sequence[str]],
                           max_ma: Optional[float] = None,
                           min_ma: Optional[float] = None,
                           url: str = 'https://paleobiodb.org/data1.2',
                           timeout: float = 120) -> pd.DataFrame:
    """
    Query PBDB for occurrences of the given taxa.

    Parameters
    ----------
    taxa : str or list of str
        Base taxon name(s), e.g. ``'Scleractinia'``.
    max_ma, min_ma : float, optional
        Age window in Ma.

    Returns
    -------
    pd.DataFrame
        Standardised occurrence table (see ``read_occurrences``).

    Raises
    ------
    requests.HTTPError
        If the service answers with an error status.
    """
    if not isinstance(taxa, str):
        taxa = ','.join(t.strip() for t in taxa if t.strip())
    params = {
        'base_name': taxa,
        'show': 'class,coords,ident',
        'vocab': 'pbdb',
        'limit': 'all',
    }
    if max_ma is not None:
        params['max_ma'] = max_ma
    if min_ma is not None:
        params['min_ma'] = min_ma

    resp = requests.get(f"{url}/occs/list.json", params=params, timeout=timeout)
    resp.raise_for_status()
    records = resp.json().get('records', [])
    return _standardize_occurrences(pd.DataFrame(records))


# =============================================================================
# PROVIDERS
# =============================================================================

class DatasetProvider:
    """
    Versioned dataset access keyed by (dataset, variable, version, resolution).

    Subclasses decide how a missing cache entry is handled; reading and
    provenance tagging are shared.
    """
    name = 'base'

    def __init__(self, cache_dir: str, verbose: bool = True):
        self.cache_dir = os.path.abspath(cache_dir)
        self.verbose = verbose

    def cache_stem(self, dataset, variable, version, resolution) -> str:
        return os.path.join(
            self.cache_dir, dataset, variable, str(version),
            f"{dataset}_{variable}_{version}_{resolution}",
        )

    def cache_path(self, dataset, variable, version, resolution,
                   ext: Optional[str] = None) -> str:
        if ext is None:
            ext = _FORMATS.get(variable, '.nc')
        return self.cache_stem(dataset, variable, version, resolution) + ext

    def find_cached(self, dataset, variable, version, resolution) -> Optional[str]:
        """Return the cached file for this key, or None."""
        preferred = self.cache_path(dataset, variable, version, resolution)
        if os.path.exists(preferred):
            return preferred
        stem = self.cache_stem(dataset, variable, version, resolution)
        for path in sorted(glob.glob(stem + '.*')):
            if path.endswith('.provenance.json'):
                continue
            if os.path.splitext(path)[1] in _EXTENSIONS:
                return path
        return None

    def fetch(self, dataset: str, variable: str, version: str,
              resolution: str):
        """
        Return the requested dataset with provenance attached.

        Returns
        -------
        pd.DataFrame or xr.DataArray
        """
        path = self._resolve(dataset, variable, version, resolution)
        obj = self._read(path, variable)

        provenance = _read_provenance(path)
        obj.attrs.update({
            'dataset': dataset,
            'variable': variable,
            'version': str(version),
            'resolution': str(resolution),
            'access_date': provenance.get('access_date', _mtime_date(path)),
            'source_call': (f"fetch(dataset='{dataset}', variable='{variable}', "
                            f"version='{version}', resolution='{resolution}')"),
            'source_url': provenance.get('source_url'),
            'provider': self.name,
            'path': path,
        })
        if self.verbose:
            print(f"  {dataset}/{variable} v{version} ({resolution}): "
                  f"{os.path.basename(path)} [{self.name}]")
        return obj

    def _resolve(self, dataset, variable, version, resolution) -> str:
        raise NotImplementedError

    def _read(self, path: str, variable: str):
        if path.endswith('.nc'):
            return read_temperature_series(path)
        if variable == 'occurrences':
            return read_occurrences(path)
        return read_traits(path)


class LocalCacheProvider(DatasetProvider):
    """Serve datasets from the local cache only."""
    name = 'local'

    def _resolve(self, dataset, variable, version, resolution) -> str:
        path = self.find_cached(dataset, variable, version, resolution)
        if path is None:
            raise FileNotFoundError(
                f"Dataset {dataset}/{variable} version {version} "
                f"({resolution}) is not in the local cache: "
                f"{self.cache_path(dataset, variable, version, resolution)}"
            )
        return path


class NetworkProvider(DatasetProvider):
    """Download datasets into the cache on first use, then read locally."""
    name = 'network'

    def __init__(self, cache_dir: str, base_url: str,
                 pbdb_url: str = 'https://paleobiodb.org/data1.2',
                 taxa: Sequence[str] = ('Scleractinia',),
                 timeout: float = 120, verbose: bool = True):
        super().__init__(cache_dir, verbose=verbose)
        self.base_url = base_url.rstrip('/')
        self.pbdb_url = pbdb_url
        self.taxa = tuple(taxa)
        self.timeout = timeout

    def _resolve(self, dataset, variable, version, resolution) -> str:
        path = self.find_cached(dataset, variable, version, resolution)
        if path is not None:
            return path

        path = self.cache_path(dataset, variable, version, resolution)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        try:
            if dataset == 'pbdb':
                source_url = f"{self.pbdb_url}/occs/list.json"
                df = fetch_pbdb_occurrences(self.taxa, url=self.pbdb_url,
                                            timeout=self.timeout)
                df.to_csv(path, index=False)
            else:
                source_url = (f"{self.base_url}/{dataset}/{variable}/{version}/"
                              f"{os.path.basename(path)}")
                _download(source_url, path, timeout=self.timeout)
        except requests.RequestException as exc:
            raise RuntimeError(
                f"Failed to fetch dataset {dataset}/{variable} "
                f"version {version} ({resolution}): {exc}"
            ) from exc

        _write_provenance(path, source_url)
        if self.verbose:
            print(f"  downloaded {source_url}")
        return path


def get_provider(config, verbose: bool = True) -> DatasetProvider:
    """Instantiate the provider named by ``config.provider``."""
    if config.provider == 'local':
        return LocalCacheProvider(config.cache_dir, verbose=verbose)
    if config.provider == 'network':
        return NetworkProvider(config.cache_dir, base_url=config.dataset_url,
                               pbdb_url=config.pbdb_url, taxa=config.orders,
                               timeout=config.timeout, verbose=verbose)
    raise ValueError(f"Unknown provider '{config.provider}'")


def fetch_core_datasets(provider: DatasetProvider, config) -> dict:
    """
    Fetch occurrences, traits and the temperature series named in the config.

    Any failure here aborts the run; the error names the dataset.
    """
    return {key: provider.fetch(*config.datasets[key])
            for key in ('occurrences', 'traits', 'temperature')}


# =============================================================================
# CACHE HELPERS
# =============================================================================

def _download(url: str, path: str, timeout: float = 120) -> None:
    tmp = path + '.part'
    with requests.get(url, stream=True, timeout=timeout) as resp:
        resp.raise_for_status()
        with open(tmp, 'wb') as f:
            for chunk in resp.iter_content(chunk_size=1 << 20):
                f.write(chunk)
    os.replace(tmp, path)


def _provenance_path(path: str) -> str:
    return os.path.splitext(path)[0] + '.provenance.json'


def _write_provenance(path: str, source_url: str) -> None:
    record = {'access_date': date.today().isoformat(), 'source_url': source_url}
    with open(_provenance_path(path), 'w') as f:
        json.dump(record, f, indent=2)


def _read_provenance(path: str) -> dict:
    sidecar = _provenance_path(path)
    if not os.path.exists(sidecar):
        return {}
    with open(sidecar, 'r') as f:
        return json.load(f)


def _mtime_date(path: str) -> str:
    return datetime.fromtimestamp(os.path.getmtime(path)).date().isoformat()
