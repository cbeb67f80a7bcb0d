#!/usr/bin/env python3
"""
End-to-end check of the niche pipeline on synthetic data.

Two genera (one z, one az) occur in three consecutive Miocene stages.
The temperature series has layers at exactly two of the three stage
midpoints; the third stage must use the nearest layer, and the
substitution must be visible in the layer match table.

Run:  python test_end_to_end.py          (stand-alone)
      pytest test_end_to_end.py -v       (with pytest)
"""

import sys, os, tempfile, warnings

import numpy as np
import pandas as pd
import xarray as xr

warnings.filterwarnings('ignore', category=FutureWarning)

sys.path.insert(0, os.path.dirname(__file__))
from niche_config import load_config
from niche_data_readers import LocalCacheProvider
from run_niche_analysis import build_joined_table, run_analysis

CONFIG = load_config(cache_dir=os.path.dirname(__file__), provider='local')
STAGE_NAMES = ('Aquitanian', 'Burdigalian', 'Langhian')


# =====================================================================
#  HELPERS
# =====================================================================

def identity_reconstruct(points, age, model):
    return np.asarray(points, dtype=float)


def make_occurrences(extra_genera=False):
    """Occurrences with midpoints inside each of the three stages."""
    ages = {'Aquitanian': (22.0, 21.0), 'Burdigalian': (19.0, 17.0),
            'Langhian': (15.0, 14.0)}
    rows = [
        # genus, collection, lng, lat, stage
        ('Acropora', 1, 10.0, 5.0, 'Aquitanian'),
        ('Acropora', 2, 20.0, -5.0, 'Aquitanian'),
        ('Acropora', 3, 30.0, 15.0, 'Burdigalian'),
        ('Acropora', 4, 40.0, 5.0, 'Langhian'),
        ('Flabellum', 5, 10.0, 55.0, 'Aquitanian'),
        ('Flabellum', 6, -20.0, 65.0, 'Burdigalian'),
        ('Flabellum', 7, -30.0, 45.0, 'Langhian'),
        ('Flabellum', 8, 50.0, 55.0, 'Langhian'),
    ]
    if extra_genera:
        rows += [
            ('Porites', 9, 60.0, 25.0, 'Aquitanian'),
            ('Porites', 10, 70.0, -15.0, 'Langhian'),
            ('Caryophyllia', 11, -60.0, 75.0, 'Burdigalian'),
            ('Caryophyllia', 12, -70.0, -35.0, 'Langhian'),
        ]
    df = pd.DataFrame(rows, columns=['genus', 'collection_id', 'modern_lng',
                                     'modern_lat', 'stage_name'])
    df['order'] = 'Scleractinia'
    df['age_early'] = df['stage_name'].map(lambda s: ages[s][0])
    df['age_late'] = df['stage_name'].map(lambda s: ages[s][1])
    return df.drop(columns='stage_name')


def make_traits():
    return pd.DataFrame({
        'genus': ['Acropora', 'Porites', 'Flabellum', 'Caryophyllia'],
        'ecology_tag': ['z', 'z', 'az', 'az'],
    })


def make_temperature():
    """Global 10-degree grid, 30 °C at the equator, layers at two midpoints."""
    lat = np.arange(-85.0, 90.0, 10.0)
    lon = np.arange(-175.0, 180.0, 10.0)
    base = 30.0 - 0.25 * np.abs(lat)[:, None] + np.zeros(lon.size)[None, :]
    ages = [CONFIG.stage(n).mid_age for n in STAGE_NAMES[:2]]
    layers = np.stack([base, base + 1.0])
    return xr.DataArray(layers, dims=('age', 'lat', 'lon'),
                        coords={'age': ages, 'lat': lat, 'lon': lon},
                        name='sst')


# =====================================================================
#  TESTS
# =====================================================================

def test_joined_table_uses_nearest_layer():
    result = build_joined_table(make_occurrences(), make_traits(),
                                make_temperature(), CONFIG,
                                reconstruct=identity_reconstruct, verbose=False)
    joined = result['joined']
    aq, burd, lang = (CONFIG.stage(n) for n in STAGE_NAMES)

    assert len(joined) == 8
    assert set(joined['stage']) == {aq.index, burd.index, lang.index}
    assert joined['temperature'].notna().all(), "uncovered stage uses a substitute"

    by_stage = joined.groupby('stage')['raster_age'].unique()
    assert list(by_stage[aq.index]) == [aq.mid_age]
    assert list(by_stage[burd.index]) == [burd.mid_age]
    assert list(by_stage[lang.index]) == [burd.mid_age], "nearest layer"

    match = result['layer_match']
    assert match.loc[aq.index, 'offset'] == 0.0
    assert match.loc[burd.index, 'offset'] == 0.0
    assert np.isclose(match.loc[lang.index, 'offset'], burd.mid_age - lang.mid_age)


def test_joined_table_values():
    result = build_joined_table(make_occurrences(), make_traits(),
                                make_temperature(), CONFIG,
                                reconstruct=identity_reconstruct, verbose=False)
    joined = result['joined'].set_index('collection_id')

    assert joined.loc[1, 'temperature'] == 28.75          # lat 5, first layer
    assert joined.loc[3, 'temperature'] == 30.0 - 3.75 + 1.0
    assert joined.loc[4, 'temperature'] == 28.75 + 1.0    # Langhian -> 2nd layer
    assert joined.loc[6, 'ecology_tag'] == 'az'
    assert (joined['paleo_lng'] == joined['modern_lng']).all()
    assert len(result['collections']) == 8


def test_failed_reconstruction_leaves_nan_temperature():
    def no_service(points, age, model):
        raise ValueError("no model at this age")

    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        result = build_joined_table(make_occurrences(), make_traits(),
                                    make_temperature(), CONFIG,
                                    reconstruct=no_service, verbose=False)
    joined = result['joined']
    assert len(joined) == 8, "records are kept"
    assert joined['temperature'].isna().all()


def test_run_analysis_from_local_cache():
    with tempfile.TemporaryDirectory() as tmp:
        config = load_config(cache_dir=tmp, provider='local')
        provider = LocalCacheProvider(tmp, verbose=False)

        path = provider.cache_path(*config.datasets['occurrences'])
        os.makedirs(os.path.dirname(path), exist_ok=True)
        make_occurrences(extra_genera=True).to_csv(path, index=False)

        path = provider.cache_path(*config.datasets['traits'])
        os.makedirs(os.path.dirname(path), exist_ok=True)
        make_traits().to_csv(path, index=False)

        path = provider.cache_path(*config.datasets['temperature'])
        os.makedirs(os.path.dirname(path), exist_ok=True)
        make_temperature().to_dataset().to_netcdf(path)

        out_dir = os.path.join(tmp, 'tables')
        results = run_analysis(config, reconstruct=identity_reconstruct,
                               out_dir=out_dir, verbose=False)

        written = sorted(os.listdir(out_dir))
        assert 'joined_occurrences.csv' in written
        assert 'layer_match.csv' in written
        assert 'stage_comparison.csv' in written
        assert len(written) == 7, written

    assert len(results['joined_occurrences']) == 12
    assert results['overall_test'].median_x > results['overall_test'].median_y
    assert set(results['lifetime_niches']['genus']) == {
        'Acropora', 'Porites', 'Flabellum', 'Caryophyllia'}
    assert results['provenance']['temperature']['provider'] == 'local'
    assert results['provenance']['occurrences']['version'] == '20240101'
    assert not results['windowed_trend'].empty


# =====================================================================
#  MAIN: run all tests
# =====================================================================

def main():
    """Run all tests and print summary."""
    tests = [
        (name, obj) for name, obj in globals().items()
        if name.startswith('test_') and callable(obj)
    ]
    tests.sort(key=lambda x: x[0])

    passed = 0
    failed = 0
    errors = []

    print("=" * 80)
    print("END-TO-END PIPELINE CHECK")
    print("=" * 80)
    print()

    for name, func in tests:
        try:
            func()
            print(f"  ✓ {name}")
            passed += 1
        except Exception as e:
            print(f"  ✗ {name}: {e}")
            failed += 1
            errors.append((name, str(e)))

    print()
    print("-" * 80)
    print(f"  {passed} passed, {failed} failed, {passed + failed} total")
    if errors:
        print()
        print("FAILURES:")
        for name, msg in errors:
            print(f"  {name}: {msg}")
    print("-" * 80)

    return failed == 0


if __name__ == '__main__':
    success = main()
    sys.exit(0 if success else 1)
