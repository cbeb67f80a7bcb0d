#!/usr/bin/env python3
"""
Verification suite for paleocoordinate reconstruction.

  1. One collaborator call per stage, at the stage midpoint.
  2. A failing call leaves NaN for that stage only and warns.
  3. The GPlates client maps service nulls and out-of-model ages to NaN.

Run:  python test_reconstruction.py          (stand-alone)
      pytest test_reconstruction.py -v       (with pytest)
"""

import sys, os, warnings
from unittest import mock

import numpy as np
import pandas as pd
import requests

warnings.filterwarnings('ignore', category=FutureWarning)

sys.path.insert(0, os.path.dirname(__file__))
import niche_reconstruction
from niche_config import RotationModel, load_config
from niche_reconstruction import (
    gplates_reconstruct, reconstruct_collections, reconstruct_points,
)

CONFIG = load_config(cache_dir=os.path.dirname(__file__), provider='local')


# =====================================================================
#  HELPERS
# =====================================================================

class FakeReconstructor:
    """Shifts points by (+1, -1) degrees and records each call."""

    def __init__(self, fail_ages=()):
        self.calls = []
        self.fail_ages = set(fail_ages)

    def __call__(self, points, age, model):
        self.calls.append((age, len(points)))
        if age in self.fail_ages:
            raise requests.ConnectionError(f"service down at {age}")
        return np.asarray(points) + np.array([1.0, -1.0])


def make_collections():
    return pd.DataFrame({
        'collection_id': [1, 2, 3, 4],
        'modern_lng': [10.0, 20.0, 30.0, 40.0],
        'modern_lat': [0.0, 5.0, -5.0, 10.0],
        'stage': pd.array([78, 78, 90, 95], dtype='Int64'),
    })


# =====================================================================
#  TEST 1: Batched calls
# =====================================================================

def test_one_call_per_stage():
    fake = FakeReconstructor()
    out = reconstruct_collections(make_collections(), CONFIG,
                                  reconstruct=fake, verbose=False)

    ages = sorted(age for age, _ in fake.calls)
    expected = sorted(CONFIG.stage(i).mid_age for i in (78, 90, 95))
    assert ages == expected, f"{ages} vs {expected}"
    assert dict((age, n) for age, n in fake.calls)[CONFIG.stage(78).mid_age] == 2

    assert list(out['paleo_lng']) == [11.0, 21.0, 31.0, 41.0]
    assert list(out['paleo_lat']) == [-1.0, 4.0, -6.0, 9.0]
    assert 'paleo_lng' not in make_collections().columns


def test_failed_stage_is_nan_and_warns():
    bad_age = CONFIG.stage(90).mid_age
    fake = FakeReconstructor(fail_ages=[bad_age])

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        out = reconstruct_collections(make_collections(), CONFIG,
                                      reconstruct=fake, verbose=False)

    assert np.isnan(out.loc[2, 'paleo_lng']) and np.isnan(out.loc[2, 'paleo_lat'])
    assert out[['paleo_lng', 'paleo_lat']].drop(index=2).notna().all().all()
    assert len(fake.calls) == 3, "the batch continues after a failure"
    assert any(issubclass(w.category, RuntimeWarning) and 'service down' in str(w.message)
               for w in caught)


def test_unexpected_error_only_fails_its_age():
    def flaky(points, age, model):
        if age == 20.0:
            raise RuntimeError("rotation file corrupt")
        return np.asarray(points) + np.array([1.0, -1.0])

    points = pd.DataFrame({'modern_lng': [10.0, 20.0, 30.0],
                           'modern_lat': [0.0, 5.0, -5.0]})
    ages = pd.Series([10.0, 20.0, 10.0])

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        out = reconstruct_points(points, ages, CONFIG.rotation_model, flaky,
                                 verbose=False)

    assert list(out.loc[[0, 2], 'paleo_lng']) == [11.0, 31.0]
    assert list(out.loc[[0, 2], 'paleo_lat']) == [-1.0, -6.0]
    assert out.loc[1, ['paleo_lng', 'paleo_lat']].isna().all()
    assert any(issubclass(w.category, RuntimeWarning)
               and 'rotation file corrupt' in str(w.message) for w in caught)


def test_wrong_shape_is_nan():
    def short(points, age, model):
        return np.asarray(points)[:1]

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        out = reconstruct_collections(make_collections(), CONFIG,
                                      reconstruct=short, verbose=False)

    # stage 78 has two collections; the others have one each
    assert out.loc[[0, 1], 'paleo_lng'].isna().all()
    assert out.loc[[2, 3], 'paleo_lng'].notna().all()
    assert len(caught) >= 1


def test_unstaged_collections_are_skipped():
    coll = make_collections()
    coll.loc[3, 'stage'] = pd.NA
    fake = FakeReconstructor()
    out = reconstruct_collections(coll, CONFIG, reconstruct=fake, verbose=False)
    assert len(fake.calls) == 2
    assert np.isnan(out.loc[3, 'paleo_lat'])


# =====================================================================
#  TEST 2: GPlates client
# =====================================================================

def test_gplates_age_outside_model():
    model = RotationModel(name='MULLER2019', min_age=0.0, max_age=250.0)
    with mock.patch.object(niche_reconstruction.requests, 'post') as post:
        out = gplates_reconstruct([[10.0, 0.0]], 300.0, model)
    assert not post.called
    assert out.shape == (1, 2) and np.isnan(out).all()


def test_gplates_nulls_and_invalid_points():
    response = mock.Mock()
    response.json.return_value = {
        'type': 'MultiPoint',
        'coordinates': [[5.5, -2.0], None],
    }
    points = [[10.0, 0.0], [np.nan, 5.0], [170.0, 60.0]]
    with mock.patch.object(niche_reconstruction.requests, 'post',
                           return_value=response) as post:
        out = gplates_reconstruct(points, 66.0, RotationModel(), timeout=5)

    sent = post.call_args[1]['data']
    assert sent['points'] == '10.0000,0.0000,170.0000,60.0000'
    assert sent['time'] == '66'
    assert sent['model'] == 'PALEOMAP'
    assert post.call_args[0][0].endswith('/reconstruct/reconstruct_points/')
    assert post.call_args[1]['timeout'] == 5

    assert list(out[0]) == [5.5, -2.0]
    assert np.isnan(out[1]).all(), "invalid input point"
    assert np.isnan(out[2]).all(), "service returned null"


def test_gplates_count_mismatch_raises():
    response = mock.Mock()
    response.json.return_value = {'coordinates': [[1.0, 1.0]]}
    with mock.patch.object(niche_reconstruction.requests, 'post',
                           return_value=response):
        try:
            gplates_reconstruct([[0.0, 0.0], [1.0, 1.0]], 10.0, RotationModel())
            assert False, "Should have raised ValueError"
        except ValueError:
            pass


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
    print("RECONSTRUCTION VERIFICATION SUITE")
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
