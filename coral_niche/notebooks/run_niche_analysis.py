#!/usr/bin/env python3
"""
Coral Thermal Niche Analysis: End-to-End Run
============================================

Builds the analysis-ready table of (genus, stage, location, temperature,
ecology) for scleractinian corals and summarises the thermal niches of
zooxanthellate (z) and azooxanthellate (az) genera through time.

Pipeline:
  1. Fetch occurrences (PBDB), the genus ecology table and the
     paleotemperature series through the configured provider
  2. Attach ecology tags and clean the records
  3. Bin records into stages and deduplicate collections
  4. Reconstruct collection paleocoordinates (one call per stage)
  5. Match each stage to its nearest temperature layer and sample it
  6. Fan collection values back out to the records
  7. Per-stage and lifetime niches, windowed trend, rank-sum tests

Outputs (CSV, in ``results/tables``):
  joined_occurrences, layer_match, stage_niches, niche_matrix,
  lifetime_niches, windowed_trend, stage_comparison

Run:  python run_niche_analysis.py --provider local --cache-dir data/cache
"""

import argparse
import os
import sys
import warnings
from datetime import datetime
from typing import Callable, Optional

import pandas as pd
import xarray as xr

warnings.filterwarnings("ignore", category=FutureWarning)

# Ensure local imports
sys.path.insert(0, os.path.dirname(__file__))
from niche_config import GROUP_LABELS, load_config
from niche_data_readers import fetch_core_datasets, get_provider
from niche_alignment import (
    assign_stages, attach_ecology, build_collections, clean_records,
    complete_cases, fan_out, match_layers, match_table, sample_series,
)
from niche_reconstruction import reconstruct_collections
from niche_analysis import (
    compare_groups, compare_groups_by_stage, lifetime_niches, niche_matrix,
    stage_niches, windowed_niche_trend,
)

OUT_DIR = os.path.join(os.path.dirname(__file__), "..", "results", "tables")

JOINED_COLUMNS = [
    'genus', 'order', 'ecology_tag', 'collection_id', 'modern_lng',
    'modern_lat', 'age_early', 'age_late', 'stage', 'paleo_lng', 'paleo_lat',
    'raster_age', 'temperature',
]


# =====================================================================
#  1. JOINED TABLE
# =====================================================================

def build_joined_table(
    occurrences: pd.DataFrame,
    traits: pd.DataFrame,
    temperature: xr.DataArray,
    config,
    reconstruct: Optional[Callable] = None,
    policy: str = 'midpoint',
    verbose: bool = True,
) -> dict:
    """Run cleaning, binning, reconstruction and sampling.

    Parameters
    ----------
    occurrences : pd.DataFrame
        Occurrence records (``read_occurrences`` schema).
    traits : pd.DataFrame
        Genus ecology table (``read_traits`` schema).
    temperature : xr.DataArray
        Paleotemperature series with dims (age, lat, lon).
    config : NicheConfig
    reconstruct : callable, optional
        Reconstruction collaborator; defaults to the GPlates Web Service.
    policy : {'midpoint', 'overlap'}
        Stage binning rule.
    verbose : bool

    Returns
    -------
    dict
        'joined' : every cleaned, staged record with paleocoordinates,
                   matched layer and temperature (NaN where unavailable)
        'collections' : collection-level table
        'layer_match' : stage -> matched layer and offset
    """
    occ = attach_ecology(occurrences, traits)
    occ = clean_records(occ, max_age=config.max_age, orders=config.orders,
                        require_ecology=True, verbose=verbose)
    occ = assign_stages(occ, config, policy=policy, verbose=verbose)
    occ = clean_records(occ, verbose=verbose)

    collections = build_collections(occ)
    if verbose:
        print(f"  collections: {len(collections)} "
              f"(from {len(occ)} records, {occ['stage'].nunique()} stages)")

    collections = reconstruct_collections(collections, config,
                                          reconstruct=reconstruct, verbose=verbose)

    layer_for_stage = match_layers(temperature, config.mid_ages)
    collections['raster_age'] = collections['stage'].map(
        lambda s: layer_for_stage.get(int(s)))
    collections['temperature'] = sample_series(temperature, collections)

    joined = fan_out(occ, collections, ['paleo_lng', 'paleo_lat',
                                        'raster_age', 'temperature'])
    extra = [c for c in joined.columns if c not in JOINED_COLUMNS]
    joined = joined[JOINED_COLUMNS + extra]

    if verbose:
        n_temp = int(joined['temperature'].notna().sum())
        print(f"  joined table: {len(joined)} records, {n_temp} with temperature")

    return {
        'joined': joined,
        'collections': collections,
        'layer_match': match_table(temperature, config),
    }


# =====================================================================
#  2. NICHE SUMMARIES
# =====================================================================

def summarize_niches(joined: pd.DataFrame, statistic: str = 'mean',
                     alpha: float = 0.05, verbose: bool = True) -> dict:
    """Per-stage, lifetime and windowed niches plus z/az comparisons.

    Returns
    -------
    dict
        'stage_niches', 'niche_matrix', 'lifetime_niches',
        'windowed_trend', 'stage_comparison' (DataFrames) and
        'overall_test', 'lifetime_test' (RankSumResult)
    """
    complete = complete_cases(joined, ['temperature'], verbose=verbose)

    niches = stage_niches(complete)
    lifetime = lifetime_niches(joined)
    trend = windowed_niche_trend(lifetime, statistic=statistic)
    by_stage = compare_groups_by_stage(complete, alpha=alpha)

    # ValueError if either group is empty
    overall = compare_groups(complete)
    lifetime_test = compare_groups(lifetime, value_col='median_temperature')

    if verbose:
        print()
        print("-" * 70)
        print("NICHE SUMMARY")
        print("-" * 70)
        for tag, label in GROUP_LABELS.items():
            sub = lifetime[lifetime['ecology_tag'] == tag]
            print(f"  {label:16s}: {len(sub):4d} genera, lifetime median "
                  f"{sub['median_temperature'].median():6.2f} °C")
        print(f"  occurrences z vs az: {overall}")
        print(f"  lifetime    z vs az: {lifetime_test}")
        n_sig = int(by_stage['reject'].sum())
        n_tested = int(by_stage['p_value'].notna().sum())
        print(f"  stages differing (BH, alpha={alpha}): {n_sig} of {n_tested} tested")

    return {
        'stage_niches': niches,
        'niche_matrix': niche_matrix(niches),
        'lifetime_niches': lifetime,
        'windowed_trend': trend,
        'stage_comparison': by_stage,
        'overall_test': overall,
        'lifetime_test': lifetime_test,
    }


# =====================================================================
#  3. MAIN ANALYSIS
# =====================================================================

def write_tables(results: dict, out_dir: str = OUT_DIR, verbose: bool = True) -> list:
    """Write every DataFrame in ``results`` to ``<out_dir>/<key>.csv``."""
    os.makedirs(out_dir, exist_ok=True)
    written = []
    for key, value in results.items():
        if not isinstance(value, pd.DataFrame):
            continue
        path = os.path.join(out_dir, f"{key}.csv")
        index = key in ('niche_matrix', 'layer_match', 'stage_comparison')
        value.to_csv(path, index=index)
        written.append(path)
        if verbose:
            print(f"Saved: {path}")
    return written


def run_analysis(config=None, reconstruct=None, policy='midpoint',
                 statistic='mean', alpha=0.05, out_dir=None, verbose=True):
    """Run the complete coral thermal niche analysis.

    Parameters
    ----------
    config : NicheConfig, optional
        Defaults to ``load_config()``.
    reconstruct : callable, optional
        Reconstruction collaborator (default: GPlates Web Service).
    policy : {'midpoint', 'overlap'}
        Stage binning rule.
    statistic : {'mean', 'median'}
        Windowed-trend statistic.
    alpha : float
        Significance level for the per-stage tests.
    out_dir : str, optional
        If given, write the result tables there as CSV.
    verbose : bool

    Returns
    -------
    dict with the joined table, layer match and all niche summaries
    """
    if config is None:
        config = load_config()

    if verbose:
        print("=" * 70)
        print("CORAL THERMAL NICHE ANALYSIS")
        print(f"  Date: {datetime.now().strftime('%Y-%m-%d %H:%M')}")
        print(f"  Provider: {config.provider} ({config.cache_dir})")
        print(f"  Rotation model: {config.rotation_model.name}")
        print(f"  Orders: {', '.join(config.orders)}; max age {config.max_age} Ma")
        print("=" * 70)
        print("\nDatasets:")

    provider = get_provider(config, verbose=verbose)
    data = fetch_core_datasets(provider, config)

    if verbose:
        print("\nAlignment:")
    joined = build_joined_table(data['occurrences'], data['traits'],
                                data['temperature'], config,
                                reconstruct=reconstruct, policy=policy,
                                verbose=verbose)
    summary = summarize_niches(joined['joined'], statistic=statistic,
                               alpha=alpha, verbose=verbose)

    results = {
        'joined_occurrences': joined['joined'],
        'layer_match': joined['layer_match'],
        **summary,
        'provenance': {key: dict(obj.attrs) for key, obj in data.items()},
    }
    if out_dir is not None:
        if verbose:
            print()
        write_tables(results, out_dir=out_dir, verbose=verbose)
    return results


def main():
    parser = argparse.ArgumentParser(description="Coral thermal niche analysis")
    parser.add_argument("--cache-dir", default=None,
                        help="Local dataset cache (default: $NICHE_CACHE_DIR)")
    parser.add_argument("--provider", choices=["local", "network"], default=None,
                        help="Dataset provider (default: $NICHE_PROVIDER or local)")
    parser.add_argument("--max-age", type=float, default=None,
                        help="Oldest record age to keep, in Ma")
    parser.add_argument("--policy", choices=["midpoint", "overlap"],
                        default="midpoint", help="Stage binning rule")
    parser.add_argument("--statistic", choices=["mean", "median"], default="mean",
                        help="Windowed-trend statistic")
    parser.add_argument("--out-dir", default=OUT_DIR,
                        help="Directory for the CSV tables")
    args = parser.parse_args()

    overrides = {}
    if args.max_age is not None:
        overrides['max_age'] = args.max_age
    config = load_config(cache_dir=args.cache_dir, provider=args.provider,
                         **overrides)
    run_analysis(config, policy=args.policy, statistic=args.statistic,
                 out_dir=args.out_dir)


# =====================================================================
if __name__ == "__main__":
    main()
