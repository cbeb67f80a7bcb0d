"""
Coral Niche Analysis Module
===========================

Summary statistics of thermal niches from the joined occurrence table:

1. **Per-stage niches**: median temperature per (genus, stage)
2. **Lifetime niches**: first/last occupied stage (FAD/LAD) and one median
   over each genus's whole record
3. **Windowed trend**: per stage and ecological group, the mean (or
   median) lifetime niche of all genera ranging through the stage
4. **Group comparison**: Wilcoxon rank-sum tests between zooxanthellate
   (``z``) and azooxanthellate (``az``) samples, overall and per stage,
   with Benjamini-Hochberg adjustment across stages

Stage indices increase toward the present, so the first occupied stage is
the smallest index.

Dependencies
------------
- numpy
- pandas
- scipy (rank-sum test)
- statsmodels (multiple-testing adjustment)

References
----------
Mann, H. B., & Whitney, D. R. (1947). On a test of whether one of two
    random variables is stochastically larger than the other. Annals of
    Mathematical Statistics, 18(1), 50-60.

Benjamini, Y., & Hochberg, Y. (1995). Controlling the false discovery
    rate. JRSS B, 57(1), 289-300.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from niche_config import ECOLOGY_GROUPS


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass
class RankSumResult:
    """
    Two-sample Wilcoxon rank-sum (Mann-Whitney U) test result.

    Attributes
    ----------
    statistic : float
        U statistic of the first sample.
    p_value : float
        p-value for the chosen alternative.
    n_x, n_y : int
        Sample sizes after dropping NaN.
    median_x, median_y : float
        Sample medians.
    alternative : str
        'two-sided', 'less' or 'greater'.
    """
    statistic: float
    p_value: float
    n_x: int
    n_y: int
    median_x: float
    median_y: float
    alternative: str = 'two-sided'

    def rejects(self, alpha: float = 0.05) -> bool:
        return self.p_value < alpha

    def __repr__(self) -> str:
        return (
            f"RankSumResult(U={self.statistic:.1f}, p={self.p_value:.4g}, "
            f"n=({self.n_x}, {self.n_y}), "
            f"medians=({self.median_x:.2f}, {self.median_y:.2f}), "
            f"{self.alternative})"
        )


# =============================================================================
# SECTION 1: NICHE TABLES
# =============================================================================

def stage_niches(joined: pd.DataFrame, value_col: str = 'temperature') -> pd.DataFrame:
    """
    Median of ``value_col`` for every (genus, stage) with at least one value.

    Returns
    -------
    pd.DataFrame
        Columns ``genus, stage, ecology_tag, median_temperature,
        n_occurrences`` (``ecology_tag`` only if present in ``joined``).
        Genus/stage pairs without any value are absent.
    """
    sampled = joined.dropna(subset=[value_col, 'stage'])
    agg = {'median_temperature': (value_col, 'median'),
           'n_occurrences': (value_col, 'size')}
    if 'ecology_tag' in sampled.columns:
        agg['ecology_tag'] = ('ecology_tag', 'first')

    out = sampled.groupby(['genus', 'stage'], sort=True).agg(**agg).reset_index()
    out['stage'] = out['stage'].astype('int64')
    cols = ['genus', 'stage'] + (['ecology_tag'] if 'ecology_tag' in out else []) \
        + ['median_temperature', 'n_occurrences']
    return out[cols]


def niche_matrix(niches: pd.DataFrame) -> pd.DataFrame:
    """Pivot per-stage niches into a sparse genus x stage table (NaN = unsampled)."""
    return niches.pivot(index='genus', columns='stage', values='median_temperature')


def lifetime_niches(joined: pd.DataFrame, value_col: str = 'temperature') -> pd.DataFrame:
    """
    First/last occupied stage and lifetime median per genus.

    The stage range uses every staged occurrence, sampled or not; the
    median uses only non-null values. Genera with no values get NaN.

    Returns
    -------
    pd.DataFrame
        Columns ``genus, ecology_tag, first_stage, last_stage,
        median_temperature, n_occurrences``, one row per genus.
    """
    staged = joined.dropna(subset=['stage'])
    grouped = staged.groupby('genus', sort=True)

    out = pd.DataFrame({
        'first_stage': grouped['stage'].min().astype('int64'),
        'last_stage': grouped['stage'].max().astype('int64'),
        'median_temperature': grouped[value_col].median(),
        'n_occurrences': grouped[value_col].count(),
    })
    if 'ecology_tag' in staged.columns:
        out.insert(0, 'ecology_tag', grouped['ecology_tag'].first())
    return out.reset_index()


def windowed_niche_trend(
    lifetime: pd.DataFrame,
    stages: Optional[Iterable[int]] = None,
    statistic: str = 'mean',
    group_col: Optional[str] = 'ecology_tag',
) -> pd.DataFrame:
    """
    Representative niche per stage from genera ranging through it.

    A genus contributes its lifetime median to every stage in
    ``[first_stage, last_stage]``; a single-stage genus contributes to
    exactly one stage.

    Parameters
    ----------
    lifetime : pd.DataFrame
        Output of ``lifetime_niches``.
    stages : iterable of int, optional
        Stages to evaluate. Defaults to every stage between the oldest
        first and the youngest last occurrence.
    statistic : {'mean', 'median'}
    group_col : str or None
        Column splitting the genera into groups; None pools them all.

    Returns
    -------
    pd.DataFrame
        Long format: ``stage, group, value, n_genera``. Stages with no
        ranging genus in a group are omitted for that group.
    """
    if statistic not in ('mean', 'median'):
        raise ValueError(f"Unknown statistic '{statistic}'. Use 'mean' or 'median'.")

    valid = lifetime.dropna(subset=['median_temperature'])
    if stages is None:
        if valid.empty:
            stages = []
        else:
            stages = range(int(valid['first_stage'].min()),
                           int(valid['last_stage'].max()) + 1)

    if group_col is None or group_col not in valid.columns:
        groups = {'all': valid}
    else:
        groups = {g: sub for g, sub in valid.groupby(group_col, sort=True)}

    rows = []
    for stage in stages:
        for name, sub in groups.items():
            ranging = sub.loc[(sub['first_stage'] <= stage) & (sub['last_stage'] >= stage),
                              'median_temperature']
            if ranging.empty:
                continue
            value = ranging.mean() if statistic == 'mean' else ranging.median()
            rows.append({'stage': int(stage), 'group': name,
                         'value': float(value), 'n_genera': int(ranging.size)})

    return pd.DataFrame(rows, columns=['stage', 'group', 'value', 'n_genera'])


# =============================================================================
# SECTION 2: GROUP COMPARISON
# =============================================================================

def rank_sum_test(x, y, alternative: str = 'two-sided') -> RankSumResult:
    """
    Wilcoxon rank-sum (Mann-Whitney U) test of two samples.

    Raises
    ------
    ValueError
        If either sample is empty after dropping NaN, or if all pooled
        values are identical (the test carries no information).
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    x = x[~np.isnan(x)]
    y = y[~np.isnan(y)]

    if x.size == 0 or y.size == 0:
        raise ValueError(
            f"Rank-sum test needs two non-empty samples (got n={x.size} and n={y.size})"
        )
    pooled = np.concatenate([x, y])
    if np.all(pooled == pooled[0]):
        raise ValueError("Rank-sum test is undefined: all values are identical")

    res = stats.mannwhitneyu(x, y, alternative=alternative)
    return RankSumResult(
        statistic=float(res.statistic),
        p_value=float(res.pvalue),
        n_x=int(x.size),
        n_y=int(y.size),
        median_x=float(np.median(x)),
        median_y=float(np.median(y)),
        alternative=alternative,
    )


def compare_groups(
    table: pd.DataFrame,
    value_col: str = 'temperature',
    group_col: str = 'ecology_tag',
    groups: Sequence[str] = ECOLOGY_GROUPS,
    alternative: str = 'two-sided',
) -> RankSumResult:
    """
    Rank-sum test of ``value_col`` between two groups of a table.

    Works on the joined occurrence table (``value_col='temperature'``) or
    on lifetime niches (``value_col='median_temperature'``).
    """
    first, second = groups
    x = table.loc[table[group_col] == first, value_col]
    y = table.loc[table[group_col] == second, value_col]
    return rank_sum_test(x, y, alternative=alternative)


def compare_groups_by_stage(
    joined: pd.DataFrame,
    value_col: str = 'temperature',
    group_col: str = 'ecology_tag',
    groups: Sequence[str] = ECOLOGY_GROUPS,
    alpha: float = 0.05,
) -> pd.DataFrame:
    """
    Per-stage rank-sum tests with Benjamini-Hochberg adjustment.

    Stages where a group has no values, or where all values are equal,
    are reported with NaN statistics and left out of the adjustment.

    Returns
    -------
    pd.DataFrame
        Indexed by stage: ``n_<g1>, n_<g2>, median_<g1>, median_<g2>,
        statistic, p_value, p_adjusted, reject``.
    """
    first, second = groups
    rows = []
    for stage, sub in joined.dropna(subset=['stage']).groupby('stage', sort=True):
        x = sub.loc[sub[group_col] == first, value_col].dropna()
        y = sub.loc[sub[group_col] == second, value_col].dropna()
        row = {
            'stage': int(stage),
            f'n_{first}': int(x.size), f'n_{second}': int(y.size),
            f'median_{first}': x.median() if x.size else np.nan,
            f'median_{second}': y.median() if y.size else np.nan,
            'statistic': np.nan, 'p_value': np.nan,
        }
        try:
            res = rank_sum_test(x, y)
        except ValueError:
            rows.append(row)
            continue
        row['statistic'] = res.statistic
        row['p_value'] = res.p_value
        rows.append(row)

    out = pd.DataFrame(rows).set_index('stage') if rows else pd.DataFrame(
        columns=[f'n_{first}', f'n_{second}', f'median_{first}', f'median_{second}',
                 'statistic', 'p_value'])
    out['p_adjusted'] = np.nan
    out['reject'] = False

    tested = out['p_value'].notna()
    if tested.any():
        reject, p_adj, _, _ = multipletests(out.loc[tested, 'p_value'].values,
                                            alpha=alpha, method='fdr_bh')
        out.loc[tested, 'p_adjusted'] = p_adj
        out.loc[tested, 'reject'] = reject
    out['reject'] = out['reject'].astype(bool)
    return out
