"""
Coral Niche Configuration
=========================

Fixed reference tables and run configuration for the coral thermal niche
pipeline.

Reference tables (the ICS stage list, group colours, service endpoints)
are defined once at module level and bundled into an immutable
``NicheConfig`` that is passed explicitly to every pipeline step.

Stage table
-----------
Stages follow the International Chronostratigraphic Chart (v2020/12),
ordered oldest first and indexed from 1. Each stage covers the half-open
interval ``[top_age, bottom_age)`` in Ma. Cambrian and Ordovician stages
are listed for completeness but lie beyond ``OLDEST_SUPPORTED_AGE``; ages
that old are not binned.

Example
-------
>>> from niche_config import load_config
>>> config = load_config(cache_dir='data/cache', provider='local')
>>> config.stage('Norian').mid_age
217.75
"""
import os
from dataclasses import asdict, dataclass, field, replace
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

import pandas as pd


# =============================================================================
# REFERENCE TABLES
# =============================================================================

# (name, system, bottom_age [Ma]); the top of each stage is the bottom of
# the next younger one, and the youngest stage tops out at 0 Ma.
_ICS_STAGES = [
    ('Fortunian', 'Cambrian', 541.0),
    ('Stage 2', 'Cambrian', 529.0),
    ('Stage 3', 'Cambrian', 521.0),
    ('Stage 4', 'Cambrian', 514.0),
    ('Wuliuan', 'Cambrian', 509.0),
    ('Drumian', 'Cambrian', 504.5),
    ('Guzhangian', 'Cambrian', 500.5),
    ('Paibian', 'Cambrian', 497.0),
    ('Jiangshanian', 'Cambrian', 494.0),
    ('Stage 10', 'Cambrian', 489.5),
    ('Tremadocian', 'Ordovician', 485.4),
    ('Floian', 'Ordovician', 477.7),
    ('Dapingian', 'Ordovician', 470.0),
    ('Darriwilian', 'Ordovician', 467.3),
    ('Sandbian', 'Ordovician', 458.4),
    ('Katian', 'Ordovician', 453.0),
    ('Hirnantian', 'Ordovician', 445.2),
    ('Rhuddanian', 'Silurian', 443.8),
    ('Aeronian', 'Silurian', 440.8),
    ('Telychian', 'Silurian', 438.5),
    ('Sheinwoodian', 'Silurian', 433.4),
    ('Homerian', 'Silurian', 430.5),
    ('Gorstian', 'Silurian', 427.4),
    ('Ludfordian', 'Silurian', 425.6),
    ('Pridoli', 'Silurian', 423.0),
    ('Lochkovian', 'Devonian', 419.2),
    ('Pragian', 'Devonian', 410.8),
    ('Emsian', 'Devonian', 407.6),
    ('Eifelian', 'Devonian', 393.3),
    ('Givetian', 'Devonian', 387.7),
    ('Frasnian', 'Devonian', 382.7),
    ('Famennian', 'Devonian', 372.2),
    ('Tournaisian', 'Carboniferous', 358.9),
    ('Visean', 'Carboniferous', 346.7),
    ('Serpukhovian', 'Carboniferous', 330.9),
    ('Bashkirian', 'Carboniferous', 323.2),
    ('Moscovian', 'Carboniferous', 315.2),
    ('Kasimovian', 'Carboniferous', 307.0),
    ('Gzhelian', 'Carboniferous', 303.7),
    ('Asselian', 'Permian', 298.9),
    ('Sakmarian', 'Permian', 293.52),
    ('Artinskian', 'Permian', 290.1),
    ('Kungurian', 'Permian', 283.5),
    ('Roadian', 'Permian', 273.01),
    ('Wordian', 'Permian', 266.9),
    ('Capitanian', 'Permian', 264.28),
    ('Wuchiapingian', 'Permian', 259.51),
    ('Changhsingian', 'Permian', 254.14),
    ('Induan', 'Triassic', 251.902),
    ('Olenekian', 'Triassic', 251.2),
    ('Anisian', 'Triassic', 247.2),
    ('Ladinian', 'Triassic', 242.0),
    ('Carnian', 'Triassic', 237.0),
    ('Norian', 'Triassic', 227.0),
    ('Rhaetian', 'Triassic', 208.5),
    ('Hettangian', 'Jurassic', 201.3),
    ('Sinemurian', 'Jurassic', 199.3),
    ('Pliensbachian', 'Jurassic', 190.8),
    ('Toarcian', 'Jurassic', 182.7),
    ('Aalenian', 'Jurassic', 174.1),
    ('Bajocian', 'Jurassic', 170.3),
    ('Bathonian', 'Jurassic', 168.3),
    ('Callovian', 'Jurassic', 166.1),
    ('Oxfordian', 'Jurassic', 163.5),
    ('Kimmeridgian', 'Jurassic', 157.3),
    ('Tithonian', 'Jurassic', 152.1),
    ('Berriasian', 'Cretaceous', 145.0),
    ('Valanginian', 'Cretaceous', 139.8),
    ('Hauterivian', 'Cretaceous', 132.9),
    ('Barremian', 'Cretaceous', 129.4),
    ('Aptian', 'Cretaceous', 125.0),
    ('Albian', 'Cretaceous', 113.0),
    ('Cenomanian', 'Cretaceous', 100.5),
    ('Turonian', 'Cretaceous', 93.9),
    ('Coniacian', 'Cretaceous', 89.8),
    ('Santonian', 'Cretaceous', 86.3),
    ('Campanian', 'Cretaceous', 83.6),
    ('Maastrichtian', 'Cretaceous', 72.1),
    ('Danian', 'Paleogene', 66.0),
    ('Selandian', 'Paleogene', 61.6),
    ('Thanetian', 'Paleogene', 59.2),
    ('Ypresian', 'Paleogene', 56.0),
    ('Lutetian', 'Paleogene', 47.8),
    ('Bartonian', 'Paleogene', 41.2),
    ('Priabonian', 'Paleogene', 37.71),
    ('Rupelian', 'Paleogene', 33.9),
    ('Chattian', 'Paleogene', 27.82),
    ('Aquitanian', 'Neogene', 23.03),
    ('Burdigalian', 'Neogene', 20.44),
    ('Langhian', 'Neogene', 15.97),
    ('Serravallian', 'Neogene', 13.82),
    ('Tortonian', 'Neogene', 11.63),
    ('Messinian', 'Neogene', 7.246),
    ('Zanclean', 'Neogene', 5.333),
    ('Piacenzian', 'Neogene', 3.6),
    ('Gelasian', 'Quaternary', 2.58),
    ('Calabrian', 'Quaternary', 1.8),
    ('Chibanian', 'Quaternary', 0.774),
    ('Upper Pleistocene', 'Quaternary', 0.129),
    ('Holocene', 'Quaternary', 0.0117),
]

# Base of the Silurian. Older ages need dedicated Cambrian/Ordovician
# binning schemes and are left unassigned.
OLDEST_SUPPORTED_AGE = 443.8

# Default study window: post-Triassic-base corals
DEFAULT_MAX_AGE = 251.902
DEFAULT_ORDERS = ('Scleractinia',)

# Ecological groups (photosymbiotic / non-photosymbiotic)
ECOLOGY_GROUPS = ('z', 'az')
GROUP_LABELS = {'z': 'zooxanthellate', 'az': 'azooxanthellate'}

# External services
PBDB_URL = 'https://paleobiodb.org/data1.2'
GPLATES_URL = 'https://gws.gplates.org'
DATASET_URL = 'https://github.com/chronosphere-portal/chrono_arch/raw/main'
DEFAULT_TIMEOUT = 120

# Core dataset keys: (dataset, variable, version, resolution)
DEFAULT_DATASETS = {
    'occurrences': ('pbdb', 'occurrences', '20240101', 'genus'),
    'traits': ('coraltraits', 'ecology', 'v1', 'genus'),
    'temperature': ('paleomap', 'sst', 'v20210629', '1deg'),
}

CACHE_ENV_VAR = 'NICHE_CACHE_DIR'
PROVIDER_ENV_VAR = 'NICHE_PROVIDER'


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class Stage:
    """
    One chronostratigraphic stage.

    Attributes
    ----------
    index : int
        1-based position in the reference table (oldest first).
    name : str
        ICS stage name.
    system : str
        Parent system (period).
    top_age, bottom_age : float
        Younger and older boundary in Ma. The stage covers
        ``[top_age, bottom_age)``.
    mid_age : float
        Midpoint of the stage in Ma.
    """
    index: int
    name: str
    system: str
    top_age: float
    bottom_age: float
    mid_age: float

    def contains(self, age: float) -> bool:
        return self.top_age <= age < self.bottom_age


@dataclass(frozen=True)
class RotationModel:
    """Handle for a plate rotation model served by the reconstruction service."""
    name: str = 'PALEOMAP'
    url: str = GPLATES_URL
    min_age: float = 0.0
    max_age: float = 750.0


@dataclass(frozen=True)
class NicheConfig:
    """
    Immutable run configuration.

    Built once by ``load_config`` and handed to each pipeline step; no
    pipeline function reads module globals for these values.
    """
    stages: Tuple[Stage, ...]
    cache_dir: str
    provider: str = 'local'
    max_age: float = DEFAULT_MAX_AGE
    oldest_supported_age: float = OLDEST_SUPPORTED_AGE
    orders: Tuple[str, ...] = DEFAULT_ORDERS
    rotation_model: RotationModel = field(default_factory=RotationModel)
    datasets: Mapping[str, Tuple[str, str, str, str]] = field(
        default_factory=lambda: DEFAULT_DATASETS, hash=False)
    dataset_url: str = DATASET_URL
    pbdb_url: str = PBDB_URL
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self):
        # read-only view over a private copy
        datasets = MappingProxyType({key: tuple(value)
                                     for key, value in self.datasets.items()})
        object.__setattr__(self, 'datasets', datasets)

    def stage(self, key) -> Stage:
        """Look up a stage by 1-based index or by name."""
        if isinstance(key, str):
            for s in self.stages:
                if s.name == key:
                    return s
            raise KeyError(f"Unknown stage name: {key!r}")
        idx = int(key)
        if idx < 1 or idx > len(self.stages):
            raise KeyError(f"Stage index out of range: {idx}")
        return self.stages[idx - 1]

    @property
    def mid_ages(self) -> pd.Series:
        """Stage midpoints indexed by stage index."""
        return pd.Series(
            [s.mid_age for s in self.stages],
            index=pd.Index([s.index for s in self.stages], name='stage'),
            name='mid_age',
        )

    def stage_table(self) -> pd.DataFrame:
        """Reference table as a DataFrame indexed by stage index."""
        df = pd.DataFrame([asdict(s) for s in self.stages])
        return df.set_index('index').rename_axis('stage')


# =============================================================================
# CONSTRUCTION
# =============================================================================

def build_stage_table(entries=None) -> Tuple[Stage, ...]:
    """
    Build the ordered stage tuple from ``(name, system, bottom_age)`` rows.

    Parameters
    ----------
    entries : list of tuple, optional
        Rows ordered oldest first. Defaults to the ICS table above.

    Returns
    -------
    tuple of Stage

    Raises
    ------
    ValueError
        If bottom ages are not strictly decreasing.
    """
    if entries is None:
        entries = _ICS_STAGES
    bottoms = [float(e[2]) for e in entries]
    if any(b <= nxt for b, nxt in zip(bottoms, bottoms[1:])):
        raise ValueError("Stage bottom ages must decrease strictly (oldest first)")

    tops = bottoms[1:] + [0.0]
    return tuple(
        Stage(index=i + 1, name=name, system=system,
              top_age=top, bottom_age=bottom, mid_age=(top + bottom) / 2.0)
        for i, ((name, system, bottom), top) in enumerate(zip(entries, tops))
    )


STAGES = build_stage_table()


def load_config(cache_dir: Optional[str] = None,
                provider: Optional[str] = None,
                **overrides) -> NicheConfig:
    """
    Assemble the run configuration.

    Parameters
    ----------
    cache_dir : str, optional
        Local dataset cache. Falls back to ``$NICHE_CACHE_DIR`` and then
        to ``coral_niche/data/cache`` next to this module.
    provider : str, optional
        ``'local'`` (cache only) or ``'network'``. Falls back to
        ``$NICHE_PROVIDER`` and then to ``'local'``.
    **overrides
        Any other ``NicheConfig`` field.

    Returns
    -------
    NicheConfig
    """
    if cache_dir is None:
        cache_dir = os.environ.get(
            CACHE_ENV_VAR,
            os.path.join(os.path.dirname(__file__), '..', 'data', 'cache'),
        )
    if provider is None:
        provider = os.environ.get(PROVIDER_ENV_VAR, 'local')
    if provider not in ('local', 'network'):
        raise ValueError(f"Unknown provider '{provider}'. Use 'local' or 'network'.")

    config = NicheConfig(stages=overrides.pop('stages', STAGES),
                         cache_dir=os.path.abspath(cache_dir),
                         provider=provider)
    if 'orders' in overrides and overrides['orders'] is not None:
        overrides['orders'] = tuple(overrides['orders'])
    return replace(config, **overrides)
