"""
PQI / SDI spatial analysis

Merges hospital Prevention Quality Indicator rates with Social Deprivation
Index scores per ZCTA, fills gaps with an auditable fallback chain, and
measures spatial dependence with Moran's I, Getis-Ord Gi* and spatial lag
regression.

Core modules:
    - merge: Key normalization and keyed joins with unmatched reporting
    - gap_fill: Group-wise imputation with provenance
    - weights: Contiguity / k-nearest-neighbor spatial weights
    - autocorrelation: Global and local Moran's I, Getis-Ord Gi*
    - regression: OLS and spatial lag models
    - pipeline: Stage orchestration without I/O

Support modules:
    - paths, logging_utils, io_utils, hashing, schemas, qa, cli
"""

__version__ = "0.1.0"
__author__ = "PQI Spatial Analysis Team"
