"""betadiv: beta-diversity statistics for community-composition data.

Ordination (PCA, PCoA, NMDS), within/between group distances, PERMANOVA
and PERMDISP over a sample-by-sample distance matrix.
"""

__version__ = "0.3.0"
