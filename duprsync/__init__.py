"""duprsync: DUPR match-result submission pipeline."""

__version__ = "1.0.0"
