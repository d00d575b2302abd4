"""chartfork - maintain forked Helm charts as an upstream plus replayable changes."""

__version__ = "0.1.0"
