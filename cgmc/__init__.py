"""Coarse-grained Monte Carlo: potentials, CBMC grand-canonical sampling and virial pressure."""

__version__ = "0.1.0"
