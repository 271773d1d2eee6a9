"""Robust registration of 3-D point correspondences and k-d tree nearest-neighbour search."""

__version__ = "0.1.0"