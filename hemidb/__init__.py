"""Storage of L2 keystones, Bitcoin blocks, PoP data and access keys, with finality queries."""

__version__ = "0.1.0"