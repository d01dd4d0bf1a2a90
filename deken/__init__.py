"""deken-core — package registry and install pipeline for plugdata libraries."""

__version__ = "0.1.0"
