"""Synthetic data generator for a relational e-commerce schema."""

__version__ = "0.1.0"
