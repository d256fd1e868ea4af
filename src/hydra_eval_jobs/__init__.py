"""Concurrent evaluator for Hydra job trees."""

__version__ = "0.1.0"
