"""Competitive-practice scheduling engine: timed challenges and tournaments."""

__version__ = "0.1.0"
