"""Shipyard -- build/deploy orchestration for frontend + backend web apps."""

__version__ = "0.1.0"
