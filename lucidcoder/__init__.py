"""Lucid Coder: branch workflow and goal automation for local projects."""

__version__ = "0.4.0"
__codename__ = "LUCID CODER"
__tagline__ = "Stage it. Prove it. Merge it."
