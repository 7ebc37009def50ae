"""Talentika progression & rewards engine"""

__version__ = "1.0.0"
