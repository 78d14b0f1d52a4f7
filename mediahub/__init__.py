"""MediaHub: one control surface for media playing across browser tabs and frames."""

__version__ = "0.4.0"
