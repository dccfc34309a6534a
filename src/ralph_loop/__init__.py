"""Run a CLI coding agent in a loop until it fulfils its completion promise."""

__version__ = "0.1.0"
