"""lexprep - grounded study engine for bar-exam preparation."""

__version__ = "0.3.0"
