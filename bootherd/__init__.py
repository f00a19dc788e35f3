"""bootherd - remote power and boot target control for a fleet of machines."""

__version__ = "0.1.0"
