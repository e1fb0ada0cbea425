"""Payment settlement and fraud-resistance core."""

__version__ = "1.0.0"
