"""ATP unlock tracker - vesting contract discovery and unlock projection."""

__version__ = "0.1.0"
