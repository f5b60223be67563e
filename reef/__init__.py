"""reef — lifecycle management for agent formations."""

__version__ = "0.3.0"
