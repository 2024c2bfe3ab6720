"""Analytics dashboard service for the PYUSD stablecoin."""

__version__ = "1.0.0"
