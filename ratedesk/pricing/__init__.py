"""Rate calculation: spread configuration, volatility analysis and fixed-spread pricing."""
