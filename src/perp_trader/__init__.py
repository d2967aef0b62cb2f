"""perp-trader - leveraged perpetual-futures position and risk lifecycle engine."""

__version__ = "0.1.0"
