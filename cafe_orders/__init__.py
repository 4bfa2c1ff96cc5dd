"""Order lifecycle and reconciliation core for the cafeteria point of sale."""

__version__ = "0.1.0"
