"""Tool-calling generation loop, agent delegation and a JSON-RPC tool bridge."""

__version__ = "0.1.0"

__all__ = ["__version__"]
