"""Bridge between d2bs game-bot TCP clients and Discord threads."""

__version__ = "0.1.0"
