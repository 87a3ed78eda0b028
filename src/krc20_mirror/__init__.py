"""KRC20 Mirror - keeps a local relational copy of KRC20 token state."""

__version__ = "0.1.0"
