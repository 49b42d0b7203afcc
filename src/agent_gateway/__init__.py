"""Session orchestration gateway for remote Claude coding agents."""

__version__ = "1.0.0"
