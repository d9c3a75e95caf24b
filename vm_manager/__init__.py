"""GameControl VM manager: game-server container orchestration daemon."""

__version__ = "0.1.0"
