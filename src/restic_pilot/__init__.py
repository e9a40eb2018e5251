"""restic-pilot: supervised restic backup jobs for desktop control panels."""

__version__ = "0.1.0"

__all__ = ["__version__"]
