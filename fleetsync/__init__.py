"""fleetsync — incremental mirror of the remote service order catalog."""

__version__ = "1.0.0"
