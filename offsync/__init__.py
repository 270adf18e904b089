"""offsync: server-side replay of offline client changes with conflict resolution."""

__version__ = "0.1.0"
