"""Flow backlog: live population census over entity state-transition streams."""

__version__ = "0.1.0"
