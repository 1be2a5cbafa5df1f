"""TeamGuard - identity, authorization and credential lifecycle for team management."""

__version__ = "0.1.0"
