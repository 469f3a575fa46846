"""Google Tasks desktop client: OAuth sign-in, credential storage and task access."""

__version__ = "0.1.0"
