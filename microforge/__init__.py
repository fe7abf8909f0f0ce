"""microforge: scaffold .NET microservices and run them locally in dependency order."""

__version__ = "0.1.0"
