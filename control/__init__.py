"""Control plane: proxy registry, configuration and the REST API."""

__version__ = "0.1.0"
