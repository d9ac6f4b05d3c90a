from .client import BackofficeClient

__all__ = ["BackofficeClient"]
