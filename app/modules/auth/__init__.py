from .schemas import AuthContext, Performer

__all__ = ["AuthContext", "Performer"]
