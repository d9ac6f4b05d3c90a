from .service import TerminalSession, TerminalRegistry

__all__ = ["TerminalSession", "TerminalRegistry"]
