from boxforge.core.context import AppContext, get_context, init_context, reset_context

__all__ = [
    "AppContext",
    "get_context",
    "init_context",
    "reset_context",
]
