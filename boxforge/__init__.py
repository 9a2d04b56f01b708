__version__ = "0.1.0"
__app_name__ = "boxforge"
__app_description__ = "Profile compiler for the sing-box kernel"

from boxforge.core import AppContext, get_context, init_context

__all__ = [
    "AppContext",
    "__app_description__",
    "__app_name__",
    "__version__",
    "get_context",
    "init_context",
]
