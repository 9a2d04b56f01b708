from boxforge.plugins.manager import PluginManager
from boxforge.plugins.runner import compile_handler, invoke

__all__ = [
    "PluginManager",
    "compile_handler",
    "invoke",
]
