from __future__ import annotations


class CompileError(Exception):
    """Base error for everything that aborts a config compilation."""


class ProfileParseError(CompileError):
    """Malformed data inside a profile (JSON payloads, mixin text, regex)."""


class UnresolvedReferenceError(CompileError):
    """An id did not resolve to a tag (strict mode only)."""

    def __init__(self, kind: str, ref_id: str):
        self.kind = kind
        self.ref_id = ref_id
        super().__init__(f"Unresolved {kind} reference: {ref_id}")


class PluginError(CompileError):
    """A plugin handler raised, timed out or returned a wrong result."""

    def __init__(self, plugin_name: str, message: str):
        self.plugin_name = plugin_name
        self.message = message
        super().__init__(f"{plugin_name} : {message}")


class ScriptError(CompileError):
    """The profile script raised or timed out."""


class WrongResultError(CompileError):
    """The profile script returned something other than a document."""

    def __init__(self, message: str = "Wrong result"):
        super().__init__(message)
