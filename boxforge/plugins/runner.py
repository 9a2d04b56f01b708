"""
Execution primitive for plugin and profile script code.

Code is Python source. It is compiled into a fresh module namespace, the
named handler is looked up in it and invoked under an optional deadline.
This is the only place user code enters the process.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger("boxforge.plugins.runner")


class HandlerNotFound(LookupError):
    """Compiled code does not define the requested handler."""

    def __init__(self, fn_name: str):
        self.fn_name = fn_name
        super().__init__(f"{fn_name} is not defined")


def compile_handler(
    code: str,
    fn_name: str,
    filename: str = "<plugin>",
    namespace: dict[str, Any] | None = None,
) -> Callable[..., Any]:
    """
    Compile source and return the callable named fn_name.

    Args:
        code: Python source
        fn_name: Handler name to look up after execution
        filename: Name shown in tracebacks
        namespace: Extra globals visible to the code (e.g. Plugin metadata)

    Raises:
        SyntaxError: Source does not compile
        HandlerNotFound: fn_name is missing or not callable
    """
    module_globals: dict[str, Any] = {"__name__": filename.strip("<>"), "__builtins__": __builtins__}
    if namespace:
        module_globals.update(namespace)

    exec(compile(code, filename, "exec"), module_globals)

    handler = module_globals.get(fn_name)
    if not callable(handler):
        raise HandlerNotFound(fn_name)
    return handler


def _run_in_thread(fn: Callable[..., Any], args: tuple[Any, ...]) -> asyncio.Future[Any]:
    """
    Run a plain function on its own daemon thread.

    The thread is never joined, so an abandoned handler cannot hold up the
    event loop or interpreter shutdown. Its late result is dropped.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[Any] = loop.create_future()

    def deliver(result: Any, error: BaseException | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def target() -> None:
        result, error = None, None
        try:
            result = fn(*args)
        except Exception as e:
            error = e
        try:
            loop.call_soon_threadsafe(deliver, result, error)
        except RuntimeError:
            logger.debug("Event loop closed before handler %s finished", getattr(fn, "__name__", fn))

    threading.Thread(target=target, name=f"handler-{getattr(fn, '__name__', 'anonymous')}", daemon=True).start()
    return future


async def invoke(fn: Callable[..., Any], *args: Any, timeout: float | None = None) -> Any:
    """
    Call a handler and await its result.

    Coroutine functions are awaited directly. Plain functions get copies of
    the arguments and run on a daemon thread, so the deadline applies to them
    as well and a handler left running past it cannot touch caller data.

    Raises:
        asyncio.TimeoutError: The handler did not finish within timeout
    """
    if inspect.iscoroutinefunction(fn):
        awaitable = fn(*args)
    else:
        awaitable = _run_in_thread(fn, copy.deepcopy(args))

    result = await asyncio.wait_for(awaitable, timeout=timeout)

    # A sync function may still hand back a coroutine
    if inspect.isawaitable(result):
        result = await asyncio.wait_for(result, timeout=timeout)
    return result


def describe_error(error: BaseException) -> str:
    """Human readable message for an error raised by user code."""
    if isinstance(error, asyncio.TimeoutError):
        return "timed out"
    if isinstance(error, SyntaxError):
        return f"{error.msg} (line {error.lineno})"
    return str(error) or error.__class__.__name__
