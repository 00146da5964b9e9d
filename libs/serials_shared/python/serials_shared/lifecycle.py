from __future__ import annotations

from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI


def _hooks(app: FastAPI) -> dict[str, list[Callable]]:
    hooks = getattr(app.state, "serials_hooks", None)
    if hooks is not None:
        return hooks
    hooks = {"startup": [], "shutdown": []}
    app.state.serials_hooks = hooks
    inner = app.router.lifespan_context

    @asynccontextmanager
    async def lifespan(a):
        for fn in hooks["startup"]:
            fn()
        try:
            async with inner(a) as state:
                yield state
        finally:
            for fn in hooks["shutdown"]:
                fn()

    app.router.lifespan_context = lifespan
    return hooks


def register_startup(app: FastAPI) -> Callable[[Callable], Callable]:
    """
    Register a startup hook without FastAPI's deprecated @on_event API.
    Usage:
        @register_startup(app)
        def _create_tables(): ...
    """
    def decorator(func: Callable) -> Callable:
        _hooks(app)["startup"].append(func)
        return func
    return decorator


def register_shutdown(app: FastAPI) -> Callable[[Callable], Callable]:
    def decorator(func: Callable) -> Callable:
        _hooks(app)["shutdown"].append(func)
        return func
    return decorator
