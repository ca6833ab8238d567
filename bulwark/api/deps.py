"""Request dependencies."""

from fastapi import Request

from ..runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """The runtime owned by the application."""
    return request.app.state.runtime
