"""
Shared FastAPI dependencies.
"""

from typing import Annotated

from fastapi import Depends, Request

from jobdispatch.client import Dispatcher


def get_dispatcher(request: Request) -> Dispatcher:
    """Dispatcher attached to the application at startup."""
    return request.app.state.dispatcher


DispatcherDep = Annotated[Dispatcher, Depends(get_dispatcher)]
