"""
Request-scoped dependencies.

Each request opens its own store client and builds its own components;
nothing is shared between requests. Tests override ``get_store`` and
``get_clock``.
"""

import time
from collections.abc import AsyncIterator, Callable
from typing import Annotated

from fastapi import Depends

from kvqueue.services import Services, build_services
from kvqueue.store.client import StoreClient, get_store_client


async def get_store() -> AsyncIterator[StoreClient]:
    """Open a store client for the duration of one request."""
    async with get_store_client() as store:
        yield store


def get_clock() -> Callable[[], float]:
    """Time source for request-scoped components."""
    return time.time


async def get_services(
    store: Annotated[StoreClient, Depends(get_store)],
    clock: Annotated[Callable[[], float], Depends(get_clock)],
) -> Services:
    """Build the components for one request."""
    return build_services(store, clock=clock)


ServicesDep = Annotated[Services, Depends(get_services)]
