from __future__ import annotations

import asyncio
from typing import Awaitable, TypeVar

from .errors import AdapterFailure, AdapterTimeout, FreezeGateError

T = TypeVar("T")


async def guarded(operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Await an external call with a deadline; foreign errors become AdapterFailure."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise AdapterTimeout(operation, timeout) from exc
    except FreezeGateError:
        raise
    except Exception as exc:
        raise AdapterFailure(operation, f"{type(exc).__name__}: {exc}") from exc


__all__ = ["guarded"]
