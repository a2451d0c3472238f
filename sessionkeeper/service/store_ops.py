from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from sessionkeeper.logging import get_logger
from sessionkeeper.service.errors import ServerError, StoreUnavailableError
from sessionkeeper.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a blocking store method off the event loop and translate its errors.

    Store failures become service errors here so routes and callers only ever
    see the service taxonomy.
    """

    try:
        return await asyncio.to_thread(func, *args, **kwargs)
    except StoreUnavailable as exc:
        logger.error("token_store_unavailable", operation=func.__name__, error=str(exc))
        raise StoreUnavailableError("token store unavailable") from exc
    except ConstraintViolation as exc:
        logger.error(
            "token_store_constraint_violation",
            operation=func.__name__,
            error=str(exc),
            detail=exc.detail,
        )
        raise ServerError("token store rejected the write") from exc
