"""
core/offload.py -- Move blocking work off the event loop.

Two kinds of blocking work exist in the auth core:
  Store calls: SQLAlchemy Core is synchronous. run_store() runs a store method
      in the default thread pool and translates SQLAlchemyError into
      StorageFailureError so callers see one retryable infra error kind.

  Password hashing: bcrypt is CPU-bound. auth/hashing.py owns a
      dedicated executor for it so a burst of logins cannot starve store
      calls queued on the default pool.

Cancelling the awaiting coroutine abandons the result; the worker thread
finishes on its own. Nothing here commits partial state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from core.errors import StorageFailureError

logger = logging.getLogger("authgate.store")

T = TypeVar("T")


async def run_store(fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Await a synchronous store call in a worker thread.

    Raises StorageFailureError if the store raises any SQLAlchemyError.
    The SQLAlchemy exception is chained for logs but never shown to users.
    """
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except SQLAlchemyError as exc:
        logger.error("Store call %s failed: %s", getattr(fn, "__qualname__", fn), exc.__class__.__name__)
        raise StorageFailureError("Store unavailable") from exc
