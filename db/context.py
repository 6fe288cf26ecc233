"""Request context and bounded database execution.

Every repository operation receives a ``RequestContext`` supplied by the
auth layer. The context is trusted as-is: the core never re-derives the
tenant. ``execute`` wraps each database round trip with a deadline and the
caller's cancellation signal.
"""
import asyncio
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from dotenv import load_dotenv
from sqlalchemy import exc as sa_exc
from sqlalchemy.ext.asyncio import AsyncSession

from db.errors import PermissionDenied, RequestCancelled, StorageError

logger = logging.getLogger(__name__)

load_dotenv()

QUERY_TIMEOUT = float(os.environ.get("PLATFORM_QUERY_TIMEOUT", "15"))
BULK_TIMEOUT = float(os.environ.get("PLATFORM_BULK_TIMEOUT", "60"))

SOURCES = ("user", "api", "import", "sync", "automation", "system", "ai", "webhook")


@dataclass(frozen=True)
class RequestContext:
    """Authenticated caller identity for one request."""

    organization_id: uuid.UUID
    user_id: Optional[uuid.UUID] = None
    source: str = "api"
    request_id: Optional[str] = None
    can_write: bool = True
    cancel_event: Optional[asyncio.Event] = field(default=None, compare=False)

    def __post_init__(self):
        if self.source not in SOURCES:
            raise ValueError(f"Unknown source {self.source!r}")

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def require_write(self) -> None:
        """Raise PermissionDenied unless this context may mutate data."""
        if not self.can_write:
            raise PermissionDenied("This request is not allowed to modify data")


def system_context(organization_id: uuid.UUID) -> RequestContext:
    """Context used by scheduled jobs acting on behalf of an organization."""
    return RequestContext(organization_id=organization_id, source="system")


async def _await_bounded(ctx: Optional[RequestContext], awaitable, timeout: float):
    if ctx is None or ctx.cancel_event is None:
        return await asyncio.wait_for(awaitable, timeout=timeout)

    if ctx.cancelled:
        # Never start a call for a caller that already went away
        awaitable.close()
        raise RequestCancelled("Request was cancelled by the caller")

    work = asyncio.ensure_future(awaitable)
    cancel_waiter = asyncio.ensure_future(ctx.cancel_event.wait())
    try:
        done, _ = await asyncio.wait(
            {work, cancel_waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        cancel_waiter.cancel()

    if work in done:
        return work.result()

    work.cancel()
    try:
        await work
    except (asyncio.CancelledError, Exception):
        pass
    if cancel_waiter in done:
        raise RequestCancelled("Request was cancelled by the caller")
    raise asyncio.TimeoutError()


async def run_bounded(
    ctx: Optional[RequestContext],
    awaitable,
    *,
    bulk: bool = False,
) -> Any:
    """Await a database coroutine under the request deadline.

    IntegrityError passes through untouched so callers can translate
    constraint violations; every other driver failure becomes StorageError.
    """
    timeout = BULK_TIMEOUT if bulk else QUERY_TIMEOUT
    try:
        return await _await_bounded(ctx, awaitable, timeout)
    except asyncio.TimeoutError:
        logger.warning("Database call exceeded %.0fs deadline", timeout)
        raise StorageError("The database did not respond in time") from None
    except sa_exc.IntegrityError:
        raise
    except sa_exc.SQLAlchemyError:
        logger.exception("Database call failed")
        raise StorageError("The database rejected the operation") from None


async def execute(
    session: AsyncSession,
    ctx: Optional[RequestContext],
    stmt,
    params=None,
    *,
    bulk: bool = False,
    **kwargs,
):
    """session.execute() bounded by the request deadline and cancel signal."""
    return await run_bounded(ctx, session.execute(stmt, params, **kwargs), bulk=bulk)


async def flush(session: AsyncSession, ctx: Optional[RequestContext], *, bulk: bool = False) -> None:
    await run_bounded(ctx, session.flush(), bulk=bulk)
