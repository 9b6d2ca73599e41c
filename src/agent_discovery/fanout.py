"""
Concurrent per-chain execution with status capture.

Every chain operation runs in its own task with its own timeout. A failing
or slow chain yields a ``ChainOutcome`` instead of raising, so the other
chains still complete. Cancelling the caller cancels every chain task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

from .exceptions import ChainNotConfiguredError, RequestTimeoutError
from .models import ChainStatus, ChainStatusKind

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ChainOutcome(Generic[T]):
    chainId: int
    status: ChainStatusKind
    value: Optional[T] = None
    error: Optional[str] = None
    elapsedMs: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "success"

    def to_status(self) -> ChainStatus:
        return ChainStatus(chainId=self.chainId, status=self.status, error=self.error)


async def _guarded(chain_id: int, op: Callable[[int], Awaitable[T]], timeout: float) -> ChainOutcome[T]:
    started = time.perf_counter()

    def elapsed() -> float:
        return round((time.perf_counter() - started) * 1000, 2)

    try:
        value = await asyncio.wait_for(op(chain_id), timeout=timeout)
    except (asyncio.TimeoutError, RequestTimeoutError) as e:
        logger.warning("Chain %s timed out after %.0f ms", chain_id, elapsed())
        return ChainOutcome(chain_id, "timeout", error=str(e) or f"timed out after {timeout}s", elapsedMs=elapsed())
    except ChainNotConfiguredError as e:
        return ChainOutcome(chain_id, "unavailable", error=str(e), elapsedMs=elapsed())
    except Exception as e:
        logger.warning("Chain %s failed: %s", chain_id, e)
        return ChainOutcome(chain_id, "error", error=str(e), elapsedMs=elapsed())

    logger.debug("Chain %s completed in %.0f ms", chain_id, elapsed())
    return ChainOutcome(chain_id, "success", value=value, elapsedMs=elapsed())


async def fan_out(
    chains: Sequence[int],
    op: Callable[[int], Awaitable[T]],
    timeout: float,
) -> List[ChainOutcome[T]]:
    """
    Run ``op(chain_id)`` for every chain concurrently.

    Args:
        chains: Chain ids
        op: Coroutine factory for one chain
        timeout: Per-chain timeout in seconds

    Returns:
        One outcome per chain, in ``chains`` order
    """
    if not chains:
        return []
    return list(await asyncio.gather(*(_guarded(c, op, timeout) for c in chains)))


def split_outcomes(outcomes: Sequence[ChainOutcome[Any]]):
    """Return ``(successful outcomes, failure statuses)``."""
    ok = [o for o in outcomes if o.ok]
    failed = [o.to_status() for o in outcomes if not o.ok]
    return ok, failed
