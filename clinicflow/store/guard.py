from collections.abc import Awaitable
from typing import TypeVar

from clinicflow.domain.exceptions import ClinicError, PersistenceError

T = TypeVar("T")


async def guarded(operation: Awaitable[T], action: str) -> T:
    """Await a repository call, surfacing backend failures as ``PersistenceError``."""
    try:
        return await operation
    except ClinicError:
        raise
    except Exception as exc:
        raise PersistenceError(f"{action} failed: {exc}") from exc
