"""Lock handles, atomicity strategies and token scopes."""

from .errors import LockError, LockNotHeldError, LockOperationError
from .lock import Lock
from .locks import LockManager, StrategyKind
from .locks_redis import AsyncLock, RedisLockManager
from .settings import LockSettings
from .strategies import ScriptStrategy, TransactionStrategy, make_strategy
from .strategies_async import AsyncScriptStrategy, AsyncTransactionStrategy, make_async_strategy
from .token import Token, TokenScope

__all__ = [
    "AsyncLock",
    "AsyncScriptStrategy",
    "AsyncTransactionStrategy",
    "Lock",
    "LockError",
    "LockManager",
    "LockNotHeldError",
    "LockOperationError",
    "LockSettings",
    "RedisLockManager",
    "ScriptStrategy",
    "StrategyKind",
    "Token",
    "TokenScope",
    "TransactionStrategy",
    "make_async_strategy",
    "make_strategy",
]
