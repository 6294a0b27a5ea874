"""
Metered Action Guard - wraps AI calls with quota check and usage accounting

Enforces the gated-action contract:
- can_consume() before the action
- record_consumption() only after the action succeeds
- a failed action is never counted

IMPORTANT: Accounting is post-hoc. If the usage write fails after the AI
call succeeded, the result is still returned and the miss is logged; the
account is under-counted by one.
"""

import inspect
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar

from .errors import QuotaExceeded, StoreUnavailable
from .usage_meter import UsageMeter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MeteredActionGuard:
    """
    Execution guard for metered AI actions.

    Usage:
        guard = MeteredActionGuard(meter)
        try:
            recipe = await guard.run(account_id, lambda: ai_client.generate(prompt))
        except QuotaExceeded:
            # show the upgrade prompt
            ...
    """

    def __init__(self, meter: UsageMeter):
        self.meter = meter

    async def run(self, account_id: str, action: Callable[[], Awaitable[T]]) -> T:
        """
        Run action if the account has quota, then count it.

        Raises:
            QuotaExceeded: free account out of quota; action not run
            ProfileNotFound / StoreUnavailable: from the quota check
            Anything the action raises; usage is not recorded
        """
        if not await self.meter.can_consume(account_id):
            raise QuotaExceeded(
                account_id=account_id,
                remaining=await self.meter.remaining_quota(account_id),
            )

        result = await action()

        try:
            await self.meter.record_consumption(account_id)
        except StoreUnavailable as e:
            logger.error(f"Metered action succeeded but usage not recorded for account {account_id}: {e}")

        return result


def metered(guard: MeteredActionGuard, account_arg: str = "account_id"):
    """
    Decorator for async functions that perform a metered action.

    Usage:
        @metered(guard)
        async def generate_recipe(account_id: str, ingredients: list):
            return await ai_client.generate(ingredients)

    The account id is taken from the argument named account_arg.
    """
    def decorator(func: Callable[..., Awaitable[Any]]):
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args, **kwargs):
            bound = signature.bind(*args, **kwargs)
            account_id = bound.arguments.get(account_arg)
            if not account_id:
                raise ValueError(f"{func.__name__} called without '{account_arg}'")

            return await guard.run(account_id, lambda: func(*args, **kwargs))

        return wrapper
    return decorator
