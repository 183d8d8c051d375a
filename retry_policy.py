import asyncio
import logging
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)


class RetryPolicy(Generic[T]):
    def __init__(self, max_retries: int = 3, delay: float = 1.0, backoff_factor: float = 2.0):
        self.max_retries = max_retries
        self.delay = delay
        self.backoff_factor = backoff_factor

    async def execute_with_retry(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        current_delay = self.delay
        for attempt in range(self.max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                if attempt < self.max_retries:
                    logger.warning(f"Attempt {attempt + 1}/{self.max_retries + 1} failed: {e}; retrying in {current_delay}s")
                    await asyncio.sleep(current_delay)
                    current_delay *= self.backoff_factor
                else:
                    raise


class PollingPolicy:
    """최대 attempts 번 check를 호출해 True가 나오면 즉시 True.

    check가 False를 돌려주거나 예외를 던지면 실패한 시도로 보고 interval 만큼
    기다린 뒤 다시 시도한다. 마지막 시도 뒤에는 기다리지 않는다.
    """

    def __init__(self, attempts: int = 5, interval: float = 30.0):
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.interval = interval

    async def until_true(self, check: Callable[..., Awaitable[bool]], *args, label: str = "check", **kwargs) -> bool:
        for attempt in range(1, self.attempts + 1):
            try:
                if await check(*args, **kwargs):
                    return True
                logger.info(f"{label} attempt {attempt}/{self.attempts} did not pass")
            except Exception as e:
                logger.warning(f"{label} attempt {attempt}/{self.attempts} failed: {e}")
            if attempt < self.attempts:
                await asyncio.sleep(self.interval)
        return False
