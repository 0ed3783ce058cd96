"""Post-commit side effects.

Commands register hooks that must only run once the store transaction has
committed. Each hook is retried and logged on its own, so one failing side
effect never prevents the others or rolls back the committed write.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog

from clinicflow.core.metrics import POST_COMMIT_HOOK_FAILURES

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PostCommitHook:
    """A named side effect to run after commit."""

    name: str
    action: Callable[[], Awaitable[None]]
    # Background hooks run after the response is returned
    background: bool = False
    # Background hooks sharing a key run one after another, in scheduling order
    ordering_key: str | None = None


class PostCommitRunner:
    """Runs post-commit hooks with per-hook retries and tracks background ones."""

    def __init__(self, retries: int = 2, retry_delay: float = 0.1):
        """
        Initialize the runner.

        Args:
            retries: Extra attempts per hook after the first failure
            retry_delay: Base delay in seconds, doubled after each failed attempt
        """
        self.retries = retries
        self.retry_delay = retry_delay
        self._tasks: set[asyncio.Task[bool]] = set()
        self._tails: dict[str, asyncio.Task[bool]] = {}

    async def run(self, hooks: list[PostCommitHook]) -> bool:
        """
        Schedule background hooks, then run foreground hooks in order.

        Background hooks are scheduled before the first await, so hooks of
        commands that committed one after another are chained in commit order.

        Args:
            hooks: Hooks registered by a committed command

        Returns:
            True if every foreground hook succeeded, False if delivery is degraded
        """
        for hook in hooks:
            if hook.background:
                self._schedule(hook)

        succeeded = True
        for hook in hooks:
            if not hook.background and not await self._run_with_retry(hook):
                succeeded = False
        return succeeded

    def _schedule(self, hook: PostCommitHook) -> None:
        previous = self._tails.get(hook.ordering_key) if hook.ordering_key else None
        task = asyncio.create_task(self._run_after(previous, hook), name=f"hook:{hook.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        if hook.ordering_key:
            key = hook.ordering_key
            self._tails[key] = task
            task.add_done_callback(lambda done: self._release(key, done))

    def _release(self, key: str, task: asyncio.Task[bool]) -> None:
        if self._tails.get(key) is task:
            del self._tails[key]

    async def _run_after(self, previous: asyncio.Task[bool] | None, hook: PostCommitHook) -> bool:
        if previous is not None:
            # wait() leaves the predecessor running if this task is cancelled
            await asyncio.wait({previous})
        return await self._run_with_retry(hook)

    async def _run_with_retry(self, hook: PostCommitHook) -> bool:
        delay = self.retry_delay
        for attempt in range(1, self.retries + 2):
            try:
                await hook.action()
                return True
            except Exception as e:
                logger.warning(
                    "post_commit_hook_attempt_failed",
                    hook=hook.name,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt <= self.retries:
                    await asyncio.sleep(delay)
                    delay *= 2

        POST_COMMIT_HOOK_FAILURES.labels(hook=hook.name).inc()
        logger.error("post_commit_hook_failed", hook=hook.name, degraded_delivery=True)
        return False

    @property
    def pending(self) -> int:
        """Number of background hooks still running."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every background hook to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
