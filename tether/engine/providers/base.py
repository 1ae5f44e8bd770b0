"""Abstract base for agent providers.

Each provider wraps a different agent runtime (Claude Agent SDK,
OpenAI Codex CLI). The orchestrator calls create_query() and consumes
the returned ProviderQuery as an async iterator of normalized
StreamEvents.

A ProviderQuery runs the provider's event generator as a producer task
feeding a bounded asyncio.Queue. The orchestrator is the single
consumer. Aborting the query's AbortToken cancels the producer task,
which tears down the provider transport (subprocess, SDK client) in the
generator's cleanup, and ends iteration for the consumer.
"""
from __future__ import annotations

import abc
import asyncio
import dataclasses
import logging
import shutil
from collections.abc import AsyncIterator, Callable

from ..errors import RewindUnsupportedError
from ..events import StreamEvent
from ..models import ModelTier, ProviderOptions

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_SIZE = 64


class AbortToken:
    """One-shot cancellation signal shared by a query and its provider."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        if self._event.is_set():
            return
        self._event.set()
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Abort callback failed")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run *callback* on abort (immediately if already aborted)."""
        if self._event.is_set():
            callback()
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> None:
        await self._event.wait()


class ProviderQuery:
    """A running provider request: async iterator of StreamEvents.

    Also the handle used for undo: rewind_files() is delegated to the
    provider with the options this query was started with, resuming the
    remote session the stream reported.
    """

    def __init__(
        self,
        provider: Provider,
        source: AsyncIterator[StreamEvent],
        options: ProviderOptions,
        abort_token: AbortToken,
        channel_size: int = DEFAULT_CHANNEL_SIZE,
    ) -> None:
        self._provider = provider
        self._source = source
        self._options = options
        self._abort_token = abort_token
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue(
            maxsize=channel_size
        )
        self._producer_done = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._error: BaseException | None = None
        self._session_id: str | None = options.resume
        self._abort_token.add_callback(self._on_abort)

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def options(self) -> ProviderOptions:
        return self._options

    @property
    def supports_rewind(self) -> bool:
        return self._provider.supports_rewind

    def _on_abort(self) -> None:
        if self._task is not None and not self._task.done():
            logger.debug("Abort requested, cancelling %s producer", self._provider.name)
            self._task.cancel()
        elif self._task is None:
            self._producer_done.set()

    def _ensure_started(self) -> None:
        if self._task is None and not self._producer_done.is_set():
            self._task = asyncio.ensure_future(self._pump())

    async def _pump(self) -> None:
        try:
            async for event in self._source:
                await self._queue.put(event)
        except asyncio.CancelledError:
            logger.debug("%s producer cancelled", self._provider.name)
        except Exception as exc:
            self._error = exc
        finally:
            self._producer_done.set()

    def _observe(self, event: StreamEvent) -> StreamEvent:
        if event.session_id:
            self._session_id = event.session_id
        return event

    @property
    def session_id(self) -> str | None:
        """Latest remote session id seen on this query's stream."""
        return self._session_id

    def __aiter__(self) -> ProviderQuery:
        return self

    async def __anext__(self) -> StreamEvent:
        self._ensure_started()
        while True:
            try:
                return self._observe(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                pass
            if self._producer_done.is_set():
                break
            getter = asyncio.ensure_future(self._queue.get())
            finished = asyncio.ensure_future(self._producer_done.wait())
            try:
                await asyncio.wait(
                    {getter, finished},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                finished.cancel()
                if not getter.done():
                    getter.cancel()
            if getter.done() and not getter.cancelled():
                return self._observe(getter.result())

        if self._error is not None:
            error, self._error = self._error, None
            raise error
        raise StopAsyncIteration

    async def aclose(self) -> None:
        """Stop the producer (if still running) and drop buffered events."""
        self._abort_token.remove_callback(self._on_abort)
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._producer_done.set()

    async def rewind_files(self, checkpoint_id: str) -> None:
        options = dataclasses.replace(self._options, resume=self._session_id)
        await self._provider.rewind_files(checkpoint_id, options)


class Provider(abc.ABC):
    """Abstract provider interface.

    Implementations wrap a specific agent runtime:
    - ClaudeProvider: Claude Agent SDK (ClaudeSDKClient), checkpoints
    - CodexProvider: OpenAI Codex CLI (codex exec --json), no undo
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude', 'codex')."""

    @property
    def supports_rewind(self) -> bool:
        """Whether rewind_files() can restore file checkpoints."""
        return False

    @abc.abstractmethod
    def resolve_model(self, tier: ModelTier) -> str:
        """Map a provider-neutral tier to this runtime's model id."""

    @abc.abstractmethod
    def stream_events(
        self,
        prompt: str,
        options: ProviderOptions,
        abort_token: AbortToken,
    ) -> AsyncIterator[StreamEvent]:
        """Run one agent turn, yielding normalized StreamEvents.

        Implemented as an async generator. Cleanup of the underlying
        transport belongs in the generator's ``finally`` block, which
        runs when the producer task is cancelled on abort.
        """

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this provider's runtime is installed."""

    def create_query(
        self,
        prompt: str,
        options: ProviderOptions,
        abort_token: AbortToken,
    ) -> ProviderQuery:
        """Start a streaming request. Iterate the result for events."""
        return ProviderQuery(
            self,
            self.stream_events(prompt, options, abort_token),
            options,
            abort_token,
        )

    async def rewind_files(
        self,
        checkpoint_id: str,
        options: ProviderOptions,
    ) -> None:
        """Restore working-tree files to *checkpoint_id*.

        Default: unsupported. Never a silent no-op.
        """
        raise RewindUnsupportedError(self.name)

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command:
            if shutil.which(command):
                return command
            if fallback and shutil.which(fallback):
                logger.debug(
                    "Command %s not found; falling back to %s for provider %s",
                    command, fallback, self.name,
                )
                return fallback
            return command
        return fallback or command

    async def shutdown(self) -> None:
        """Clean up long-lived resources. Default no-op."""
        return None
