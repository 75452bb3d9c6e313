"""Stream coordinator: one completion turn per thread at a time.

A turn moves Pending → Streaming → Completed | Aborted | Cancelled:

  Pending    load thread + history, assemble the prompt, open the provider stream
  Streaming  forward tokens to the consumer while buffering them
  Completed  clean end: user + assistant messages saved in one transaction
  Aborted    provider failure or timeout: the user message and the partial
             assistant text (status 'aborted', with the error) saved together
  Cancelled  caller cancelled: provider call stopped, nothing saved

Usage::

    turn = coordinator.open(request)          # may raise ThreadBusy
    async with turn:
        async for event in turn:
            ...
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import AsyncIterator

from threadline.config import GenerationCfg
from threadline.db.connection import ConnectionPool
from threadline.db.models import STATUS_ABORTED, STATUS_COMPLETE, Message, Project, Thread
from threadline.db.repository import Repository
from threadline.errors import NotFoundError, StreamError, ThreadBusy
from threadline.rag.assembler import ContextAssembler, PromptContext
from threadline.rag.events import (
    Citations,
    StreamCancelled,
    StreamEnd,
    StreamFailed,
    Token,
    TurnEvent,
    TurnFinished,
    TurnState,
)
from threadline.rag.llm_client import ProviderCredentials
from threadline.rag.providers import CompletionStream, ProviderRouter
from threadline.rag.titles import TitleGenerator

logger = logging.getLogger(__name__)


@dataclass
class CompletionRequest:
    """One user message to answer on a thread.

    ``project_id`` and ``user_id`` only apply when the thread is new; an
    existing thread keeps its own.
    """

    thread_id: str
    user_text: str
    provider: str
    model: str
    user_id: str | None = None
    project_id: str | None = None
    credentials: ProviderCredentials | None = None


class StreamCoordinator:
    """Run completion turns with per-thread single-flight.

    Args:
        pool: Open ConnectionPool.
        assembler: Builds the prompt for each turn.
        router: Opens provider streams.
        token_budget: Prompt size limit passed to the assembler.
        titler: Optional title generator for untitled threads.
    """

    def __init__(
        self,
        pool: ConnectionPool,
        assembler: ContextAssembler,
        router: ProviderRouter,
        *,
        token_budget: int = 8192,
        titler: TitleGenerator | None = None,
    ) -> None:
        self._pool = pool
        self._assembler = assembler
        self._router = router
        self.token_budget = token_budget
        self._titler = titler
        self._active: set[str] = set()
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_cfg(
        cls,
        pool: ConnectionPool,
        assembler: ContextAssembler,
        router: ProviderRouter,
        cfg: GenerationCfg,
        credentials: ProviderCredentials | None = None,
    ) -> StreamCoordinator:
        titler = None
        if cfg.title_model:
            titler = TitleGenerator(cfg.title_model, timeout=cfg.timeout, credentials=credentials)
        return cls(pool, assembler, router, token_budget=cfg.token_budget, titler=titler)

    def is_active(self, thread_id: str) -> bool:
        return thread_id in self._active

    def open(self, request: CompletionRequest) -> Turn:
        """Claim *request.thread_id* and return its Turn.

        Raises:
            ThreadBusy: If the thread already has a turn in flight.
            StreamError: If the provider id is unknown (PROVIDER_REJECTED).
        """
        self._router.variant(request.provider)
        # Check-and-add with no await in between.
        if request.thread_id in self._active:
            raise ThreadBusy(request.thread_id)
        self._active.add(request.thread_id)
        return Turn(self, request)

    async def drain(self) -> None:
        """Wait for background title generation to finish."""
        if self._background:
            await asyncio.wait(set(self._background))

    def _release(self, thread_id: str) -> None:
        self._active.discard(thread_id)

    def _schedule_title(self, thread_id: str, user_text: str, assistant_text: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._generate_title(thread_id, user_text, assistant_text)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _generate_title(self, thread_id: str, user_text: str, assistant_text: str) -> None:
        title = await self._titler.generate(user_text, assistant_text)
        if not title:
            return
        try:
            await self._pool.run(lambda conn: Repository(conn).set_thread_title(thread_id, title))
        except sqlite3.Error as exc:
            logger.warning("Could not save title for thread %s: %s", thread_id, exc)
            return
        logger.info("Thread %s titled '%s'", thread_id, title)


class Turn:
    """A single completion turn. Iterate it for TurnEvents.

    The thread guard is released when the turn reaches a terminal state and
    iteration ends, or when the ``async with`` block exits, whichever is first.
    """

    def __init__(self, coordinator: StreamCoordinator, request: CompletionRequest) -> None:
        self._coordinator = coordinator
        self.request = request
        self.state = TurnState.PENDING
        self.prompt: PromptContext | None = None
        self.message_id: int | None = None
        self.error: StreamError | None = None
        self._parts: list[str] = []
        self._stream: CompletionStream | None = None
        self._events: AsyncIterator[TurnEvent] | None = None
        self._cancel_requested = False
        self._released = False

    @property
    def content(self) -> str:
        """Assistant text received so far."""
        return "".join(self._parts)

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        if self._events is None:
            self._events = self._run()
        return self._events

    async def __aenter__(self) -> Turn:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def cancel(self) -> None:
        """Request cancellation; the turn ends Cancelled and saves nothing."""
        if self.state.terminal:
            return
        self._cancel_requested = True
        if self._stream is not None:
            self._stream.cancel()

    async def aclose(self) -> None:
        """End the turn now. An unfinished turn becomes Cancelled."""
        if self._events is not None:
            await self._events.aclose()
        if not self.state.terminal:
            self.state = TurnState.CANCELLED
        self._release()

    def _release(self) -> None:
        if not self._released:
            self._released = True
            self._coordinator._release(self.request.thread_id)

    async def _run(self) -> AsyncIterator[TurnEvent]:
        coordinator = self._coordinator
        request = self.request
        try:
            thread, project, history = await coordinator._pool.run(self._load)
            self.prompt = await coordinator._assembler.assemble(
                history, project, request.user_text, coordinator.token_budget
            )
            if self.prompt.citations:
                yield Citations(list(self.prompt.citations))

            if not self._cancel_requested:
                self._stream = coordinator._router.stream_completion(
                    request.provider, request.model, self.prompt, request.credentials
                )
                self.state = TurnState.STREAMING
                async for event in self._stream:
                    if self._cancel_requested or isinstance(event, StreamCancelled):
                        break
                    if isinstance(event, Token):
                        self._parts.append(event.text)
                        yield event
                    elif isinstance(event, StreamEnd):
                        await self._save(thread, TurnState.COMPLETED)
                        logger.info(
                            "Turn on thread %s completed (%d chars)", thread.id, len(self.content)
                        )
                        if coordinator._titler is not None and not thread.title:
                            coordinator._schedule_title(thread.id, request.user_text, self.content)
                        self._release()
                        yield TurnFinished(TurnState.COMPLETED, self.message_id)
                        return
                    elif isinstance(event, StreamFailed):
                        self.error = event.error
                        await self._save(thread, TurnState.ABORTED, str(event.error))
                        logger.warning(
                            "Turn on thread %s aborted after %d chars: %s",
                            thread.id, len(self.content), event.error,
                        )
                        self._release()
                        yield TurnFinished(TurnState.ABORTED, self.message_id, event.error)
                        return

            self.state = TurnState.CANCELLED
            logger.info("Turn on thread %s cancelled; nothing saved", thread.id)
            self._release()
            yield TurnFinished(TurnState.CANCELLED)
        except (asyncio.CancelledError, GeneratorExit):
            if not self.state.terminal:
                self.state = TurnState.CANCELLED
                logger.info("Turn on thread %s cancelled by caller", request.thread_id)
            raise
        finally:
            if self._stream is not None:
                await self._stream.aclose()
            self._release()

    def _load(self, conn: sqlite3.Connection) -> tuple[Thread, Project | None, list[Message]]:
        repo = Repository(conn)
        thread = repo.get_thread(self.request.thread_id)
        if thread is None:
            thread = Thread(
                id=self.request.thread_id,
                user_id=self.request.user_id,
                project_id=self.request.project_id,
            )
            history: list[Message] = []
        else:
            history = repo.list_messages(thread.id)

        project = None
        if thread.project_id:
            project = repo.get_project(thread.project_id)
            if project is None and thread.created_at is None:
                raise NotFoundError(f"project '{thread.project_id}' not found")
        return thread, project, history

    async def _save(self, thread: Thread, state: TurnState, error: str | None = None) -> None:
        """Persist the turn and move to *state*.

        The write runs in its own task. When the caller is cancelled
        mid-write, the write is awaited to the end so the state matches
        what is in the database, then the cancellation propagates.
        """
        status = STATUS_COMPLETE if state is TurnState.COMPLETED else STATUS_ABORTED
        save = asyncio.ensure_future(self._persist(thread, status, error))
        try:
            self.message_id = await asyncio.shield(save)
        except asyncio.CancelledError:
            await asyncio.wait({save})
            if not save.cancelled() and save.exception() is None:
                self.message_id = save.result()
                self.state = state
                logger.info("Turn on thread %s saved before cancellation took effect", thread.id)
            raise
        self.state = state

    async def _persist(self, thread: Thread, status: str, error: str | None = None) -> int:
        request = self.request
        user = Message(
            thread_id=thread.id,
            role="user",
            content=request.user_text,
            lab=request.provider,
            model=request.model,
            user_id=request.user_id,
        )
        assistant = Message(
            thread_id=thread.id,
            role="assistant",
            content=self.content,
            lab=request.provider,
            model=request.model,
            status=status,
            error=error,
            user_id=request.user_id,
        )
        ids = await self._coordinator._pool.run(
            lambda conn: Repository(conn).save_turn(thread, [user, assistant])
        )
        return ids[-1]
