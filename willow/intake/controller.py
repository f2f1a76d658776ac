"""Generation Controller — runs conversational turns for one intake session.

Exactly one generation is live at a time. Starting a new one aborts the
previous, and anything the aborted generation produces afterwards is
discarded. Backend writes run as background tasks so they never hold the
session in STREAMING.
"""
import asyncio
import logging
from enum import Enum
from typing import Callable

from willow.errors import TransportError
from willow.intake.snapshot import merge_snapshot
from willow.intake.stream_reader import read_stream
from willow.intake.sync import FinalizeResult, SessionSynchronizer
from willow.models import IntakeSnapshot, Turn
from willow.utils.parsers import parse_reply, strip_directive

logger = logging.getLogger(__name__)

TRANSPORT_NOTICE = "Willow is unavailable. Please try again."


class GenerationState(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"


class Generation:
    """One in-flight streamed reply cycle, cancellable through ``abort``."""

    def __init__(self, number: int):
        self.number = number
        self.cancel = asyncio.Event()
        self.task: asyncio.Task | None = None

    @property
    def aborted(self) -> bool:
        return self.cancel.is_set()

    def abort(self) -> None:
        self.cancel.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()


def _log_task_exception(task: asyncio.Task) -> None:
    """Callback for fire-and-forget tasks to log unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error(f"[Intake] Background task failed: {exc}", exc_info=exc)


class IntakeSession:
    """Per-session controller owning the transcript, snapshot and creation guard.

    ``start`` and ``submit`` schedule work on the running event loop and
    return immediately; use ``wait`` to block until the live generation ends.
    """

    def __init__(self, conversation, backend, on_update: Callable[["IntakeSession"], None] | None = None):
        self.conversation = conversation
        self.synchronizer = SessionSynchronizer(backend)
        self.snapshot = IntakeSnapshot()
        self.transcript: list[Turn] = []
        self.notices: list[str] = []
        self.state = GenerationState.IDLE
        self._on_update = on_update
        self._generation: Generation | None = None
        self._generation_count = 0
        self._started = False
        self._opened = False
        self._bootstrap: Generation | None = None
        self._background_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def external_id(self) -> str | None:
        return self.synchronizer.external_id

    @property
    def can_finish(self) -> bool:
        """True once the user has said something and nothing is streaming."""
        return self.state is GenerationState.IDLE and any(t.role == "user" for t in self.transcript)

    def stable_messages(self) -> list[dict]:
        return [t.to_message() for t in self.transcript if not t.in_progress]

    # ------------------------------------------------------------------
    # Turn lifecycle
    # ------------------------------------------------------------------

    def start(self) -> Generation | None:
        """Bootstrap the opening turn. Safe to call more than once.

        A repeat call while the first bootstrap is still in flight aborts it
        and becomes the authoritative run; a repeat call after the opening
        turn was delivered, or after the user submitted a turn, does nothing.
        """
        if self._started and self._opened:
            logger.info("[Intake] Opening turn already delivered, ignoring repeated start")
            return None
        if self._bootstrap is not None:
            logger.info(f"[Intake] Repeated start, superseding bootstrap generation {self._bootstrap.number}")
            self._bootstrap.abort()
        self._started = True
        self._bootstrap = self._begin()
        return self._bootstrap

    def submit(self, text: str) -> Generation | None:
        """Append a user turn and start generating the reply."""
        text = text.strip()
        if not text:
            return None
        if self._started:
            # The user has taken over; a late start() must not reopen
            self._opened = True
        self._drop_in_progress()
        self.transcript.append(Turn(role="user", content=text))
        return self._begin()

    def _begin(self) -> Generation:
        if self._generation is not None:
            logger.info(f"[Intake] Aborting generation {self._generation.number}")
            self._generation.abort()

        self._generation_count += 1
        gen = Generation(self._generation_count)
        self._drop_in_progress()
        messages = self.stable_messages()
        self.transcript.append(Turn(role="assistant", in_progress=True))
        self._generation = gen
        self.state = GenerationState.STREAMING
        gen.task = asyncio.create_task(self._run(gen, messages))
        gen.task.add_done_callback(_log_task_exception)
        self._notify()
        return gen

    def _is_live(self, gen: Generation) -> bool:
        return gen is self._generation and not gen.aborted

    async def _run(self, gen: Generation, messages: list[dict]) -> None:
        logger.info(f"[Intake] Generation {gen.number} started ({len(messages)} prior turns)")
        try:
            async with self.conversation.stream_reply(messages) as chunks:
                text = await read_stream(chunks, lambda buffer: self._show_partial(gen, buffer), gen.cancel)
            if text is None or not self._is_live(gen):
                logger.info(f"[Intake] Generation {gen.number} superseded, output discarded")
                return
            self._apply(gen, text)
        except TransportError as e:
            if self._is_live(gen):
                logger.warning(f"[Intake] Generation {gen.number} failed: {e}")
                self.notices.append(TRANSPORT_NOTICE)
        except Exception as e:
            logger.error(f"[Intake] Generation {gen.number} crashed: {e}", exc_info=True)
            if self._is_live(gen):
                self.notices.append(TRANSPORT_NOTICE)
        finally:
            if self._generation is gen:
                self._drop_in_progress()
                self._generation = None
                self.state = GenerationState.IDLE
                self._notify()

    def _show_partial(self, gen: Generation, buffer: str) -> None:
        if not self._is_live(gen):
            return
        turn = self._in_progress_turn()
        if turn is not None:
            turn.content = strip_directive(buffer)
            self._notify()

    def _apply(self, gen: Generation, text: str) -> None:
        reply = parse_reply(text)
        for i, turn in enumerate(self.transcript):
            if turn.in_progress:
                self.transcript[i] = Turn(role="assistant", content=reply.display_text)
                break
        if gen is self._bootstrap:
            self._opened = True

        if reply.directive is None:
            logger.info(f"[Intake] Generation {gen.number} carried no usable directive")
            return
        merged = merge_snapshot(self.snapshot, reply.directive)
        if merged is not self.snapshot:
            self.snapshot = merged
            logger.info(f"[Intake] Snapshot updated by generation {gen.number}")
        self._schedule_sync(self.snapshot)

    def _schedule_sync(self, snapshot: IntakeSnapshot) -> None:
        task = asyncio.create_task(self.synchronizer.sync(snapshot))
        # Keep strong references so GC doesn't collect fire-and-forget tasks
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(_log_task_exception)

    def _in_progress_turn(self) -> Turn | None:
        return next((t for t in self.transcript if t.in_progress), None)

    def _drop_in_progress(self) -> None:
        self.transcript = [t for t in self.transcript if not t.in_progress]

    def _notify(self) -> None:
        if self._on_update is not None:
            self._on_update(self)

    # ------------------------------------------------------------------
    # Waiting, finalize, teardown
    # ------------------------------------------------------------------

    async def wait(self) -> None:
        """Wait until no generation is live."""
        while self._generation is not None:
            await asyncio.wait({self._generation.task})

    async def settle(self) -> None:
        """Wait for the live generation and every pending backend write."""
        await self.wait()
        while self._background_tasks:
            await asyncio.wait(set(self._background_tasks))

    async def finalize(self) -> FinalizeResult:
        """End intake: commit whatever can be committed and return the outcome."""
        await self.settle()
        result = await self.synchronizer.finalize(
            self.snapshot, self.stable_messages(), self.conversation.extract
        )
        self.snapshot = result.snapshot
        logger.info(
            f"[Intake] Finalized: recipient={result.external_id} "
            f"name={result.snapshot.identity_name!r} recovered={result.recovered}"
        )
        return result

    async def close(self) -> None:
        """Abandon the live generation and let pending backend writes finish."""
        gen, self._generation = self._generation, None
        if gen is not None:
            gen.abort()
        self._drop_in_progress()
        self.state = GenerationState.IDLE
        if self._background_tasks:
            await asyncio.wait(set(self._background_tasks))
