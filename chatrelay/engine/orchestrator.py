"""Turn orchestrator.

Runs one user message against an agent CLI and keeps the conversation
attached to the right agent session:

- resolves the project directory for the conversation;
- refuses to resume a session that belongs to another project;
- picks an execution path (resume or new, stream / interactive / batch);
- finds the session a new turn created when the agent does not report
  it, using a pre-turn Snapshot and the SessionResolver;
- records the session id and project directory for the next turn.

Usage:
    orchestrator = TurnOrchestrator(EngineConfig.from_env())
    result = await orchestrator.submit(TurnRequest(chat_id="42", prompt="hi"))
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from chatrelay.adapters.event_bus import ProgressChannel
from chatrelay.adapters.events import (
    ErrorEvent,
    SessionEvent,
    StatusEvent,
    WarningEvent,
)
from chatrelay.shared.models.session import SessionRecord, SessionSource, Snapshot
from chatrelay.shared.services.codex_sessions import (
    CodexSessionStore,
    cwd_matches,
    is_valid_session_id,
    take_snapshot,
)
from chatrelay.shared.services.conversation_state import (
    ConversationState,
    ThreadState,
    build_thread_key,
)

from .config import EngineConfig, EventCallback
from .errors import (
    AmbiguousSessionError,
    ErrorKind,
    ProcessAbortedError,
    ProcessError,
    ProcessExitError,
    ProcessSpawnError,
    SessionCreationError,
    SessionNotFoundError,
    StaleSessionError,
    StopReason,
    TurnCancelledError,
    TurnError,
    WorkingDirectoryError,
)
from .models import ExecutionResult, TurnMode, TurnRequest
from .providers.base import (
    PROMPT_EXPRESSION,
    AgentProvider,
    ParsedOutput,
    StreamRequest,
    StreamResult,
    Transport,
    run_with_limits,
    strip_ansi,
    wrap_prompt_command,
)
from .providers.registry import ProviderRegistry, build_provider_registry
from .session_resolver import Resolution, SessionResolver, Sleep, default_strategies
from .supervisor import (
    ABORT_TURN_COMPLETE,
    GRACEFUL_ABORT_REASONS,
    CancelToken,
    ProcessSupervisor,
)
from .turn_queue import TurnQueue, conversation_key

logger = logging.getLogger(__name__)

SESSION_ATTACHED_REPLY = (
    "Session created and attached in {project}. "
    "Your next message will continue that session."
)
SESSION_REUSED_REPLY = (
    "No new session appeared in {project}; continuing existing session "
    "{thread_id}. Your next message will continue that session."
)


@dataclass
class _TurnContext:
    """Everything one turn needs once its project is resolved."""
    request: TurnRequest
    provider: AgentProvider
    channel: ProgressChannel
    thread_key: str
    thread_id: str
    cwd: str
    cancel: CancelToken | None
    model: str | None = None


@dataclass
class _Outcome:
    text: str
    thread_id: str = ""
    mode: TurnMode | None = None
    reused_session: bool = False


class TurnOrchestrator:
    """Runs turns for chat conversations against agent CLIs.

    Turns for the same conversation are serialized through a TurnQueue
    when entered via ``submit()``. ``run_turn()`` runs immediately and is
    what the queue calls.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        providers: ProviderRegistry | None = None,
        state: ConversationState | None = None,
        *,
        session_store: CodexSessionStore | None = None,
        supervisor: ProcessSupervisor | None = None,
        resolver: SessionResolver | None = None,
        queue: TurnQueue | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or EngineConfig.from_env()
        self._providers = providers or build_provider_registry(self._config)
        self._state = state or ConversationState(self._config.state_dir)
        self._store = session_store or CodexSessionStore(
            self._config.codex_sessions_dir,
            self._config.codex_index_path,
        )
        self._supervisor = supervisor or ProcessSupervisor(
            self._config.max_buffer_bytes
        )
        self._resolver = resolver or SessionResolver(
            default_strategies(self._store, self._config.snapshot_limit),
            attempts=self._config.session_resolve_attempts,
            interval=self._config.session_resolve_interval_seconds,
            sleep=sleep,
        )
        self._queue = queue or TurnQueue()
        self._sleep = sleep
        self._clock = clock

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def queue(self) -> TurnQueue:
        return self._queue

    @property
    def session_store(self) -> CodexSessionStore:
        return self._store

    # ── Public API ──

    async def submit(
        self,
        request: TurnRequest,
        *,
        on_event: EventCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> ExecutionResult:
        """Queue a turn behind earlier turns of the same conversation."""
        key = conversation_key(request.chat_id, request.topic_id)
        return await self._queue.enqueue(
            key,
            lambda: self.run_turn(request, on_event=on_event, cancel=cancel),
        )

    async def run_turn(
        self,
        request: TurnRequest,
        *,
        on_event: EventCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> ExecutionResult:
        """Run one turn now. Raises TurnError subclasses on failure."""
        agent_id = request.agent_id or self._config.default_agent
        provider = self._get_provider(agent_id)
        channel = ProgressChannel(on_event)
        try:
            ctx = await self._prepare(request, agent_id, provider, channel, cancel)
            logger.info(
                "Turn start agent=%s key=%s thread=%s cwd=%s",
                agent_id, ctx.thread_key, ctx.thread_id or "<new>", ctx.cwd,
            )
            outcome = await self._dispatch(ctx)
            cwd = await self._reconcile(ctx, outcome)
            logger.info(
                "Turn done agent=%s key=%s thread=%s mode=%s reused=%s",
                agent_id, ctx.thread_key, outcome.thread_id or "<none>",
                outcome.mode.value if outcome.mode else "-",
                outcome.reused_session,
            )
            return ExecutionResult(
                text=outcome.text,
                thread_id=outcome.thread_id,
                conversation_id=outcome.thread_id,
                events=channel.events,
                cwd=cwd,
                mode=outcome.mode,
                reused_session=outcome.reused_session,
            )
        except TurnError as exc:
            logger.warning("Turn failed agent=%s kind=%s: %s", agent_id, exc.kind.value, exc)
            await channel.emit(ErrorEvent(kind=exc.kind.value, message=str(exc)))
            raise
        finally:
            channel.close()

    async def run_one_shot(
        self,
        prompt: str,
        *,
        agent_id: str | None = None,
        cwd: str | None = None,
        on_event: EventCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> ExecutionResult:
        """Run a prompt outside any conversation. Nothing is recorded."""
        agent_id = agent_id or self._config.default_agent
        provider = self._get_provider(agent_id)
        project = self._validate_cwd(cwd or self._config.default_cwd or os.getcwd())
        channel = ProgressChannel(on_event)
        ctx = _TurnContext(
            request=TurnRequest(chat_id="", prompt=prompt, agent_id=agent_id),
            provider=provider,
            channel=channel,
            thread_key="",
            thread_id="",
            cwd=project,
            cancel=cancel,
            model=self._config.models.get(agent_id),
        )
        try:
            if provider.transport is Transport.STREAM:
                result = await self._stream(ctx)
                text, thread_id = result.text, result.thread_id or ""
                mode = TurnMode.NEW_STREAM
            else:
                parsed = await self._run_batch(ctx)
                text, thread_id = parsed.text, parsed.thread_id or ""
                mode = TurnMode.NEW_BATCH
        finally:
            channel.close()
        return ExecutionResult(
            text=text,
            thread_id=thread_id,
            conversation_id=thread_id,
            events=channel.events,
            cwd=project,
            mode=mode,
        )

    def reset_conversation(
        self,
        chat_id: str | int,
        topic_id: str | int | None = None,
        agent_id: str | None = None,
    ) -> bool:
        """Forget the conversation's session so the next turn starts fresh."""
        key = build_thread_key(chat_id, topic_id, agent_id or self._config.default_agent)
        cleared = self._state.clear_thread(key)
        if cleared:
            logger.info("Reset conversation %s", key)
            self._state.schedule_persist_threads()
        return cleared

    # ── Context ──

    def _get_provider(self, agent_id: str) -> AgentProvider:
        provider = self._providers.get(agent_id)
        if provider is None:
            available = ", ".join(self._providers.list_names()) or "none"
            raise TurnError(
                ErrorKind.CLI_MISSING,
                f"Unknown agent '{agent_id}'. Available: {available}",
            )
        return provider

    @staticmethod
    def _validate_cwd(cwd: str) -> str:
        cwd = os.path.abspath(os.path.expanduser(cwd))
        if not os.path.isdir(cwd):
            raise WorkingDirectoryError(cwd)
        return cwd

    async def _prepare(
        self,
        request: TurnRequest,
        agent_id: str,
        provider: AgentProvider,
        channel: ProgressChannel,
        cancel: CancelToken | None,
    ) -> _TurnContext:
        thread = self._state.get_thread_state(request.chat_id, request.topic_id, agent_id)
        if thread.migrated:
            self._state.schedule_persist_threads()

        meta: SessionRecord | None = None
        if thread.thread_id and provider.tracks_sessions:
            meta = await asyncio.to_thread(self._store.get_session_meta, thread.thread_id)

        cwd = self._validate_cwd(self._resolve_cwd(thread, meta))
        if thread.thread_id and provider.tracks_sessions:
            self._check_session(thread, meta, cwd)

        return _TurnContext(
            request=request,
            provider=provider,
            channel=channel,
            thread_key=thread.thread_key,
            thread_id=thread.thread_id,
            cwd=cwd,
            cancel=cancel,
            model=self._config.models.get(agent_id),
        )

    def _resolve_cwd(self, thread: ThreadState, meta: SessionRecord | None) -> str:
        """Project override, then the session's own cwd, then the default."""
        override = self._state.get_project_override(thread.thread_key)
        if override:
            return override
        if meta is not None and meta.cwd:
            self._state.set_project_override(thread.thread_key, meta.cwd)
            self._state.schedule_persist_project_overrides()
            return meta.cwd
        return self._config.default_cwd or os.getcwd()

    def _check_session(
        self, thread: ThreadState, meta: SessionRecord | None, cwd: str,
    ) -> None:
        """Refuse to resume a missing session or one from another project."""
        if meta is None:
            raise SessionNotFoundError(thread.thread_id)
        if meta.cwd and not cwd_matches(meta.cwd, cwd):
            logger.warning(
                "Session %s belongs to %s, not %s; clearing %s",
                thread.thread_id, meta.cwd, cwd, thread.thread_key,
            )
            self._state.clear_thread(thread.thread_key)
            self._state.schedule_persist_threads()
            raise StaleSessionError(thread.thread_id, meta.cwd, cwd)

    # ── Dispatch ──

    async def _dispatch(self, ctx: _TurnContext) -> _Outcome:
        provider = ctx.provider
        verb = "resuming" if ctx.thread_id else "starting"
        await ctx.channel.emit(StatusEvent(
            phase="starting",
            message=f"{provider.name}: {verb} session in {ctx.cwd}",
        ))
        if ctx.thread_id:
            return await self._resume(ctx)
        if provider.supports_interactive_session:
            return await self._new_interactive(ctx)
        if provider.transport is Transport.STREAM:
            return await self._new_stream(ctx)
        return await self._new_batch(ctx)

    async def _resume(self, ctx: _TurnContext) -> _Outcome:
        if ctx.provider.transport is Transport.STREAM:
            result = await self._stream(ctx, thread_id=ctx.thread_id)
            text, returned = result.text, result.thread_id
            mode = TurnMode.RESUME_STREAM
        else:
            parsed = await self._run_batch(ctx, thread_id=ctx.thread_id)
            text, returned = parsed.text, parsed.thread_id
            mode = TurnMode.RESUME_BATCH

        thread_id = ctx.thread_id
        if returned and returned != ctx.thread_id:
            logger.warning(
                "%s continued in session %s instead of %s",
                ctx.provider.name, returned, ctx.thread_id,
            )
            await ctx.channel.emit(WarningEvent(
                message=(
                    f"{ctx.provider.name} switched to session {returned} "
                    f"(was {ctx.thread_id})."
                ),
            ))
            thread_id = returned
        return _Outcome(text=text, thread_id=thread_id, mode=mode)

    async def _new_stream(self, ctx: _TurnContext) -> _Outcome:
        snapshot = await self._snapshot(ctx) if ctx.provider.tracks_sessions else None
        result = await self._stream(ctx)
        outcome = _Outcome(
            text=result.text,
            thread_id=result.thread_id or "",
            mode=TurnMode.NEW_STREAM,
        )
        if not outcome.thread_id and snapshot is not None:
            outcome.thread_id, outcome.reused_session = (
                await self._settle_new_session(ctx, snapshot)
            )
        return outcome

    async def _new_interactive(self, ctx: _TurnContext) -> _Outcome:
        """Create a session through the agent's interactive TUI under a pty.

        The TUI never exits on its own, so a watcher polls the session
        log and stops the process gracefully once the new session shows
        a completed turn. Hitting the timeout is fine as long as a
        session can be found afterwards.
        """
        provider = ctx.provider
        snapshot = await self._snapshot(ctx)
        command = wrap_prompt_command(
            ctx.request.prompt,
            provider.build_interactive_command(
                PROMPT_EXPRESSION, model=ctx.model, thinking=self._config.thinking,
            ),
            interactive=True,
        )
        run_cancel = ctx.cancel.linked() if ctx.cancel is not None else CancelToken()
        watcher = asyncio.create_task(
            self._watch_for_completion(snapshot, ctx.cwd, run_cancel)
        )
        exec_error: ProcessError | None = None
        try:
            output = await self._supervisor.run(
                command,
                timeout=self._config.interactive_timeout_seconds,
                max_buffer=self._config.max_buffer_bytes,
                cwd=ctx.cwd,
                cancel=run_cancel,
                use_pty=True,
            )
        except ProcessError as exc:
            exec_error = exc
            output = exc.stdout
        finally:
            watcher.cancel()
            for result in await asyncio.gather(watcher, return_exceptions=True):
                if isinstance(result, Exception):
                    logger.warning("Session completion watcher failed: %s", result)

        if isinstance(exec_error, ProcessSpawnError):
            raise TurnError.from_process_error(exec_error, provider.name) from exec_error
        graceful = (
            isinstance(exec_error, ProcessAbortedError)
            and exec_error.abort_reason in GRACEFUL_ABORT_REASONS
        )
        if isinstance(exec_error, ProcessAbortedError) and not graceful:
            raise TurnCancelledError(exec_error.abort_reason) from exec_error
        timed_out = (
            exec_error is not None and exec_error.stop_reason is StopReason.TIMEOUT
        )

        parsed = provider.parse_interactive_output(output)
        resolution = await self._resolver.resolve(snapshot, ctx.cwd)
        thread_id = resolution.found.id if resolution.found is not None else ""
        if not thread_id and not resolution.ambiguous:
            hinted = parsed.thread_id or ""
            if is_valid_session_id(hinted) and hinted not in snapshot.previous_ids:
                logger.info("Using session id %s printed by %s", hinted, provider.name)
                thread_id = hinted

        reused = False
        if not thread_id:
            if exec_error is not None and not (timed_out or graceful):
                raise TurnError.from_process_error(exec_error, provider.name) from exec_error
            thread_id, reused = await self._settle_new_session(ctx, snapshot, resolution)
        elif exec_error is not None and not (timed_out or graceful):
            logger.warning(
                "%s interactive run ended with %s, but session %s exists; keeping it",
                provider.name, exec_error, thread_id,
            )

        project = os.path.basename(ctx.cwd) or ctx.cwd
        if reused:
            canned = SESSION_REUSED_REPLY.format(project=project, thread_id=thread_id)
        else:
            canned = SESSION_ATTACHED_REPLY.format(project=project)

        if timed_out:
            if not reused:
                found = resolution.found
                if found is not None and found.id == thread_id:
                    source = found.source.value
                else:
                    source = "printed"
                if source != SessionSource.CLI.value:
                    logger.warning(
                        "%s timed out; accepting session %s from a %s source",
                        provider.name, thread_id, source,
                    )
            text = canned
        else:
            file_path = (
                resolution.found.file_path
                if resolution.found is not None and resolution.found.id == thread_id
                else None
            )
            turn_state = await asyncio.to_thread(
                self._store.get_turn_state,
                thread_id,
                since=snapshot.started_at,
                file_path=file_path,
            )
            text = (
                turn_state.assistant_message
                or parsed.text
                or canned
            )
        return _Outcome(
            text=text,
            thread_id=thread_id,
            mode=TurnMode.NEW_INTERACTIVE,
            reused_session=reused,
        )

    async def _new_batch(self, ctx: _TurnContext) -> _Outcome:
        provider = ctx.provider
        snapshot = await self._snapshot(ctx) if provider.tracks_sessions else None
        parsed = await self._run_batch(ctx)
        outcome = _Outcome(
            text=parsed.text,
            thread_id=parsed.thread_id or "",
            mode=TurnMode.NEW_BATCH,
        )
        if outcome.thread_id:
            return outcome
        if snapshot is not None:
            outcome.thread_id, outcome.reused_session = (
                await self._settle_new_session(ctx, snapshot)
            )
        elif provider.list_sessions_command():
            outcome.thread_id = await self._latest_listed_session(ctx)
        if not outcome.thread_id:
            logger.warning(
                "%s reported no session id; the next turn starts a new session",
                provider.name,
            )
        return outcome

    # ── Execution ──

    async def _stream(
        self, ctx: _TurnContext, thread_id: str | None = None,
    ) -> StreamResult:
        request = StreamRequest(
            prompt=ctx.request.prompt,
            cwd=ctx.cwd,
            thread_id=thread_id or None,
            model=ctx.model,
            thinking=self._config.thinking,
            timeout=self._config.agent_timeout_seconds,
        )
        return await run_with_limits(
            ctx.provider.stream_turn(request, ctx.channel),
            timeout=self._config.agent_timeout_seconds,
            cancel=ctx.cancel,
            agent_name=ctx.provider.name,
        )

    async def _run_batch(
        self, ctx: _TurnContext, thread_id: str | None = None,
    ) -> ParsedOutput:
        """Run the provider's batch command under the supervisor.

        A failed run whose captured output still parses is returned as a
        success with a warning.
        """
        provider = ctx.provider
        command = wrap_prompt_command(
            ctx.request.prompt,
            provider.build_command(
                PROMPT_EXPRESSION,
                thread_id=thread_id,
                model=ctx.model,
                thinking=self._config.thinking,
            ),
        )
        try:
            output = await self._supervisor.run(
                command,
                timeout=self._config.agent_timeout_seconds,
                max_buffer=self._config.max_buffer_bytes,
                cwd=ctx.cwd,
                cancel=ctx.cancel,
                use_pty=provider.needs_pty,
            )
            parsed = provider.parse_output(output)
        except ProcessAbortedError as exc:
            raise TurnCancelledError(exc.abort_reason) from exc
        except ProcessError as exc:
            output = exc.stdout
            parsed = provider.parse_output(output)
            if not self._recoverable(exc, parsed):
                raise TurnError.from_process_error(exc, provider.name) from exc
            logger.warning(
                "%s batch run failed (%s) but produced output; using it",
                provider.name, exc,
            )
            await ctx.channel.emit(WarningEvent(
                message=f"{provider.name}: {exc}. Returning the output it produced.",
            ))

        if not parsed.text:
            parsed.text = strip_ansi(output).strip()
        return parsed

    @staticmethod
    def _recoverable(exc: ProcessError, parsed: ParsedOutput) -> bool:
        if isinstance(exc, ProcessExitError):
            return parsed.usable
        if exc.stop_reason in (StopReason.TIMEOUT, StopReason.MAX_BUFFER):
            return bool(parsed.text.strip())
        return False

    async def _latest_listed_session(self, ctx: _TurnContext) -> str:
        provider = ctx.provider
        command = provider.list_sessions_command()
        try:
            output = await self._supervisor.run(
                command,
                timeout=self._config.session_list_timeout_seconds,
                max_buffer=self._config.max_buffer_bytes,
                cwd=ctx.cwd,
                cancel=ctx.cancel,
                use_pty=provider.needs_pty,
            )
        except ProcessError as exc:
            logger.warning("%s session listing failed: %s", provider.name, exc)
            return ""
        return provider.parse_session_list(output) or ""

    # ── Session discovery ──

    async def _snapshot(self, ctx: _TurnContext) -> Snapshot:
        return await asyncio.to_thread(
            take_snapshot,
            self._store,
            ctx.cwd,
            limit=self._config.snapshot_limit,
            clock=self._clock,
        )

    async def _watch_for_completion(
        self, snapshot: Snapshot, cwd: str, run_cancel: CancelToken,
    ) -> None:
        interval = self._config.interactive_poll_interval_seconds
        while not run_cancel.cancelled:
            await self._sleep(interval)
            resolution = await asyncio.to_thread(self._resolver.resolve_once, snapshot, cwd)
            found = resolution.found
            if found is None:
                continue
            turn_state = await asyncio.to_thread(
                self._store.get_turn_state,
                found.id,
                since=snapshot.started_at,
                file_path=found.file_path,
            )
            if turn_state.task_complete:
                logger.info("Session %s finished its first turn; stopping the TUI", found.id)
                run_cancel.cancel(ABORT_TURN_COMPLETE)
                return

    async def _settle_new_session(
        self,
        ctx: _TurnContext,
        snapshot: Snapshot,
        resolution: Resolution | None = None,
    ) -> tuple[str, bool]:
        """Thread id for a new-session turn, and whether it was reused."""
        if resolution is None:
            resolution = await self._resolver.resolve(snapshot, ctx.cwd)
        if resolution.found is not None:
            return resolution.found.id, False
        if resolution.ambiguous:
            raise AmbiguousSessionError(resolution.candidate_ids)
        if snapshot.count == 1 and snapshot.previous_latest_id:
            reused = snapshot.previous_latest_id
            logger.warning(
                "No new %s session in %s; reusing the only existing session %s",
                ctx.provider.name, ctx.cwd, reused,
            )
            await ctx.channel.emit(WarningEvent(
                message=(
                    f"No new {ctx.provider.name} session was found; "
                    f"continuing the existing session {reused}."
                ),
            ))
            return reused, True
        raise SessionCreationError(
            ctx.provider.name,
            f"No new session appeared in {ctx.cwd}.",
        )

    # ── Reconcile ──

    async def _reconcile(self, ctx: _TurnContext, outcome: _Outcome) -> str:
        """Record the session and project for the next turn. Never raises."""
        cwd = ctx.cwd
        if not outcome.thread_id:
            return cwd
        try:
            self._state.set_thread(ctx.thread_key, outcome.thread_id)
            self._state.record_turn(ctx.thread_key)
            self._state.schedule_persist_threads()
            if ctx.provider.tracks_sessions:
                meta = await asyncio.to_thread(self._store.get_session_meta, outcome.thread_id)
                if meta is not None and meta.cwd:
                    cwd = meta.cwd
                if self._state.get_project_override(ctx.thread_key) != cwd:
                    self._state.set_project_override(ctx.thread_key, cwd)
                    self._state.schedule_persist_project_overrides()
        except Exception as exc:
            logger.warning(
                "Could not record session %s for %s: %s",
                outcome.thread_id, ctx.thread_key, exc,
            )

        announced = any(
            isinstance(e, SessionEvent) and e.thread_id == outcome.thread_id
            for e in ctx.channel.events
        )
        if not announced:
            await ctx.channel.emit(SessionEvent(thread_id=outcome.thread_id, cwd=cwd))
        return cwd
