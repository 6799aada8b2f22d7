"""Completion orchestration.

Entry points used by the facade:
- ``create_completion`` / ``create_completion_stream``: chat variants
- ``generate_images``: text-to-image through the general chat variant
- ``create_video_completion`` / ``create_video_completion_stream``: the
  digital human workflow (first-step stream -> task submit -> generation poll)

Referenced files are uploaded once, before the retry envelope starts, so a
retried attempt resends the same message and reference set. In streaming
mode the envelope covers connecting and the accepted response only; once
frames flow to the caller, failures end the stream with the sentinel.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Optional, Sequence

import aiohttp

from ..core.config import DEFAULT_IMAGE_PROMPT_PREFIX, DEFAULT_VIDEO_DONE_TEMPLATE, Valves
from ..core.errors import (
    TongyiBridgeError,
    UpstreamBusinessError,
    UpstreamProtocolError,
)
from ..core.logging_system import RequestLogger
from ..core.timing_logger import timed, timing_mark
from ..core.utils import new_uuid, unix_timestamp
from ..models.variants import DEFAULT_MODEL, DIGITAL_PEOPLE_MODEL, VariantProfile, resolve_variant
from ..storage.references import FileReferencePipeline, HttpClientFactory
from ..streaming.accumulator import find_asset_urls
from ..streaming.events import decode_vendor_record
from ..streaming.outbound import relay_frames
from ..streaming.sse_parser import VendorEvent
from ..streaming.transcoder import (
    DONE_FRAME,
    StreamTranscoder,
    TranscodeOutcome,
    completion_chunk,
    completion_envelope,
    sse_frame,
)
from .messages import extract_ref_file_urls, messages_prepare, parse_conversation_ref
from .poller import PollResult, TaskHandle, VideoAsset, VideoProgress, classify_video_status, poll
from .retry import RetryContext, RetryEnvelope
from .session import ConversationJanitor, VendorSession
from .vendor_client import VendorClient, remove_conversation

LOGGER = logging.getLogger(__name__)

EVENT_STREAM_ACCEPT = "text/event-stream"
AGENT_PRIVATE_ONLY = "AGENT_PRIVATE_ONLY"
_IMAGES_FILTERED = "内容由于不合规被过滤，未能生成图像"

_STEP_MESSAGES = {
    "Outline": "正在生成大纲...\n",
    "VideoCombine": "正在合成视频...\n",
}
_PROGRESS_REMINDER_EVERY = 10


@dataclass(frozen=True, slots=True)
class VideoFirstStep:
    """Identifiers returned by the first digital human conversation step."""

    card_code: str
    msg_id: str
    session_id: str

    @property
    def conversation_id(self) -> str:
        return f"{self.session_id}-{self.msg_id}"


class _VideoProgressReporter:
    """Turn pending video polls into progress messages."""

    def __init__(self, emit: Callable[[str], None], interval: float) -> None:
        self._emit = emit
        self._interval = interval
        self._last_step = ""

    def on_pending(self, result: PollResult, attempt: int) -> None:
        progress = result.payload
        step = progress.current_step if isinstance(progress, VideoProgress) else "unknown"
        if step != self._last_step:
            self._emit(_STEP_MESSAGES.get(step, f"处理中... ({step})\n"))
            self._last_step = step
        elapsed_checks = attempt - 1
        if elapsed_checks > 0 and elapsed_checks % _PROGRESS_REMINDER_EVERY == 0:
            self._emit(f"继续处理中... ({int(elapsed_checks * self._interval)}秒)\n")


class CompletionOrchestrator:
    """Run completions against the vendor for one configured deployment."""

    def __init__(
        self,
        valves: Valves,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
        http_client_factory: Optional[HttpClientFactory] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        janitor: Optional[ConversationJanitor] = None,
    ) -> None:
        self.valves = valves
        self._session_factory = session_factory
        self._http_client_factory = http_client_factory
        self._sleep = sleep
        self.janitor = janitor or ConversationJanitor(self._delete_conversation)
        self.retry = RetryEnvelope(
            max_attempts=valves.MAX_ATTEMPTS,
            backoff=valves.RETRY_DELAY_SECONDS,
            sleep=sleep,
        )

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _session(self) -> VendorSession:
        return VendorSession(self.valves, session_factory=self._session_factory)

    async def _delete_conversation(self, session_id: str, ticket: str) -> None:
        await remove_conversation(self.valves, session_id, ticket, session_factory=self._session_factory)

    def _transcoder(self, variant: VariantProfile) -> StreamTranscoder:
        return StreamTranscoder(
            variant.name,
            variant,
            moderation_notice=self.valves.MODERATION_NOTICE,
            error_suffix_template=self.valves.ERROR_SUFFIX_TEMPLATE,
        )

    @timed
    async def upload_references(self, messages: Sequence[Any], ticket: str) -> list[dict[str, Any]]:
        """Upload files referenced by the last message."""
        urls = extract_ref_file_urls(messages)
        if not urls:
            return []
        async with self._session() as session:
            pipeline = FileReferencePipeline(
                self.valves,
                VendorClient(self.valves, session, ticket),
                http_client_factory=self._http_client_factory,
                sleep=self._sleep,
            )
            return await pipeline.upload_all(urls)

    def build_payload(
        self,
        variant: VariantProfile,
        messages: Sequence[Any],
        refs: Sequence[dict[str, Any]],
        *,
        conversation_id: Optional[str] = None,
        search_type: str = "",
    ) -> dict[str, Any]:
        """Build the ``/dialog/conversation`` request body."""
        session_id, parent_msg_id = parse_conversation_ref(conversation_id)
        return {
            "mode": "chat",
            "model": "",
            "action": "next",
            "userAction": "chat",
            "requestId": new_uuid(separator=False),
            "sessionId": session_id,
            "sessionType": "text_chat",
            "parentMsgId": parent_msg_id,
            "params": variant.build_params(self.valves, search_type=search_type),
            "contents": messages_prepare(
                messages,
                refs,
                is_ref_conversation=bool(session_id),
                ext=variant.content_ext(),
            ),
        }

    async def _open_conversation(
        self,
        variant: VariantProfile,
        payload: dict[str, Any],
        ticket: str,
    ) -> tuple[VendorSession, aiohttp.ClientResponse]:
        """Open a session and send the conversation request; closes the session on failure."""
        session = self._session()
        try:
            response = await session.converse(
                f"{variant.base_url(self.valves)}/dialog/conversation",
                payload,
                variant.headers(self.valves, ticket, accept=EVENT_STREAM_ACCEPT),
            )
        except BaseException:
            await session.close()
            raise
        return session, response

    # ------------------------------------------------------------------
    # Chat completions
    # ------------------------------------------------------------------

    @timed
    async def create_completion(
        self,
        model: Optional[str],
        messages: Sequence[Any],
        ticket: str,
        *,
        conversation_id: Optional[str] = None,
        search_type: str = "",
    ) -> dict[str, Any]:
        """Return one aggregated ``chat.completion`` object."""
        variant = resolve_variant(model)
        if variant.kind == "video":
            return await self.create_video_completion(messages, ticket, conversation_id=conversation_id)
        refs = await self.upload_references(messages, ticket)

        async def _attempt(context: RetryContext) -> dict[str, Any]:
            payload = self.build_payload(
                variant, messages, refs, conversation_id=conversation_id, search_type=search_type
            )
            session, response = await self._open_conversation(variant, payload, ticket)
            async with session, contextlib.aclosing(session.events(response)) as events:
                outcome: asyncio.Future[TranscodeOutcome] = asyncio.get_running_loop().create_future()
                self.janitor.observe(outcome, ticket)
                result = await self._transcoder(variant).aggregate(events, outcome)
            RequestLogger.set_conversation(result["id"] or None)
            LOGGER.info("Completion %s finished on attempt %d", result["id"], context.attempt)
            return result

        return await self.retry.run(_attempt, label=f"{variant.name} completion")

    @timed
    async def create_completion_stream(
        self,
        model: Optional[str],
        messages: Sequence[Any],
        ticket: str,
        *,
        conversation_id: Optional[str] = None,
        search_type: str = "",
    ) -> AsyncIterator[str]:
        """Return an iterator of SSE frames ending with ``data: [DONE]``."""
        variant = resolve_variant(model)
        if variant.kind == "video":
            return await self.create_video_completion_stream(messages, ticket, conversation_id=conversation_id)
        refs = await self.upload_references(messages, ticket)

        async def _attempt(context: RetryContext) -> tuple[VendorSession, aiohttp.ClientResponse]:
            payload = self.build_payload(
                variant, messages, refs, conversation_id=conversation_id, search_type=search_type
            )
            return await self._open_conversation(variant, payload, ticket)

        session, response = await self.retry.run(_attempt, label=f"{variant.name} stream")
        return relay_frames(
            self._chat_frames(variant, session, response, ticket),
            maxsize=self.valves.STREAM_QUEUE_MAXSIZE,
            put_timeout=self.valves.STREAM_QUEUE_PUT_TIMEOUT_SECONDS,
        )

    async def _chat_frames(
        self,
        variant: VariantProfile,
        session: VendorSession,
        response: aiohttp.ClientResponse,
        ticket: str,
    ) -> AsyncGenerator[str, None]:
        outcome: asyncio.Future[TranscodeOutcome] = asyncio.get_running_loop().create_future()
        self.janitor.observe(outcome, ticket)
        events = session.events(response)
        frames = self._transcoder(variant).stream(events, outcome)
        try:
            async for frame in frames:
                yield frame
        finally:
            await frames.aclose()
            await events.aclose()
            await session.close()
            timing_mark("stream_session_closed")

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    @timed
    async def generate_images(self, prompt: str, ticket: str) -> list[str]:
        """Generate images for ``prompt`` and return their normalized URLs."""
        variant = resolve_variant(DEFAULT_MODEL)
        text = prompt if "画" in prompt else f"{DEFAULT_IMAGE_PROMPT_PREFIX}{prompt}"
        messages = [{"role": "user", "content": text}]

        async def _attempt(context: RetryContext) -> list[str]:
            payload = self.build_payload(variant, messages, [])
            payload["params"] = {"fileUploadBatchId": new_uuid()}
            session, response = await self._open_conversation(variant, payload, ticket)
            async with session, contextlib.aclosing(session.events(response)) as events:
                session_id, urls = await self._collect_images(events)
            self.janitor.schedule(session_id, ticket)
            return urls

        return await self.retry.run(_attempt, label="image generation")

    async def _collect_images(self, events: AsyncIterator[VendorEvent]) -> tuple[Optional[str], list[str]]:
        session_id: Optional[str] = None
        urls: list[str] = []
        async for event in events:
            record = decode_vendor_record(event)
            if record is None:
                continue
            if session_id is None and record.session_id:
                session_id = record.session_id
            if record.content_from == "text2image":
                text = "".join(
                    part.text
                    for part in record.contents
                    if part.text is not None
                )
                for url in find_asset_urls(text):
                    if url not in urls:
                        urls.append(url)
            if record.is_terminal:
                if not record.can_share or not urls:
                    raise UpstreamBusinessError(_IMAGES_FILTERED, error_code="CONTENT_FILTERED")
                if record.error_code:
                    raise UpstreamBusinessError(
                        self.valves.ERROR_SUFFIX_TEMPLATE.format(error_code=record.error_code),
                        error_code=str(record.error_code),
                    )
                break
        if not urls:
            LOGGER.warning("Image stream closed before any image was produced")
            raise UpstreamBusinessError(_IMAGES_FILTERED, error_code="CONTENT_FILTERED")
        return session_id, urls

    # ------------------------------------------------------------------
    # Digital human video
    # ------------------------------------------------------------------

    def _video_variant(self) -> VariantProfile:
        if not self.valves.DIGITAL_PEOPLE_AGENT_ID:
            raise UpstreamBusinessError(
                "DIGITAL_PEOPLE_AGENT_ID is not configured", error_code="AGENT_NOT_CONFIGURED"
            )
        return resolve_variant(DIGITAL_PEOPLE_MODEL)

    async def _first_video_step(self, events: AsyncIterator[VendorEvent]) -> VideoFirstStep:
        card_code = msg_id = session_id = ""
        async for event in events:
            try:
                record = decode_vendor_record(event)
            except UpstreamProtocolError as exc:
                LOGGER.warning("Ignoring invalid first-step event: %s", exc)
                continue
            if record is None:
                continue
            if record.error_code == AGENT_PRIVATE_ONLY:
                raise UpstreamBusinessError(
                    f"[数字人Agent访问失败]: {record.error_msg} (errorCode: {record.error_code})",
                    error_code=AGENT_PRIVATE_ONLY,
                    error_msg=record.error_msg,
                )
            session_id = session_id or (record.session_id or "")
            msg_id = msg_id or (record.msg_id or "")
            for part in record.contents:
                if part.role == "workflow" and part.content_type == "card" and part.card_code:
                    card_code = part.card_code
        if not (card_code and msg_id and session_id):
            raise UpstreamProtocolError("Failed to get required information from digital people first step")
        return VideoFirstStep(card_code=card_code, msg_id=msg_id, session_id=session_id)

    async def _submit_video_job(
        self,
        variant: VariantProfile,
        messages: Sequence[Any],
        refs: Sequence[dict[str, Any]],
        ticket: str,
        conversation_id: Optional[str],
    ) -> tuple[VideoFirstStep, TaskHandle]:
        async def _attempt(context: RetryContext) -> tuple[VideoFirstStep, TaskHandle]:
            payload = self.build_payload(variant, messages, refs, conversation_id=conversation_id)
            session, response = await self._open_conversation(variant, payload, ticket)
            async with session:
                async with contextlib.aclosing(session.events(response)) as events:
                    first = await self._first_video_step(events)
                task_id = await VendorClient(self.valves, session, ticket, variant).submit_video_task(
                    card_code=first.card_code,
                    msg_id=first.msg_id,
                    session_id=first.session_id,
                )
            LOGGER.info("Digital people task %s submitted for %s", task_id, first.conversation_id)
            return first, TaskHandle(task_id)

        return await self.retry.run(_attempt, label="digital people submit")

    async def _poll_video(
        self,
        variant: VariantProfile,
        handle: TaskHandle,
        ticket: str,
        on_pending: Optional[Callable[[PollResult, int], Any]] = None,
    ) -> PollResult:
        async with self._session() as session:
            client = VendorClient(self.valves, session, ticket, variant)
            return await poll(
                handle.task_id,
                client.video_task_status,
                classify_video_status,
                initial_delay=self.valves.VIDEO_INITIAL_DELAY_SECONDS,
                interval=self.valves.VIDEO_POLL_INTERVAL_SECONDS,
                max_attempts=self.valves.VIDEO_MAX_ATTEMPTS,
                sleep=self._sleep,
                on_pending=on_pending,
            )

    @staticmethod
    def _video_extra(asset: VideoAsset) -> dict[str, Any]:
        return {"video_url": asset.video_url, "poster": asset.poster}

    @timed
    async def create_video_completion(
        self,
        messages: Sequence[Any],
        ticket: str,
        *,
        conversation_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Run the whole video workflow and return one ``chat.completion``."""
        variant = self._video_variant()
        refs = await self.upload_references(messages, ticket)
        first, handle = await self._submit_video_job(variant, messages, refs, ticket, conversation_id)

        def _log_pending(result: PollResult, attempt: int) -> None:
            progress = result.payload
            step = progress.current_step if isinstance(progress, VideoProgress) else "unknown"
            LOGGER.info("Task %s pending at step %s (check %d)", handle.task_id, step, attempt)

        result = await self._poll_video(variant, handle, ticket, _log_pending)
        asset: VideoAsset = result.unwrap(handle.task_id)
        self.janitor.schedule(first.session_id, ticket)
        return completion_envelope(
            completion_id=first.conversation_id,
            model=variant.name,
            content=DEFAULT_VIDEO_DONE_TEMPLATE.format(video_url=asset.video_url, poster=asset.poster or ""),
            created=unix_timestamp(),
            extra=self._video_extra(asset),
        )

    @timed
    async def create_video_completion_stream(
        self,
        messages: Sequence[Any],
        ticket: str,
        *,
        conversation_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Submit the video job, then stream progress frames until it finishes."""
        variant = self._video_variant()
        refs = await self.upload_references(messages, ticket)
        first, handle = await self._submit_video_job(variant, messages, refs, ticket, conversation_id)
        return relay_frames(
            self._video_frames(variant, first, handle, ticket),
            maxsize=self.valves.STREAM_QUEUE_MAXSIZE,
            put_timeout=self.valves.STREAM_QUEUE_PUT_TIMEOUT_SECONDS,
        )

    async def _video_frames(
        self,
        variant: VariantProfile,
        first: VideoFirstStep,
        handle: TaskHandle,
        ticket: str,
    ) -> AsyncGenerator[str, None]:
        created = unix_timestamp()
        chunk_id = first.conversation_id

        def _frame(content: str, **kwargs: Any) -> str:
            return sse_frame(
                completion_chunk(
                    chunk_id=chunk_id,
                    model=variant.name,
                    delta={"content": content},
                    created=created,
                    **kwargs,
                )
            )

        messages: asyncio.Queue[Optional[str]] = asyncio.Queue()
        reporter = _VideoProgressReporter(messages.put_nowait, self.valves.VIDEO_POLL_INTERVAL_SECONDS)

        async def _run_poll() -> PollResult:
            try:
                return await self._poll_video(variant, handle, ticket, reporter.on_pending)
            finally:
                messages.put_nowait(None)

        completed = False
        poll_task: Optional[asyncio.Task] = None
        try:
            yield sse_frame(
                completion_chunk(
                    chunk_id="",
                    model=variant.name,
                    delta={"role": "assistant", "content": ""},
                    created=created,
                )
            )
            yield _frame("任务已提交，正在生成视频...\n")
            yield _frame(f"任务已提交，等待{int(self.valves.VIDEO_INITIAL_DELAY_SECONDS)}秒后开始生成...\n")
            poll_task = asyncio.create_task(_run_poll(), name=f"video-poll-{handle.task_id}")
            try:
                while True:
                    message = await messages.get()
                    if message is None:
                        break
                    yield _frame(message)
                asset: VideoAsset = (await poll_task).unwrap(handle.task_id)
                completed = True
                poster_line = f"封面图片：{asset.poster}" if asset.poster else ""
                yield _frame(
                    f"\n数字人视频生成完成！\n\n视频地址：{asset.video_url}\n{poster_line}",
                    finish_reason="stop",
                    usage={"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
                    extra=self._video_extra(asset),
                )
            except TongyiBridgeError as exc:
                LOGGER.warning("Digital people task %s failed: %s", handle.task_id, exc)
                yield _frame(f"\n生成失败：{exc}", finish_reason="stop")
            yield DONE_FRAME
        finally:
            if poll_task is not None and not poll_task.done():
                poll_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await poll_task
            if completed:
                self.janitor.schedule(first.session_id, ticket)
