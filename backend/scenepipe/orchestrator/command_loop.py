"""Conversational command loop: ask the model for an action, run it, repeat.

Each iteration sends a compact history (the user's request plus a trace of
the last executed steps and their results), streams the model turn,
extracts one command and dispatches it. The loop ends on `complete`, on
cancellation, on a model transport failure, or at the iteration limit.
Tool failures and unusable model turns are fed back as ERROR: lines.
"""

import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Literal, Optional, Sequence

from pydantic import BaseModel

from scenepipe.config import CommandLoopConfig, GenerationConfig
from scenepipe.orchestrator.state import CancelToken
from scenepipe.schemas.command import (
    KNOWN_ACTIONS,
    Command,
    CompleteCommand,
    GenerateImageCommand,
    GenerateVideoCommand,
    UnknownCommand,
    command_to_json,
)
from scenepipe.schemas.job import JobStatus
from scenepipe.services.command_extractor import ExtractionError, extract_command
from scenepipe.services.job_poller import AsyncJobPoller, JobCancelled, raise_for_failure
from scenepipe.services.llm.base import ChatMessage, LLMAdapter

logger = logging.getLogger(__name__)

COMMAND_SYSTEM_PROMPT = """You are DirectorAI, an agent that creates images and short videos for the user.

Work step by step. On every turn reply with exactly ONE JSON object and nothing else:
{"action": "<action>", "params": {...}}

Actions:
- generate_image: {"prompt": "<detailed English image description>"}
- generate_video: {"image_url": "<URL of an image generated earlier>", "prompt": "<English motion description>", "seconds": 10}
- complete: {"message": "<final reply to the user, in the user's language>"}

Rules:
- To make a video, first generate an image, then call generate_video with that image's URL.
- Lines starting with TOOL_RESULT: report what your last action produced.
- Lines starting with ERROR: report a failure; retry with adjusted parameters or call complete and explain.
- Call complete as soon as the user's request is satisfied."""

# Keywords showing the user wants a video rather than just an image
VIDEO_INTENT_KEYWORDS = ("video", "animate", "animation", "clip", "movie", "视频", "动画", "制作")


class LoopOutcome(str, Enum):
    COMPLETED = "completed"
    ITERATION_LIMIT = "iteration_limit"
    CANCELLED = "cancelled"
    FAILED = "failed"


class LoopResult(BaseModel):
    """Terminal result of a command loop run."""

    outcome: LoopOutcome
    message: str
    iterations: int
    image_url: Optional[str] = None
    video_url: Optional[str] = None


class LoopEvent(BaseModel):
    """Observation emitted while the loop runs (for UIs and the CLI)."""

    kind: Literal["thinking", "tool_call", "tool_result", "error", "progress"]
    text: str


class ToolResult(BaseModel):
    ok: bool
    uri: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, error: str) -> "ToolResult":
        return cls(ok=False, error=error)


@dataclass
class _Step:
    command: Optional[Command]
    result: ToolResult


class _TurnCancelled(Exception):
    pass


def wants_video(user_message: str) -> bool:
    text = user_message.lower()
    return any(keyword in text for keyword in VIDEO_INTENT_KEYWORDS)


def _render_result(step: _Step, video_requested: bool) -> str:
    result = step.result
    if not result.ok:
        return (
            f"ERROR: {result.error}. You can retry with adjusted parameters, "
            'or call "complete" to explain the problem to the user.'
        )
    if isinstance(step.command, GenerateVideoCommand):
        return (
            f"TOOL_RESULT: Video generated successfully: {result.uri}. "
            'The task is done. You MUST now call "complete" to tell the user.'
        )
    if video_requested:
        return (
            f"TOOL_RESULT: Image generated successfully at {result.uri}. "
            "The user wants a VIDEO. Now call \"generate_video\" with "
            f'image_url="{result.uri}". Do not call generate_image again.'
        )
    return (
        f"TOOL_RESULT: Image generated successfully at {result.uri}. "
        'The user only asked for an image. You MUST now call "complete".'
    )


def build_history(
    user_message: str,
    steps: Sequence[_Step],
    max_trace_steps: int = 2,
) -> list[ChatMessage]:
    """Compact history: the user request plus a trace of recent steps.

    The latest successful image step is always kept so the model can still
    reference its URL after later failures.
    """
    history: list[ChatMessage] = [{"role": "user", "content": user_message}]
    selected = list(steps[-max_trace_steps:]) if max_trace_steps > 0 else []

    latest_image = next(
        (
            s for s in reversed(steps)
            if s.result.ok and isinstance(s.command, GenerateImageCommand)
        ),
        None,
    )
    if latest_image is not None and latest_image not in selected:
        selected.insert(0, latest_image)

    video_requested = wants_video(user_message)
    for step in selected:
        if step.command is not None:
            history.append({"role": "assistant", "content": command_to_json(step.command)})
        history.append({"role": "user", "content": _render_result(step, video_requested)})
    return history


class CommandLoop:
    """Bounded ask-then-act controller over an LLM and the generation service.

    Args:
        llm: Chat model producing the commands
        poller: Job poller (its service also generates images)
        config: Iteration limit, default video length, poll timeout
        generation: Video model used for generate_video
        on_event: Optional observer for thinking/tool events
    """

    def __init__(
        self,
        llm: LLMAdapter,
        poller: AsyncJobPoller,
        config: CommandLoopConfig,
        generation: GenerationConfig,
        on_event: Optional[Callable[[LoopEvent], None]] = None,
    ):
        self.llm = llm
        self.poller = poller
        self.service = poller.service
        self.config = config
        self.generation = generation
        self._on_event = on_event

    def _emit(self, kind: str, text: str) -> None:
        if self._on_event is not None:
            self._on_event(LoopEvent(kind=kind, text=text))

    async def run(self, user_message: str, cancel_token: Optional[CancelToken] = None) -> LoopResult:
        token = cancel_token or CancelToken()
        steps: list[_Step] = []
        image_url: Optional[str] = None
        video_url: Optional[str] = None

        def cancelled(iterations: int) -> LoopResult:
            logger.info(f"Command loop cancelled after {iterations} iterations")
            return LoopResult(
                outcome=LoopOutcome.CANCELLED,
                message="Cancelled by user.",
                iterations=iterations,
                image_url=image_url,
                video_url=video_url,
            )

        for iteration in range(1, self.config.max_iterations + 1):
            if token.is_cancelled():
                return cancelled(iteration - 1)

            history = build_history(user_message, steps)
            try:
                text = await self._stream_turn(history, token)
            except _TurnCancelled:
                return cancelled(iteration)
            except Exception as e:
                logger.error(f"Command loop: model turn {iteration} failed: {e}")
                return LoopResult(
                    outcome=LoopOutcome.FAILED,
                    message=f"The model service is unavailable, please try again later ({e}).",
                    iterations=iteration,
                    image_url=image_url,
                    video_url=video_url,
                )

            try:
                command = extract_command(text)
            except ExtractionError as e:
                logger.warning(f"Command loop: unusable model turn {iteration}: {e}")
                self._emit("error", str(e))
                steps.append(_Step(None, ToolResult.failure(
                    "your previous reply did not contain a JSON command. "
                    'Reply with exactly one object like {"action": "...", "params": {...}}'
                )))
                continue

            logger.info(f"Command loop: iteration {iteration} action {command.action!r}")
            if isinstance(command, CompleteCommand):
                return LoopResult(
                    outcome=LoopOutcome.COMPLETED,
                    message=command.message,
                    iterations=iteration,
                    image_url=image_url,
                    video_url=video_url,
                )

            self._emit("tool_call", command_to_json(command))
            try:
                result = await self._execute(command, token)
            except JobCancelled:
                return cancelled(iteration)
            if token.is_cancelled():
                return cancelled(iteration)

            if result.ok and isinstance(command, GenerateImageCommand):
                image_url = result.uri
            elif result.ok and isinstance(command, GenerateVideoCommand):
                video_url = result.uri
            self._emit("tool_result" if result.ok else "error", result.uri or result.error or "")
            steps.append(_Step(command, result))

        logger.warning(f"Command loop: reached iteration limit ({self.config.max_iterations})")
        return LoopResult(
            outcome=LoopOutcome.ITERATION_LIMIT,
            message=(
                f"Stopped after reaching the iteration limit ({self.config.max_iterations}) "
                "without finishing the task."
            ),
            iterations=self.config.max_iterations,
            image_url=image_url,
            video_url=video_url,
        )

    async def _stream_turn(self, history: list[ChatMessage], token: CancelToken) -> str:
        parts: list[str] = []
        async with aclosing(self.llm.stream_chat(history, system_prompt=COMMAND_SYSTEM_PROMPT)) as stream:
            async for chunk in stream:
                if token.is_cancelled():
                    raise _TurnCancelled()
                if chunk.kind == "thinking":
                    self._emit("thinking", chunk.text)
                else:
                    parts.append(chunk.text)
        if token.is_cancelled():
            raise _TurnCancelled()
        return "".join(parts)

    async def _execute(self, command: Command, token: CancelToken) -> ToolResult:
        """Run one tool. Failures come back as ToolResult, cancellation raises."""
        if isinstance(command, GenerateImageCommand):
            if not command.prompt.strip():
                return ToolResult.failure("generate_image requires a non-empty prompt")
            try:
                uri = await self.service.generate_image(command.prompt)
            except Exception as e:
                logger.warning(f"Command loop: image generation failed: {e}")
                return ToolResult.failure(f"Image generation failed: {e}")
            return ToolResult(ok=True, uri=uri)

        if isinstance(command, GenerateVideoCommand):
            if not command.image_url.strip():
                return ToolResult.failure("generate_video requires the image_url of a generated image")
            seconds = command.seconds or self.config.default_video_seconds

            def on_progress(percent: int, status: JobStatus) -> None:
                self._emit("progress", f"video {status.value} {percent}%")

            try:
                handle = raise_for_failure(await self.poller.run(
                    command.prompt,
                    [command.image_url],
                    seconds,
                    self.generation.video_model,
                    timeout=self.config.poll_timeout_seconds,
                    on_progress=on_progress,
                    is_cancelled=token.is_cancelled,
                ))
            except JobCancelled:
                raise
            except Exception as e:
                logger.warning(f"Command loop: video generation failed: {e}")
                return ToolResult.failure(f"Video generation failed: {e}")
            return ToolResult(ok=True, uri=handle.result_uri)

        if isinstance(command, UnknownCommand):
            return ToolResult.failure(
                f"{command.reason or 'unknown action: ' + command.action}. "
                f"Valid actions: {', '.join(KNOWN_ACTIONS)}"
            )

        return ToolResult.failure(f"unsupported action: {command.action}")
