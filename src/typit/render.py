"""Render ``,typ`` commands with the Typst compiler and reply with the result."""

from __future__ import annotations

import asyncio
import contextlib
import io
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from loguru import logger
from PIL import Image

from typit.backend import MessagingBackend
from typit.errors import RenderError, RenderTimeout
from typit.events import Membership, TextMessage
from typit.replies import FormattedError, ImageReply, PlainText, ReplyPayload, build_reply_content, format_error

COMMAND_PREFIX = ",typ"
FRESHNESS_WINDOW = timedelta(seconds=5)
DEFAULT_RENDER_TIMEOUT_SECONDS = 25.0
EMPTY_COMMAND_REPLY = "<text> is needed to typeset"
TIMEOUT_REPLY = "Your code took too long to render"
IMAGE_MIMETYPE = "image/png"
IMAGE_FILENAME = "typst.png"

PREAMBLE = """
#import "@preview/catppuccin:1.0.0": catppuccin, flavors;
#show: catppuccin.with(flavors.mocha);
#set page(height: auto, width: auto, margin: 28pt);
#set text(size: 44pt);
"""


def render_source(command: str) -> str:
    return f"{PREAMBLE}\n{command}"


def image_size(data: bytes) -> tuple[int, int]:
    """Return ``(width, height)`` of an encoded image."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            return image.size
    except OSError as exc:
        raise RenderError(f"compiler output is not a valid image: {exc}") from exc


@dataclass(frozen=True)
class CompileResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> bytes:
        return self.stdout + self.stderr


class TypstCompiler:
    """Run ``typst compile - - --format png`` with a deadline on its output."""

    def __init__(
        self,
        executable: str = "typst",
        *,
        timeout: float = DEFAULT_RENDER_TIMEOUT_SECONDS,
        env: Mapping[str, str] | None = None,
        command: Sequence[str] | None = None,
    ) -> None:
        self.timeout = timeout
        self.env = dict(env) if env is not None else None
        self.command = list(command) if command is not None else [executable, "compile", "-", "-", "--format", "png"]

    async def compile(self, source: str) -> CompileResult:
        """Compile ``source`` read from stdin.

        Raises:
            RenderTimeout: stdout was not complete within ``timeout`` seconds; the child is killed.
            RenderError: the process could not be started or fed.
        """
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self.env,
            )
        except OSError as exc:
            raise RenderError(f"cannot start {self.command[0]}: {exc}") from exc

        assert process.stdin is not None and process.stdout is not None and process.stderr is not None
        # Drained alongside stdout so a full stderr pipe cannot stall the compiler.
        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            try:
                process.stdin.write(source.encode("utf-8"))
                await process.stdin.drain()
                process.stdin.close()
                await process.stdin.wait_closed()
            except OSError as exc:
                raise RenderError(f"cannot write compiler input: {exc}") from exc

            try:
                async with asyncio.timeout(self.timeout):
                    stdout = await process.stdout.read()
            except TimeoutError:
                raise RenderTimeout(f"no compiler output after {self.timeout}s") from None

            stderr = await stderr_task
            returncode = await process.wait()
        except BaseException:
            await _kill(process, stderr_task)
            raise
        return CompileResult(returncode=returncode, stdout=stdout, stderr=stderr)


async def _kill(process: asyncio.subprocess.Process, stderr_task: asyncio.Task[bytes]) -> None:
    stderr_task.cancel()
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
    await asyncio.gather(stderr_task, return_exceptions=True)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RenderPipeline:
    """Message handler turning ``,typ <code>`` into a rendered image reply."""

    def __init__(
        self,
        backend: MessagingBackend,
        compiler: TypstCompiler,
        *,
        prefix: str = COMMAND_PREFIX,
        freshness: timedelta = FRESHNESS_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.backend = backend
        self.compiler = compiler
        self.prefix = prefix
        self.freshness = freshness
        self._clock = clock

    async def __call__(self, event: TextMessage) -> None:
        await self.handle(event)

    def command_of(self, event: TextMessage) -> str | None:
        """Return the code following the prefix, or ``None`` when the message is not for us."""
        if event.room_membership is not Membership.JOIN:
            return None
        if event.sender == self.backend.user_id:
            return None
        if abs(self._clock() - event.origin_server_ts) >= self.freshness:
            return None
        if event.msgtype != "m.text":
            return None
        if not event.body.startswith(self.prefix):
            return None
        return event.body[len(self.prefix) :]

    async def handle(self, event: TextMessage) -> ReplyPayload | None:
        command = self.command_of(event)
        if command is None:
            return None
        logger.info("render.start room_id={} event_id={} sender={}", event.room_id, event.event_id, event.sender)
        payload = await self.render(command)
        await self.backend.send_message(event.room_id, build_reply_content(payload, event))
        logger.info(
            "render.replied room_id={} event_id={} reply={}", event.room_id, event.event_id, type(payload).__name__
        )
        return payload

    async def render(self, command: str) -> ReplyPayload:
        if not command.strip():
            return PlainText(EMPTY_COMMAND_REPLY)

        try:
            result = await self.compiler.compile(render_source(command))
        except RenderTimeout as exc:
            logger.warning("render.timeout error={}", exc)
            return PlainText(TIMEOUT_REPLY)

        if not result.success:
            logger.info("render.compile_failed returncode={}", result.returncode)
            return self._diagnostics(result)

        width, height = image_size(result.stdout)
        content_uri = await self.backend.upload_media(result.stdout, IMAGE_MIMETYPE, IMAGE_FILENAME)
        return ImageReply(
            content_uri=content_uri,
            width=width,
            height=height,
            size=len(result.stdout),
            mimetype=IMAGE_MIMETYPE,
            filename=IMAGE_FILENAME,
        )

    @staticmethod
    def _diagnostics(result: CompileResult) -> FormattedError:
        return format_error(result.output.decode("utf-8", errors="replace"))
