"""Bot bootstrap: session restore or login, handler wiring, sync loop."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import NoReturn

from loguru import logger

from typit.backend import MautrixBackend, MessagingBackend
from typit.config import Settings
from typit.errors import BackendError, ConfigurationError
from typit.events import MembershipChange, TextMessage
from typit.membership import MembershipAutoJoiner
from typit.render import RenderPipeline, TypstCompiler
from typit.session import Session, SessionStore
from typit.sync import SyncEngine


@dataclass
class TypitApp:
    """Wired components of one running bot."""

    backend: MessagingBackend
    store: SessionStore
    engine: SyncEngine
    pipeline: RenderPipeline
    joiner: MembershipAutoJoiner

    async def run(self) -> NoReturn:
        try:
            await self.engine.run()
        finally:
            await self.backend.close()


async def open_session(backend: MessagingBackend, store: SessionStore, settings: Settings) -> Session:
    """Restore the stored session, or log in and create the record."""
    session = store.load()
    if session is not None:
        logger.info("session.restore path={} user_id={}", store.path, session.credentials.user_id)
        try:
            await backend.restore(session.credentials)
        except BackendError as exc:
            raise ConfigurationError(f"cannot restore session for {session.credentials.user_id}: {exc}") from exc
        return session

    logger.info("session.login path={} (no previous session found)", store.path)
    if not settings.username or not settings.password:
        raise ConfigurationError("no session record found: set TYPIT_USERNAME and TYPIT_PASSWORD to log in")
    try:
        credentials = await backend.login(
            settings.username,
            settings.password,
            settings.device_name or settings.username,
        )
    except BackendError as exc:
        raise ConfigurationError(f"login failed for {settings.username}: {exc}") from exc
    return store.create(credentials)


def build_compiler(settings: Settings) -> TypstCompiler:
    settings.package_cache_dir.mkdir(parents=True, exist_ok=True)
    env = {**os.environ, "TYPST_PACKAGE_CACHE_PATH": str(settings.package_cache_dir.resolve())}
    return TypstCompiler(settings.compiler, timeout=settings.render_timeout_seconds, env=env)


async def build_app(settings: Settings, backend: MessagingBackend | None = None) -> TypitApp:
    """Connect, authenticate and wire every handler onto a sync engine."""
    if backend is None:
        backend = await MautrixBackend.connect(settings.homeserver)
    store = SessionStore(settings.session_path)
    try:
        session = await open_session(backend, store, settings)
    except BaseException:
        await backend.close()
        raise

    engine = SyncEngine(
        backend,
        store,
        session,
        timeout_ms=settings.sync_timeout_ms,
        retry_seconds=settings.sync_retry_seconds,
    )
    pipeline = RenderPipeline(backend, build_compiler(settings))
    joiner = MembershipAutoJoiner(backend)
    engine.add_handler(TextMessage, pipeline)
    engine.add_handler(MembershipChange, joiner)
    return TypitApp(backend=backend, store=store, engine=engine, pipeline=pipeline, joiner=joiner)


async def run_bot(settings: Settings) -> NoReturn:
    app = await build_app(settings)
    await app.run()
