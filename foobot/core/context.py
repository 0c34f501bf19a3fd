"""
Application Context - Component Wiring
======================================

Purpose
-------
Build every long-lived component from one `BotSettings` snapshot in
dependency order, hand them to each other explicitly, and tear them down in
reverse.

Responsibilities
----------------
- Load templates (fatal `TemplateLoadError` on failure)
- Initialize the Store (fatal `StoreUnavailableError` on failure)
- Build and freeze the HandlerRegistry with the built-in commands
- Build the Dispatcher
- Create a fresh Session per supervisor run, keeping generations monotonic
  across restarts so late replies from a crashed session are discarded

Non-Responsibilities
--------------------
- Restart policy and signal handling (foobot.main)
- Environment parsing (Config)

Initialization Order:
    1. Renderer (templates)
    2. Store
    3. HandlerRegistry (frozen)
    4. Dispatcher

Shutdown Order (Reverse):
    1. Dispatcher (drain in-flight commands)
    2. Store
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional

from foobot.commands.builtin import register_builtin_commands
from foobot.commands.expansion import ActionRegistry
from foobot.core.config.config import BotSettings
from foobot.core.database.store import Store
from foobot.core.dispatch.dispatcher import Dispatcher
from foobot.core.dispatch.registry import HandlerRegistry
from foobot.core.logging.logger import get_logger, logging_stats
from foobot.core.render.renderer import Renderer
from foobot.core.session.session import Session
from foobot.core.session.state import SessionStateMachine
from foobot.protocol.frames import FrameCodec, TransportFactory
from foobot.protocol.irc import IrcCodec
from foobot.protocol.transport import stream_transport_factory

logger = get_logger(__name__)

DISPATCHER_DRAIN_TIMEOUT = 5.0


class ApplicationContext:
    """
    Usage:
        context = ApplicationContext(settings)
        await context.initialize()
        session = context.create_session()
        await session.run()
        await context.shutdown()
    """

    def __init__(
        self,
        settings: BotSettings,
        *,
        codec: Optional[FrameCodec] = None,
        transport_factory: Optional[TransportFactory] = None,
        actions: Optional[ActionRegistry] = None,
        store: Optional[Store] = None,
    ) -> None:
        self.settings = settings
        self._codec = codec or IrcCodec()
        self._transport_factory = transport_factory or stream_transport_factory(
            settings.endpoint, timeout=settings.connect_timeout
        )
        self._actions = actions
        self._store = store

        self.renderer: Optional[Renderer] = None
        self.registry: Optional[HandlerRegistry] = None
        self.dispatcher: Optional[Dispatcher] = None
        self.session: Optional[Session] = None

        self._last_generation = 0
        self._initialized = False

    @property
    def store(self) -> Optional[Store]:
        return self._store

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ========================================================================
    # INITIALIZATION
    # ========================================================================

    async def initialize(self) -> None:
        """
        Build every component. Fatal errors propagate unchanged after the
        partially built components are released.
        """
        if self._initialized:
            raise RuntimeError("ApplicationContext already initialized")

        start_time = time.perf_counter()
        try:
            step = time.perf_counter()
            self.renderer = Renderer.load(self.settings.template_dir)
            logger.info("Templates ready (%.2fms)", (time.perf_counter() - step) * 1000)

            step = time.perf_counter()
            if self._store is None:
                self._store = Store.from_settings(self.settings)
            await self._store.initialize()
            logger.info("Store ready (%.2fms)", (time.perf_counter() - step) * 1000)

            self.registry = HandlerRegistry()
            register_builtin_commands(
                self.registry,
                actions=self._actions,
                super_users=self.settings.super_users,
            )
            self.registry.freeze()

            self.dispatcher = Dispatcher.from_settings(
                self.settings, self.registry, self.renderer, self._store
            )

        except Exception as exc:
            logger.critical(
                "Application context initialization failed",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            await self.shutdown()
            raise

        self._initialized = True
        logger.info(
            "Application context initialized",
            extra={
                "duration_ms": (time.perf_counter() - start_time) * 1000,
                "handlers": len(self.registry),
                "templates": len(self.renderer.names),
            },
        )

    def create_session(self) -> Session:
        """Create a new Session whose generations continue after the previous one."""
        if not self._initialized or self.dispatcher is None:
            raise RuntimeError("ApplicationContext is not initialized")

        if self.session is not None:
            self._last_generation = max(self._last_generation, self.session.generation)

        machine = SessionStateMachine.from_settings(self.settings)
        machine.generation = self._last_generation
        self.session = Session(
            self.settings,
            self.dispatcher,
            codec=self._codec,
            transport_factory=self._transport_factory,
            machine=machine,
        )
        return self.session

    # ========================================================================
    # SHUTDOWN
    # ========================================================================

    async def shutdown(self) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.shutdown(DISPATCHER_DRAIN_TIMEOUT)
        if self._store is not None:
            await self._store.shutdown()
        self._initialized = False
        logger.info("Application context shut down")

    async def health(self) -> Dict[str, Any]:
        return {
            "initialized": self._initialized,
            "store": await self._store.health_check() if self._store else False,
            "session_state": self.session.state.value if self.session else None,
            "in_flight": self.dispatcher.in_flight if self.dispatcher else 0,
            "logging": logging_stats(),
        }
