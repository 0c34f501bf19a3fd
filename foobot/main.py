"""
foobot - Application Entry Point
================================

Bootstrap
---------
- Logging setup from the environment
- Config validation (fatal on any malformed value)
- ApplicationContext initialization (templates, store, registry, dispatcher)
- Session supervision: restart after unexpected failures
- Graceful shutdown on SIGINT / SIGTERM

Exit codes: 0 on clean shutdown, 1 on a fatal startup error, 2 when
authentication fails permanently.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from typing import Optional

from foobot.core.config.config import Config
from foobot.core.context import ApplicationContext
from foobot.core.exceptions import AuthFailed, FoobotException
from foobot.core.logging.logger import LoggingOptions, get_logger, setup_logging, shutdown_logging

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_AUTH_FAILURE = 2


# ============================================================================
# Supervision
# ============================================================================


async def supervise(
    context: ApplicationContext,
    stop_event: asyncio.Event,
    *,
    restart_delay: float = 5.0,
) -> None:
    """
    Run sessions until `stop_event` is set.

    A session that crashes with an unexpected exception is replaced by a new
    one after `restart_delay`. A fatal `AuthFailed` propagates.
    """
    while not stop_event.is_set():
        session = context.create_session()
        run_task = asyncio.create_task(session.run(), name="session")
        stop_task = asyncio.create_task(stop_event.wait(), name="stop-wait")

        done, _ = await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

        if run_task not in done:
            session.stop()
            await run_task
            return

        stop_task.cancel()
        await asyncio.wait({stop_task})

        exc = run_task.exception()
        if exc is None:
            return
        if isinstance(exc, AuthFailed) and exc.fatal:
            raise exc

        logger.error(
            "Session crashed; restarting",
            extra={"error_type": type(exc).__name__, "restart_delay": restart_delay},
            exc_info=exc,
        )
        try:
            await asyncio.wait_for(stop_event.wait(), restart_delay)
        except asyncio.TimeoutError:
            continue


# ============================================================================
# Application Entrypoint
# ============================================================================


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.debug("Signal handlers not supported on this platform")
            return


async def main() -> int:
    context: Optional[ApplicationContext] = None
    stop_event = asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), stop_event)

    logger.info("========== FOOBOT STARTUP ==========")
    try:
        Config.validate()
        settings = Config.to_settings()
        logger.info("Configuration validated", extra=Config.get_config_summary())

        context = ApplicationContext(settings)
        await context.initialize()

        await supervise(context, stop_event, restart_delay=Config.SUPERVISOR_RESTART_DELAY)
        return EXIT_OK

    except AuthFailed as exc:
        logger.critical("Authentication failed permanently", extra=exc.to_dict())
        return EXIT_AUTH_FAILURE

    except FoobotException as exc:
        logger.critical("Fatal startup error", extra=exc.to_dict())
        return EXIT_STARTUP_FAILURE

    finally:
        if context is not None:
            await context.shutdown()
        logger.info("========== FOOBOT SHUTDOWN COMPLETE ==========")


def run() -> None:
    Config.load()
    setup_logging(LoggingOptions.from_config())
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Stopped via keyboard interrupt")
        code = EXIT_OK
    finally:
        shutdown_logging()
    sys.exit(code)


if __name__ == "__main__":
    run()
