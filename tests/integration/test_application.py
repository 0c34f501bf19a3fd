"""
Integration Tests for Application Wiring
========================================

Purpose
-------
Start the whole bot (templates, SQLite store, built-ins, dispatcher,
session) against `FakeTransport` and drive it through the supervisor the
way `foobot.main` does.

Test Coverage
-------------
- ApplicationContext initialization order and fatal startup errors
- End-to-end chat commands through the supervisor
- Session restart after a crash with monotonic generations
- Fatal authentication failure and process exit codes
"""

import asyncio

import pytest
import pytest_asyncio

from foobot import main as entrypoint
from foobot.core.context import ApplicationContext
from foobot.core.exceptions import AuthFailed, StoreUnavailableError, TemplateLoadError
from foobot.core.session.state import ConnectionState

from tests.fakes import FakeTransport, FakeTransportFactory, privmsg, wait_until


@pytest.fixture
def factory() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest_asyncio.fixture
async def context(settings, factory):
    context = ApplicationContext(settings, transport_factory=factory)
    await context.initialize()
    yield context
    await context.shutdown()


# ============================================================================
# INITIALIZATION
# ============================================================================


@pytest.mark.asyncio
class TestInitialization:
    async def test_components_are_built(self, context):
        assert context.is_initialized
        assert context.registry.frozen
        assert context.registry.match("ping") is not None
        assert context.store.is_initialized

        health = await context.health()
        assert health["store"] is True
        assert health["session_state"] is None
        assert health["logging"]["initialized"] is False

    async def test_missing_template_dir_is_fatal(self, settings_factory, tmp_path):
        context = ApplicationContext(settings_factory(template_dir=tmp_path / "nope"))

        with pytest.raises(TemplateLoadError):
            await context.initialize()

        assert not context.is_initialized

    async def test_unreachable_store_is_fatal(self, settings_factory, tmp_path):
        dsn = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}"
        context = ApplicationContext(settings_factory(store_dsn=dsn))

        with pytest.raises(StoreUnavailableError):
            await context.initialize()

    async def test_double_initialize_rejected(self, context):
        with pytest.raises(RuntimeError):
            await context.initialize()

    async def test_create_session_requires_initialize(self, settings):
        with pytest.raises(RuntimeError):
            ApplicationContext(settings).create_session()


# ============================================================================
# END TO END
# ============================================================================


@pytest.mark.asyncio
class TestSupervisedBot:
    async def test_chat_round_trip(self, context, factory):
        stop_event = asyncio.Event()
        supervisor = asyncio.create_task(entrypoint.supervise(context, stop_event, restart_delay=0.01))
        await wait_until(lambda: context.session is not None and context.session.state is ConnectionState.READY)

        transport = factory.current
        transport.feed(privmsg("forsen", "mod", "!addcmd hi hello {ping}", badges="moderator/1", msg_id="1"))
        await wait_until(lambda: len(transport.replies()) == 1)
        transport.feed(privmsg("forsen", "viewer", "!hi", msg_id="2"))
        transport.feed(privmsg("forsen", "viewer", "!nope", msg_id="3"))
        await wait_until(lambda: len(transport.replies()) == 3)

        assert transport.replies() == [
            'successfully added command "hi"',
            "hello pong!",
            'unknown command "nope"',
        ]

        stop_event.set()
        await asyncio.wait_for(supervisor, 3.0)
        assert transport.lines()[-1] == "QUIT"

    async def test_session_is_restarted_after_crash(self, settings):
        calls = []
        inner = FakeTransportFactory()

        async def crash_once():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("unexpected bug")
            return await inner()

        context = ApplicationContext(settings, transport_factory=crash_once)
        await context.initialize()
        stop_event = asyncio.Event()
        supervisor = asyncio.create_task(entrypoint.supervise(context, stop_event, restart_delay=0.01))
        try:
            await wait_until(lambda: context.session is not None and context.session.state is ConnectionState.READY)
            first_generation = context.session.generation

            inner.current.feed(privmsg("forsen", "viewer", "!ping"))
            await wait_until(lambda: inner.current.replies() == ["pong!"])
        finally:
            stop_event.set()
            await asyncio.wait_for(supervisor, 3.0)
            await context.shutdown()

        assert len(calls) == 2
        assert first_generation == 1

    async def test_new_session_continues_generation(self, context, factory):
        first = context.create_session()
        task = asyncio.create_task(first.run())
        await wait_until(lambda: first.state is ConnectionState.READY)
        first.stop()
        await asyncio.wait_for(task, 3.0)

        second = context.create_session()
        task = asyncio.create_task(second.run())
        await wait_until(lambda: second.state is ConnectionState.READY)

        assert second.generation == first.generation + 1
        second.stop()
        await asyncio.wait_for(task, 3.0)

    async def test_fatal_auth_failure_stops_supervisor(self, settings_factory):
        factory = FakeTransportFactory(make=lambda: FakeTransport(reject_auth=True))
        context = ApplicationContext(settings_factory(max_auth_failures=1), transport_factory=factory)
        await context.initialize()
        try:
            with pytest.raises(AuthFailed):
                await asyncio.wait_for(
                    entrypoint.supervise(context, asyncio.Event(), restart_delay=0.01), 3.0
                )
        finally:
            await context.shutdown()

        assert len(factory.transports) == 1


# ============================================================================
# EXIT CODES
# ============================================================================


@pytest.mark.asyncio
class TestMain:
    @pytest.fixture(autouse=True)
    def no_signals(self, mocker):
        mocker.patch.object(entrypoint, "_install_signal_handlers")

    async def test_invalid_config_exits_with_startup_failure(self, monkeypatch):
        monkeypatch.setattr(entrypoint.Config, "_validated", False)
        monkeypatch.setattr(entrypoint.Config, "_metrics", None)
        monkeypatch.delenv("FOOBOT_OAUTH_TOKEN", raising=False)
        monkeypatch.delenv("FOOBOT_NICKNAME", raising=False)

        assert await entrypoint.main() == entrypoint.EXIT_STARTUP_FAILURE

    async def test_blank_prefix_exits_with_startup_failure(self, monkeypatch):
        monkeypatch.setattr(entrypoint.Config, "_validated", False)
        monkeypatch.setattr(entrypoint.Config, "_metrics", None)
        monkeypatch.setenv("FOOBOT_NICKNAME", "foobot")
        monkeypatch.setenv("FOOBOT_OAUTH_TOKEN", "abc123")
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///foobot.db")
        monkeypatch.setenv("FOOBOT_PREFIX", " ")

        assert await entrypoint.main() == entrypoint.EXIT_STARTUP_FAILURE

    async def test_fatal_auth_exits_with_auth_failure(self, mocker, settings):
        mocker.patch.object(entrypoint.Config, "validate")
        mocker.patch.object(entrypoint.Config, "to_settings", return_value=settings)
        context = mocker.Mock()
        context.initialize = mocker.AsyncMock()
        context.shutdown = mocker.AsyncMock()
        mocker.patch.object(entrypoint, "ApplicationContext", return_value=context)
        mocker.patch.object(
            entrypoint, "supervise", mocker.AsyncMock(side_effect=AuthFailed("bad token", fatal=True))
        )

        assert await entrypoint.main() == entrypoint.EXIT_AUTH_FAILURE
        context.shutdown.assert_awaited_once()

    async def test_clean_shutdown_exits_ok(self, mocker, settings):
        mocker.patch.object(entrypoint.Config, "validate")
        mocker.patch.object(entrypoint.Config, "to_settings", return_value=settings)
        context = mocker.Mock()
        context.initialize = mocker.AsyncMock()
        context.shutdown = mocker.AsyncMock()
        mocker.patch.object(entrypoint, "ApplicationContext", return_value=context)
        mocker.patch.object(entrypoint, "supervise", mocker.AsyncMock(return_value=None))

        assert await entrypoint.main() == entrypoint.EXIT_OK
