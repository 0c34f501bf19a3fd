"""
Pytest Configuration and Fixtures for foobot Tests
==================================================

Purpose
-------
Centralized fixtures for the foobot test suite: settings snapshots, a
file-backed SQLite store, template directories, and a MySQL testcontainer
for the integration suite.

Architecture Notes
------------------
- Unit and most integration tests use ``sqlite+aiosqlite`` on a file in
  ``tmp_path`` so concurrent transactions use separate connections
- MySQL tests use testcontainers and are marked ``integration``
- Session runner tests use real, very short timings
"""

from __future__ import annotations

import os
import shutil
from dataclasses import replace
from pathlib import Path
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from testcontainers.mysql import MySqlContainer

from foobot.core.config.config import BotSettings, Credentials, Endpoint
from foobot.core.database.store import Store
from foobot.core.dispatch.registry import HandlerRegistry
from foobot.core.logging.logger import get_logger
from foobot.core.render.renderer import Renderer

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_TEMPLATE_DIR = PROJECT_ROOT / "templates"

# ============================================================================
# PYTEST CONFIGURATION
# ============================================================================


def pytest_configure(config):
    """Configure pytest environment."""
    os.environ["ENVIRONMENT"] = "testing"
    os.environ["LOG_LEVEL"] = "DEBUG"
    config.addinivalue_line("markers", "integration: needs real infrastructure (docker)")


# ============================================================================
# TEMPLATE FIXTURES
# ============================================================================


@pytest.fixture
def template_dir(tmp_path: Path) -> Path:
    """
    Shipped templates plus a few test-only ones.

    - echo: ``{{ text }}``
    - greeting: ``hello {{ name }}``
    - item_count: ``{{ items | length }} items``
    """
    target = tmp_path / "templates"
    shutil.copytree(DEFAULT_TEMPLATE_DIR, target)
    (target / "echo.txt").write_text("{{ text }}\n", encoding="utf-8")
    (target / "greeting.j2").write_text("hello {{ name }}\n", encoding="utf-8")
    (target / "item_count.txt").write_text("{{ items | length }} items\n", encoding="utf-8")
    return target


@pytest.fixture
def renderer(template_dir: Path) -> Renderer:
    return Renderer.load(template_dir)


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


# ============================================================================
# SETTINGS FIXTURES
# ============================================================================


@pytest.fixture
def store_dsn(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'foobot.db'}"


@pytest.fixture
def settings(store_dsn: str, template_dir: Path) -> BotSettings:
    """Fast timings suitable for driving a real Session in tests."""
    return BotSettings(
        endpoint=Endpoint(host="irc.test", port=6667, tls=False),
        credentials=Credentials(nickname="foobot", token="secret"),
        store_dsn=store_dsn,
        template_dir=template_dir,
        channels=("forsen",),
        super_users=frozenset({"boss"}),
        heartbeat_interval=0.05,
        heartbeat_timeout=0.1,
        auth_timeout=0.5,
        connect_timeout=0.5,
        reconnect_backoff_base=0.02,
        reconnect_backoff_max=0.1,
        reconnect_jitter=0.0,
        handler_timeout=1.0,
        outbound_send_interval=0.0,
    )


@pytest.fixture
def settings_factory(settings: BotSettings):
    """Return a copy of `settings` with overrides."""

    def factory(**overrides) -> BotSettings:
        return replace(settings, **overrides)

    return factory


# ============================================================================
# STORE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def store(store_dsn: str) -> AsyncGenerator[Store, None]:
    """
    Initialized store on a fresh SQLite file.

    Scope: function (clean slate per test)
    """
    store = Store(store_dsn)
    await store.initialize()
    yield store
    await store.shutdown()


@pytest.fixture(scope="session")
def mysql_container() -> Generator[MySqlContainer, None, None]:
    """
    Start a MySQL testcontainer for integration tests.

    Scope: session (container persists across all tests)
    """
    logger.info("Starting MySQL testcontainer...")
    container = MySqlContainer(image="mysql:8.0")
    container.start()
    logger.info("MySQL testcontainer started")

    yield container

    logger.info("Stopping MySQL testcontainer...")
    container.stop()


@pytest.fixture(scope="session")
def mysql_dsn(mysql_container: MySqlContainer) -> str:
    """Async DSN for the MySQL testcontainer (aiomysql driver)."""
    return mysql_container.get_connection_url().replace("mysql+pymysql", "mysql+aiomysql")
