"""Tests for the programmatic migration runner."""

from __future__ import annotations

import os

import pytest

from coquillage.migrations import (
    ALEMBIC_DIR,
    _build_alembic_config,
    run_migrations,
    to_sqlalchemy_url,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("postgres://u:p@h:5432/db", "postgresql+psycopg://u:p@h:5432/db"),
        ("postgresql://u:p@h:5432/db", "postgresql+psycopg://u:p@h:5432/db"),
        ("postgresql+psycopg://u:p@h:5432/db", "postgresql+psycopg://u:p@h:5432/db"),
    ],
)
def test_to_sqlalchemy_url(url: str, expected: str):
    assert to_sqlalchemy_url(url) == expected


def test_config_points_at_core_chain():
    config = _build_alembic_config("postgresql://u:p%40ss@h:5432/db")

    assert config.get_main_option("script_location") == str(ALEMBIC_DIR)
    assert config.get_main_option("sqlalchemy.url") == "postgresql+psycopg://u:p%40ss@h:5432/db"
    locations = config.get_main_option("version_locations").split(os.pathsep)
    assert locations == [str(ALEMBIC_DIR / "versions" / "core")]


def test_core_revision_present():
    assert (ALEMBIC_DIR / "versions" / "core" / "core_001_appointments.py").is_file()


async def test_unknown_chain_rejected():
    with pytest.raises(ValueError, match="Unknown migration chain"):
        await run_migrations("postgresql://u:p@h:5432/db", chain="payments")
