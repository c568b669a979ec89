"""Pytest configuration and fixtures."""

from pathlib import Path

import pytest

from cc_convo.store import FileSessionStore


@pytest.fixture
def fixtures_dir() -> Path:
    """Return the fixtures directory path."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def fixture_store(fixtures_dir: Path) -> FileSessionStore:
    """Return a store serving the fixture logs by file stem."""
    return FileSessionStore(fixtures_dir)


@pytest.fixture
def simple_session(fixtures_dir: Path) -> Path:
    """Return path to simple.jsonl fixture."""
    return fixtures_dir / "simple.jsonl"


@pytest.fixture
def with_branches_session(fixtures_dir: Path) -> Path:
    """Return path to with_branches.jsonl fixture."""
    return fixtures_dir / "with_branches.jsonl"


@pytest.fixture
def with_compaction_session(fixtures_dir: Path) -> Path:
    """Return path to with_compaction.jsonl fixture."""
    return fixtures_dir / "with_compaction.jsonl"


@pytest.fixture
def with_async_subagent_session(fixtures_dir: Path) -> Path:
    """Return path to with_async_subagent.jsonl fixture."""
    return fixtures_dir / "with_async_subagent.jsonl"
