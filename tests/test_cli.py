"""Tests for the vshield command line."""

import asyncio
import json
import logging

import pytest

from vshield.cli import EXIT_FAILED, EXIT_NOT_FOUND, EXIT_OK, main
from vshield.domain import NewProject
from vshield.logging import ROOT_LOGGER_NAME
from vshield.storage.sqlite import SQLiteRecordStore


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Run each command in an empty directory with no config in the environment."""
    monkeypatch.chdir(tmp_path)
    for var in ("VSHIELD_CONFIG", "VSHIELD_DB_PATH", "VSHIELD_REMOTE_URL", "VSHIELD_API_KEY", "VSHIELD_OWNER_ID", "VSHIELD_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    root = logging.getLogger(ROOT_LOGGER_NAME)
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data" / "cli.db")


def _json_documents(text: str) -> list[dict]:
    decoder = json.JSONDecoder()
    documents, index = [], 0
    text = text.strip()
    while index < len(text):
        document, end = decoder.raw_decode(text, index)
        documents.append(document)
        index = end
        while index < len(text) and text[index].isspace():
            index += 1
    return documents


def test_migrate(db_path, capsys):
    assert main(["--db", db_path, "migrate"]) == EXIT_OK
    assert "Schema version 2" in capsys.readouterr().out


def test_status(db_path, capsys):
    async def seed():
        async with SQLiteRecordStore(db_path) as store:
            await store.create_project(NewProject(name="Dock 4", client="HA"))

    asyncio.run(seed())

    assert main(["--db", db_path, "status"]) == EXIT_OK
    stats, backlog = _json_documents(capsys.readouterr().out)
    assert stats["total_claims"] == 0
    assert backlog["pending"] == {"projects": 1}


def test_verify_unknown_claim(db_path, capsys):
    assert main(["--db", db_path, "verify", "no-such-claim"]) == EXIT_NOT_FOUND
    assert "no-such-claim" in capsys.readouterr().err


def test_sync_requires_remote(db_path, capsys):
    assert main(["--db", db_path, "sync"]) == EXIT_FAILED
    assert "not configured" in capsys.readouterr().err


def test_config_file_supplies_database(tmp_path, capsys):
    (tmp_path / "vshield.toml").write_text('[store]\ndb_path = "from-config.db"\n')
    assert main(["migrate"]) == EXIT_OK
    assert (tmp_path / "from-config.db").is_file()
