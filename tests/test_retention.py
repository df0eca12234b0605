from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from homenas_jobs.engine.document import JOBS_KEY, ConfigDocument
from homenas_jobs.engine.retention import (
    archive_name,
    list_archives,
    prune_archives,
    prune_history,
)

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Retention & Persistence"),
]


def test_prune_history_keeps_newest_head() -> None:
    assert prune_history([5, 4, 3, 2, 1], 3) == [5, 4, 3]
    assert prune_history([1], 3) == [1]


def test_prune_history_rejects_non_positive_limit() -> None:
    with pytest.raises(ValueError, match="keep_last"):
        prune_history([1, 2], 0)


def test_prune_archives_removes_oldest_beyond_limit(tmp_path: Path) -> None:
    for stamp in ("2024-01-01", "2024-01-03", "2024-01-02", "2024-01-04"):
        (tmp_path / archive_name(stamp)).write_bytes(b"x")
    (tmp_path / "notes.txt").write_text("keep me", "utf-8")

    removed = prune_archives(tmp_path, 2)

    assert sorted(path.name for path in removed) == [
        archive_name("2024-01-01"),
        archive_name("2024-01-02"),
    ]
    assert [path.name for path in list_archives(tmp_path)] == [
        archive_name("2024-01-04"),
        archive_name("2024-01-03"),
    ]
    assert (tmp_path / "notes.txt").exists()


def test_list_archives_of_missing_directory_is_empty(tmp_path: Path) -> None:
    assert list_archives(tmp_path / "missing") == []


def test_document_round_trip_preserves_foreign_keys(tmp_path: Path) -> None:
    path = tmp_path / "config" / "data.json"
    path.parent.mkdir()
    path.write_text(json.dumps({"shares": [{"name": "media"}], JOBS_KEY: []}), "utf-8")
    document = ConfigDocument(path)

    payload = document.read()
    payload[JOBS_KEY].append({"id": "abc"})
    document.write(payload)

    stored = json.loads(path.read_text("utf-8"))
    assert stored["shares"] == [{"name": "media"}]
    assert stored[JOBS_KEY] == [{"id": "abc"}]
    assert [entry.name for entry in path.parent.iterdir()] == ["data.json"]


def test_document_missing_file_reads_as_empty(tmp_path: Path) -> None:
    assert ConfigDocument(tmp_path / "none.json").read() == {JOBS_KEY: []}


def test_document_rejects_non_object(tmp_path: Path) -> None:
    path = tmp_path / "data.json"
    path.write_text("[]", "utf-8")

    with pytest.raises(TypeError, match="Expected JSON object"):
        ConfigDocument(path).read()
