from __future__ import annotations

import json

import pytest

from bookstore.errors import RecordNotFound
from bookstore.models.book import Book
from bookstore.storage.json_repo import JsonRepository


@pytest.fixture()
def repo(tmp_path) -> JsonRepository:
    return JsonRepository(tmp_path / "books.json", entity_name="book", backup_keep=2)


def test_new_repository_starts_empty(repo):
    assert repo.filepath.exists()
    assert repo.list_all() == []


def test_add_get_update_delete(repo):
    row = repo.add(Book(id="b1", title="Poems", stock=3))
    assert row["title"] == "Poems"
    assert repo.get_by_id("b1")["stock"] == 3

    repo.update({"id": "b1", "stock": 1})
    assert repo.require("b1") == {**row, "stock": 1}

    assert repo.delete("b1") is True
    assert repo.delete("b1") is False
    assert repo.get_by_id("b1") is None


def test_add_generates_missing_id(repo):
    row = repo.add({"title": "Untitled"})
    assert row["id"]
    assert repo.find_one(lambda r: r["title"] == "Untitled")["id"] == row["id"]


def test_duplicate_id_is_refused(repo):
    repo.add(Book(id="b1", title="Poems"))
    with pytest.raises(ValueError):
        repo.add(Book(id="b1", title="Other"))


def test_missing_records(repo):
    with pytest.raises(RecordNotFound):
        repo.require("nope")
    with pytest.raises(RecordNotFound):
        repo.update({"id": "nope", "title": "x"})
    assert repo.upsert({"id": "nope", "title": "x"})["title"] == "x"


def test_find_and_replace_all(repo):
    repo.replace_all([Book(id=f"b{i}", title=f"T{i}", stock=i) for i in range(4)])
    assert [r["id"] for r in repo.find(lambda r: r["stock"] >= 2)] == ["b2", "b3"]


def test_corrupt_file_is_set_aside(repo, caplog):
    repo.filepath.write_text("[{not json", encoding="utf-8")
    with caplog.at_level("ERROR"):
        assert repo.list_all() == []
    assert repo.filepath.with_suffix(".corrupt.json").read_text(encoding="utf-8") == "[{not json"
    assert "unreadable JSON" in caplog.text


def test_non_array_file_reads_as_empty(repo):
    repo.filepath.write_text(json.dumps({"id": "b1"}), encoding="utf-8")
    assert repo.list_all() == []


def test_backups_rotate(repo):
    for i in range(5):
        repo.add(Book(id=f"b{i}", title=f"T{i}"))
    assert len(repo._backups()) == 2


def test_unchanged_write_is_skipped(tmp_path):
    repo = JsonRepository(tmp_path / "books.json", backup_keep=5)
    repo.add(Book(id="b1", title="Poems"))
    before = len(repo._backups())
    repo.update(repo.require("b1"))
    assert len(repo._backups()) == before


def test_backups_can_be_disabled(tmp_path):
    repo = JsonRepository(tmp_path / "books.json", backup_enabled=False)
    repo.add(Book(id="b1", title="Poems"))
    repo.add(Book(id="b2", title="Atlas"))
    assert repo._backups() == []
