"""
Tests for entity_sync/cli.py -- command-line entry point on a temp data dir.
"""

import json

import pytest

from entity_sync.cli import main


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "data")


@pytest.fixture
def panel_file(tmp_path):
    path = tmp_path / "panel.json"
    path.write_text(json.dumps({"npc0.姓名": "Aria", "npc1.姓名": "Borin", "当前状态": "resting"},
                               ensure_ascii=False), encoding="utf-8")
    return str(path)


def _run(capsys, *argv):
    code = main(list(argv))
    return code, capsys.readouterr().out


class TestCli:
    def test_ingest_then_search(self, capsys, data_dir, panel_file):
        code, out = _run(capsys, "--data-dir", data_dir, "ingest", panel_file, "--chat", "c1")
        assert code == 0
        assert "created=2" in out

        code, out = _run(capsys, "--data-dir", data_dir, "search", "--chat", "c1",
                         "--sort", "name", "--order", "asc")
        entities = json.loads(out)
        assert [e["name"] for e in entities] == ["Aria", "Borin"]
        assert entities[0]["fields"]["status"] == "resting"

    def test_export_import_between_chats(self, capsys, tmp_path, data_dir, panel_file):
        _run(capsys, "--data-dir", data_dir, "ingest", panel_file, "--chat", "c1")
        _code, snapshot = _run(capsys, "--data-dir", data_dir, "export", "--chat", "c1")
        snap_file = tmp_path / "snap.json"
        snap_file.write_text(snapshot, encoding="utf-8")

        code, out = _run(capsys, "--data-dir", data_dir, "import", str(snap_file), "--chat", "c2")
        assert code == 0
        assert "Imported 2" in out

    def test_import_rejects_bad_snapshot(self, capsys, tmp_path, data_dir):
        bad = tmp_path / "bad.json"
        bad.write_text('{"entities": []}', encoding="utf-8")
        code = main(["--data-dir", data_dir, "import", str(bad), "--chat", "c1"])
        assert code == 2
        assert "could not be imported" in capsys.readouterr().err

    def test_delete(self, capsys, data_dir, panel_file):
        _run(capsys, "--data-dir", data_dir, "ingest", panel_file, "--chat", "c1")
        _code, out = _run(capsys, "--data-dir", data_dir, "search", "aria", "--chat", "c1")
        aria_id = json.loads(out)[0]["id"]

        code, out = _run(capsys, "--data-dir", data_dir, "delete", aria_id, "--chat", "c1")
        assert code == 0
        assert "Deleted 1 of 1" in out

    def test_dedup_on_empty_book(self, capsys, data_dir):
        code, out = _run(capsys, "--data-dir", data_dir, "dedup")
        assert code == 0
        assert "Removed 0" in out

    def test_subcommand_required(self, data_dir):
        with pytest.raises(SystemExit):
            main(["--data-dir", data_dir])
