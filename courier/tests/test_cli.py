"""Tests for the courier command line, against a local note folder."""

import json

import pytest

from conftest import REGISTRY_DOC
from courier.cli import build_parser, main


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    registry = tmp_path / "registry.json"
    registry.write_text(json.dumps(REGISTRY_DOC))
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "data_dir": str(tmp_path),
        "llm": {"anthropic_api_key": "", "openai_api_key": ""},
        "registry": {"path": str(registry)},
        "dedupe": {"db_path": str(tmp_path / "dedupe.sqlite3")},
        "audit": {"log_path": str(tmp_path / "audit.jsonl")},
        "notes": {"backend": "local", "local_root": str(tmp_path / "vault")},
    }))
    # main() exports --config for the server; keep it scoped to the test
    monkeypatch.setenv("COURIER_CONFIG", str(path))
    for var in ("COURIER_REGISTRY_PATH", "COURIER_DEDUPE_DB", "COURIER_AUDIT_LOG",
                "COURIER_NOTES_BACKEND", "COURIER_NOTES_ROOT", "COURIER_DATA_DIR"):
        monkeypatch.delenv(var, raising=False)
    return path


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_log_level_case_insensitive(self):
        args = build_parser().parse_args(["--log-level", "debug", "status", "C1:1"])
        assert args.log_level == "DEBUG"


class TestCommands:
    def test_resolve(self, config_file, capsys):
        assert main(["--config", str(config_file), "resolve", "projects", "house"]) == 0
        target = json.loads(capsys.readouterr().out)
        assert target["path"] == "Projects/House.md"
        assert target["anchor"] == "Tasks"

    def test_capture_then_status_and_audit(self, config_file, tmp_path, capsys):
        code = main(["--config", str(config_file), "capture", "project: house: fix the faucet", "--id", "cli:1"])
        out = capsys.readouterr().out

        assert code == 0
        assert "[written] Saved to Projects/House.md (projects / house" in out
        note = (tmp_path / "vault" / "Projects" / "House.md").read_text()
        assert note.startswith("# House\n\n## Tasks\n")
        assert "- [ ] fix the faucet" in note

        assert main(["--config", str(config_file), "status", "cli:1"]) == 0
        assert json.loads(capsys.readouterr().out)["outcome"] == "written"

        assert main(["--config", str(config_file), "audit", "cli:1"]) == 0
        assert '"result":"written"' in capsys.readouterr().out

    def test_unknown_event(self, config_file, capsys):
        assert main(["--config", str(config_file), "status", "nope"]) == 1
        assert main(["--config", str(config_file), "audit", "nope"]) == 1

    def test_missing_registry_is_reported(self, config_file, tmp_path):
        (tmp_path / "registry.json").unlink()
        assert main(["--config", str(config_file), "resolve", "ideas"]) == 2
