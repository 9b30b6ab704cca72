"""
Tests for the idverify command-line interface
"""
import json

import pytest
import structlog

import idverify.cli as cli_module
from conftest import FakeFaceAnalyzer, encode, make_document, make_selfie, random_embedding
from idverify import config
from idverify.cli import EXIT_ERROR, EXIT_NOT_VERIFIED, EXIT_OK, IdVerifyCLI
from idverify.pipeline import IdentityVerifier


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "AUDIT_STORE_PATH", tmp_path / "audit.json")
    monkeypatch.setattr(config, "SESSION_CACHE_PATH", tmp_path / "session_cache.json")
    monkeypatch.setattr(cli_module, "configure_logging", lambda level=None: None)

    (tmp_path / "selfie.png").write_bytes(encode(make_selfie()))
    (tmp_path / "dark.png").write_bytes(encode(make_selfie(brightness=20)))
    (tmp_path / "document.png").write_bytes(encode(make_document()))

    with structlog.testing.capture_logs():
        yield tmp_path


def use_fake_faces(monkeypatch, *embeddings):
    def build(**kwargs):
        return IdentityVerifier(face_analyzer=FakeFaceAnalyzer(embeddings=embeddings), **kwargs)

    monkeypatch.setattr(cli_module, "IdentityVerifier", build)


class TestVerifyCommand:
    def test_approved_verification_is_stored(self, workspace, monkeypatch, capsys):
        use_fake_faces(monkeypatch, random_embedding(8))
        cli = IdVerifyCLI()

        code = cli.run_from_args(
            [
                "--json",
                "verify",
                str(workspace / "selfie.png"),
                str(workspace / "document.png"),
                "--document-type",
                "RG",
                "--device-info",
                "cli-test",
            ]
        )
        output = json.loads(capsys.readouterr().out)

        assert code == EXIT_OK
        assert output["passed"] is True
        assert output["ensemble_agreement"] == 4

        assert cli.run_from_args(["--json", "history"]) == EXIT_OK
        records = json.loads(capsys.readouterr().out)
        assert [r["session_id"] for r in records] == [output["session_id"]]
        assert records[0]["device_info"] == "cli-test"

    def test_rejected_verification_exit_code(self, workspace, monkeypatch, capsys):
        use_fake_faces(monkeypatch, random_embedding(1), random_embedding(2))

        code = IdVerifyCLI().run_from_args(
            ["verify", str(workspace / "selfie.png"), str(workspace / "document.png")]
        )

        assert code == EXIT_NOT_VERIFIED
        assert "REJECTED" in capsys.readouterr().out

    def test_low_quality_selfie_not_verified(self, workspace, monkeypatch, capsys):
        use_fake_faces(monkeypatch, random_embedding(8))

        code = IdVerifyCLI().run_from_args(
            ["verify", str(workspace / "dark.png"), str(workspace / "document.png")]
        )

        assert code == EXIT_NOT_VERIFIED
        assert "lighting" in capsys.readouterr().err


class TestReadOnlyCommands:
    def test_assess_document(self, workspace, capsys):
        code = IdVerifyCLI().run_from_args(
            ["--json", "assess", str(workspace / "document.png"), "--modality", "document"]
        )
        assessment = json.loads(capsys.readouterr().out)

        assert code == EXIT_OK
        assert assessment["modality"] == "document"
        assert assessment["detected"] is True

    def test_stats_on_empty_store(self, workspace, capsys):
        assert IdVerifyCLI().run_from_args(["--json", "stats"]) == EXIT_OK
        assert json.loads(capsys.readouterr().out) == {
            "total": 0,
            "passed": 0,
            "failed": 0,
            "avg_score": 0,
        }

    def test_history_on_empty_store(self, workspace, capsys):
        assert IdVerifyCLI().run_from_args(["history"]) == EXIT_OK
        assert "No stored verifications." in capsys.readouterr().out


class TestErrors:
    def test_unsupported_extension(self, workspace, capsys):
        code = IdVerifyCLI().run_from_args(["assess", str(workspace / "notes.txt")])

        assert code == EXIT_ERROR
        assert "CLI_001" in capsys.readouterr().err

    def test_missing_file(self, workspace, capsys):
        code = IdVerifyCLI().run_from_args(["assess", str(workspace / "missing.png")])

        assert code == EXIT_ERROR
        assert "CLI_002" in capsys.readouterr().err

    def test_command_required(self, workspace):
        with pytest.raises(SystemExit):
            IdVerifyCLI().run_from_args([])
