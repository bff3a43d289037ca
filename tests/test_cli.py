import json
import pathlib

import pytest

import relsign.cli as cli
from relsign import __version__
from relsign.cli import main
from relsign.pipeline import ReleaseSigner
from relsign.registry import TransformRegistry


@pytest.fixture
def release_dir(tmp_path: pathlib.Path) -> pathlib.Path:
    src = tmp_path / "unsigned"
    src.mkdir()
    (src / "README").write_bytes(b"readme\n")
    return src


@pytest.fixture
def fake_pipeline(monkeypatch: pytest.MonkeyPatch, signer_set):
    """Route the CLI to a ReleaseSigner built from fake signers."""
    seen = {}

    def build(config):
        seen["config"] = config
        return ReleaseSigner(TransformRegistry(), signer_set, started_at=1_700_000_000)

    monkeypatch.setattr(cli, "build_release_signer", build)
    return seen


def test_missing_positionals_is_usage_error(capsys):
    with pytest.raises(SystemExit) as ei:
        main([])
    assert ei.value.code == 2
    assert "usage:" in capsys.readouterr().err


def test_one_positional_is_usage_error():
    with pytest.raises(SystemExit) as ei:
        main(["only-source"])
    assert ei.value.code == 2


def test_version(capsys):
    with pytest.raises(SystemExit) as ei:
        main(["--version"])
    assert ei.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_success(tmp_path, release_dir, fake_pipeline, capsys):
    dst = tmp_path / "signed"
    rc = main([str(release_dir), str(dst), "--summary"])
    assert rc == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["files_written"] == 1
    assert summary["manifest"] == str(dst / "SHA256SUMS")
    assert (dst / "SHA256SUMS.asc").exists()


def test_flags_override_config(tmp_path, release_dir, fake_pipeline, monkeypatch):
    monkeypatch.setenv("RELSIGN_GPG_IDENTITY", "env-identity")
    cfg = tmp_path / "relsign.yaml"
    cfg.write_text("signing:\n  gpg_identity: file-identity\n  timestamp_url: http://tsa.file\n", encoding="utf-8")
    rc = main([
        str(release_dir), str(tmp_path / "signed"),
        "--config", str(cfg),
        "--gpg-identity", "cli-identity",
        "--log-level", "warning",
    ])
    assert rc == 0
    config = fake_pipeline["config"]
    assert config.get("signing.gpg_identity") == "cli-identity"
    assert config.get("signing.timestamp_url") == "http://tsa.file"
    assert config.get("observability.log_level") == "warning"


def test_runtime_failure_exits_1(tmp_path, release_dir, capsys):
    # no GPG identity configured, so the manifest cannot be signed
    rc = main([str(release_dir), str(tmp_path / "signed")])
    assert rc == 1
    err = capsys.readouterr().err
    assert "Error:" in err
    assert "detached-signature" in err


def test_quiet_suppresses_error_message(tmp_path, release_dir, capsys):
    rc = main([str(release_dir), str(tmp_path / "signed"), "--quiet", "--log-level", "critical"])
    assert rc == 1
    assert "Error:" not in capsys.readouterr().err


def test_bad_config_exits_1(tmp_path, release_dir, capsys):
    cfg = tmp_path / "bad.yaml"
    cfg.write_text("signing:\n  unknown_setting: 1\n", encoding="utf-8")
    rc = main([str(release_dir), str(tmp_path / "signed"), "--config", str(cfg)])
    assert rc == 1
    assert "unknown key" in capsys.readouterr().err


def test_missing_source_exits_1(tmp_path, fake_pipeline, capsys):
    rc = main([str(tmp_path / "absent"), str(tmp_path / "signed")])
    assert rc == 1
    assert "not a directory" in capsys.readouterr().err


def test_json_logs(tmp_path, release_dir, fake_pipeline, capsys):
    rc = main([str(release_dir), str(tmp_path / "signed"), "--log-format", "json"])
    assert rc == 0
    lines = [line for line in capsys.readouterr().err.splitlines() if line.strip()]
    events = [json.loads(line) for line in lines]
    assert events
    assert all(e["level"] in ("info", "warning") for e in events)
    assert any("release signed" in e["message"] for e in events)
    assert len({e["run_id"] for e in events}) == 1


@pytest.mark.parametrize("inside", [False, True])
def test_destination_inside_source_is_usage_error(release_dir, fake_pipeline, capsys, inside):
    dst = release_dir / "signed" if inside else release_dir
    rc = main([str(release_dir), str(dst)])
    assert rc == 2
    assert "must not be SOURCE" in capsys.readouterr().err
    assert "config" not in fake_pipeline
