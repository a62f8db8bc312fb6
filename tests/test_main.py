from __future__ import annotations

import logging

import pytest
import soundfile as sf

from gflite import main as cli
from gflite.errors import SubmissionError

from tests.fakes import FakeExecutionClient, make_wav


def _install_client(monkeypatch, **kwargs):
    created = []

    def factory(config, workspace):
        client = FakeExecutionClient(**kwargs)
        client.config = config
        client.workspace = workspace
        created.append(client)
        return client

    monkeypatch.setattr(cli, "GolemClient", factory)
    return created


@pytest.fixture
def job_logger():
    logger = logging.getLogger("gflite.jobs")
    level = logger.level
    yield logger
    logger.setLevel(level)


def test_cli_converts_document(tmp_path, monkeypatch, capsys, isolated_settings):
    source = tmp_path / "story.txt"
    source.write_text("Once upon a time. There was a fox. It ran away.", encoding="utf-8")
    output = tmp_path / "story.wav"
    created = _install_client(monkeypatch, default_artifact=make_wav([4, 2]))

    exit_code = cli.main(
        [
            str(source),
            str(output),
            "--subtasks",
            "3",
            "--bid",
            "2",
            "--mainnet",
            "--port",
            "62000",
            "--kernel-wasm",
            str(tmp_path / "flite.wasm"),
        ]
    )

    assert exit_code == 0
    data, _ = sf.read(str(output), dtype="int16")
    assert data.tolist() == [4, 2, 4, 2, 4, 2]
    stdout = capsys.readouterr().out
    for step in ("[1/4]", "[2/4]", "[3/4]", "[4/4]"):
        assert step in stdout
    client = created[0]
    assert client.closed
    assert client.config.mainnet is True
    assert client.config.port == 62000
    assert client.config.kernel_wasm == tmp_path / "flite.wasm"
    descriptors = client.submitted[0][0]
    assert len(descriptors) == 3
    assert str(descriptors[0].bid) == "2"


def test_cli_reports_missing_input(tmp_path, capsys, isolated_settings):
    exit_code = cli.main([str(tmp_path / "missing.txt"), str(tmp_path / "out.wav")])

    assert exit_code == 1
    assert "An error occurred while reading input: Input file" in capsys.readouterr().err


def test_cli_reports_missing_output_directory(tmp_path, capsys, isolated_settings):
    source = tmp_path / "story.txt"
    source.write_text("Words.", encoding="utf-8")

    exit_code = cli.main([str(source), str(tmp_path / "nowhere" / "out.wav")])

    assert exit_code == 1
    assert "doesn't exist" in capsys.readouterr().err


def test_cli_reports_submission_failure(tmp_path, monkeypatch, capsys, isolated_settings):
    source = tmp_path / "story.txt"
    source.write_text("Some words here.", encoding="utf-8")
    _install_client(monkeypatch, submit_error=SubmissionError("connection refused"))

    exit_code = cli.main([str(source), str(tmp_path / "out.wav")])

    assert exit_code == 1
    err = capsys.readouterr().err
    assert "An error occurred while sending task to Golem: connection refused" in err
    assert not (tmp_path / "out.wav").exists()


def test_cli_reports_invalid_bid(tmp_path, monkeypatch, capsys, isolated_settings):
    source = tmp_path / "story.txt"
    source.write_text("Some words here.", encoding="utf-8")
    _install_client(monkeypatch)

    exit_code = cli.main([str(source), str(tmp_path / "out.wav"), "--bid", "lots"])

    assert exit_code == 1
    assert "bid must be a decimal number" in capsys.readouterr().err


@pytest.mark.parametrize("flag", ["--task-timeout", "--subtask_timeout"])
def test_cli_rejects_bad_timeouts(tmp_path, flag, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main([str(tmp_path / "in.txt"), str(tmp_path / "out.wav"), flag, "00:00:00"])

    assert excinfo.value.code == 2
    assert "not allowed" in capsys.readouterr().err


def test_cli_rejects_zero_subtasks(tmp_path):
    with pytest.raises(SystemExit):
        cli.main([str(tmp_path / "in.txt"), str(tmp_path / "out.wav"), "--subtasks", "0"])


def test_cli_keeps_job_log_quiet_without_verbose(tmp_path, monkeypatch, isolated_settings, job_logger):
    source = tmp_path / "story.txt"
    source.write_text("Some words here.", encoding="utf-8")
    _install_client(monkeypatch, default_artifact=make_wav([1]))
    job_logger.setLevel(logging.INFO)

    assert cli.main([str(source), str(tmp_path / "out.wav")]) == 0

    assert not job_logger.isEnabledFor(logging.INFO)
    assert job_logger.isEnabledFor(logging.WARNING)
