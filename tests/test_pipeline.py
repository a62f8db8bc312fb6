from __future__ import annotations

import soundfile as sf
import pytest

from gflite.coordinator import RetryPolicy
from gflite.errors import DocumentError, EmptyInputError, JobTimeoutError, SubmissionError
from gflite.jobs import JobState
from gflite.pipeline import ConversionRequest, open_workspace, run_conversion

from tests.fakes import FakeClock, FakeExecutionClient, make_wav, succeeded


def _request(tmp_path, text, **overrides):
    source = tmp_path / "input.txt"
    source.write_text(text, encoding="utf-8")
    options = {
        "input_path": source,
        "output_path": tmp_path / "speech.wav",
        "subtasks": 3,
        "task_timeout": 600,
        "subtask_timeout": 60,
    }
    options.update(overrides)
    return ConversionRequest(**options)


def test_conversion_writes_ordered_output(tmp_path):
    request = _request(tmp_path, "One sentence here. Another one there. And a third.")
    artifacts = {0: make_wav([1, 1]), 1: make_wav([2, 2]), 2: make_wav([3, 3])}
    client = FakeExecutionClient([[succeeded(2), succeeded(0)], [succeeded(1)]], artifacts=artifacts)
    clock = FakeClock()
    steps = []

    result = run_conversion(
        request,
        client,
        on_step=lambda step, message: steps.append(step),
        clock=clock,
        sleep=clock.sleep,
    )

    data, _ = sf.read(str(request.output_path), dtype="int16")
    assert data.tolist() == [1, 1, 2, 2, 3, 3]
    assert result.chunk_count == 3
    assert result.job.state is JobState.COMPLETED
    assert result.output_path == request.output_path
    assert steps == [1, 2, 3, 4]
    submitted_texts = [descriptor.payload.text for descriptor in client.submitted[0][0]]
    assert " ".join(submitted_texts) == "One sentence here. Another one there. And a third."


def test_overall_timeout_leaves_no_output(tmp_path):
    text = " ".join(f"Sentence number {index}." for index in range(30))
    request = _request(tmp_path, text, subtasks=6, task_timeout=10, subtask_timeout=100)
    client = FakeExecutionClient(
        [[succeeded(o) for o in range(5)]],
        default_artifact=make_wav([0]),
    )
    clock = FakeClock()

    with pytest.raises(JobTimeoutError):
        run_conversion(request, client, clock=clock, sleep=clock.sleep)

    assert client.cancel_calls == 1
    assert client.fetched == []
    assert not request.output_path.exists()


def test_submission_failure_is_surfaced(tmp_path):
    request = _request(tmp_path, "Some words to speak.")
    client = FakeExecutionClient(submit_error=SubmissionError("connection refused"))
    steps = []

    with pytest.raises(SubmissionError):
        run_conversion(request, client, on_step=lambda step, message: steps.append(step))

    assert steps == [1, 2]
    assert not request.output_path.exists()


def test_empty_document_fails_before_submission(tmp_path):
    request = _request(tmp_path, "   \n\n ")
    client = FakeExecutionClient()

    with pytest.raises(EmptyInputError):
        run_conversion(request, client)

    assert client.submitted == []


def test_missing_input_raises_document_error(tmp_path):
    request = ConversionRequest(input_path=tmp_path / "nope.txt", output_path=tmp_path / "out.wav")

    with pytest.raises(DocumentError):
        run_conversion(request, FakeExecutionClient())


def test_retry_policy_is_passed_to_coordinator(tmp_path):
    request = _request(tmp_path, "Alpha beta.", subtasks=1, retry_policy=RetryPolicy(max_retries=0))
    client = FakeExecutionClient([[succeeded(0)]], default_artifact=make_wav([5]))
    clock = FakeClock()

    run_conversion(request, client, clock=clock, sleep=clock.sleep)

    assert request.output_path.exists()


def test_open_workspace_keeps_user_directory(tmp_path):
    target = tmp_path / "kept"

    with open_workspace(target) as workspace:
        (workspace / "marker").write_text("x", encoding="utf-8")

    assert (target / "marker").exists()


def test_open_workspace_removes_temporary_directory():
    with open_workspace() as workspace:
        assert workspace.name.startswith("g_flite")
        (workspace / "marker").write_text("x", encoding="utf-8")

    assert not workspace.exists()
