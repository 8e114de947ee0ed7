from __future__ import annotations

import asyncio
import json

import pytest

from canvas_api.case_study import generate_case_study
from canvas_api.errors import CanvasGenerationFailed, UpstreamRejected
from canvas_api.payloads import FunctionCallFragment, ModelResponse
from canvas_api.pipeline import AttemptConfig, CanvasPipeline, PipelineState
from canvas_api.prompts import CASE_STUDY_SECTIONS

ATTEMPTS = (
    AttemptConfig("primary", False, 2500),
    AttemptConfig("compact", True, 1500),
)


def _run(pipeline: CanvasPipeline, topic: str = "Acme", report: str = "A report. " * 10):
    return asyncio.run(pipeline.run(topic, report))


def test_primary_success_bills_tokens(ledger, scripted_client, respond, canvas_payload) -> None:
    client = scripted_client([respond("```json\n" + json.dumps(canvas_payload) + "\n```", 300)])
    pipeline = CanvasPipeline(client, ledger, ATTEMPTS)

    result = _run(pipeline)

    assert result.attempt == "primary"
    assert result.tokens_used == 300
    assert result.canvas.to_wire() == canvas_payload
    assert result.snapshot.used == 300
    assert pipeline.state is PipelineState.success
    assert ledger.history()[0].label == "Acme (Business Model Canvas)"
    options = client.calls[0][1]
    assert options.max_output_tokens == 2500
    assert options.response_schema is not None


def test_truncated_primary_escalates_to_compact(ledger, scripted_client, respond, canvas_payload) -> None:
    client = scripted_client(
        [
            respond('{"keyPartners": "Suppliers", "keyActivities": "Buil', 2480, finish_reason="length"),
            respond(json.dumps(canvas_payload), 900),
        ]
    )
    pipeline = CanvasPipeline(client, ledger, ATTEMPTS)

    result = _run(pipeline)

    assert result.attempt == "compact"
    assert result.tokens_used == 2480 + 900
    assert result.canvas.channels == "Mobile app"
    assert ledger.snapshot().used == 3380
    assert len(ledger.history()) == 1
    assert [options.max_output_tokens for _, options in client.calls] == [2500, 1500]
    assert "up to 2 short bullet fragments" in client.calls[1][0]
    assert "up to 3 short bullet fragments" in client.calls[0][0]


def test_budget_preflight_skips_model(make_ledger, scripted_client) -> None:
    ledger = make_ledger(allowance=0)
    client = scripted_client([])
    pipeline = CanvasPipeline(client, ledger, ATTEMPTS)

    with pytest.raises(CanvasGenerationFailed) as excinfo:
        _run(pipeline)

    assert excinfo.value.status_code == 429
    assert excinfo.value.state is PipelineState.budget_zero
    assert excinfo.value.to_payload()["remaining"] == 0
    assert client.calls == []
    assert ledger.history() == []


def test_every_attempt_failing_still_bills(ledger, scripted_client, respond, canvas_payload) -> None:
    del canvas_payload["channels"]
    client = scripted_client([respond(json.dumps(canvas_payload), 500), respond("{}", 200)])
    pipeline = CanvasPipeline(client, ledger, ATTEMPTS)

    with pytest.raises(CanvasGenerationFailed) as excinfo:
        _run(pipeline)

    failure = excinfo.value
    assert failure.status_code == 502
    assert "missing required Business Model Canvas fields even after retrying" in failure.message
    assert failure.snapshot.used == 700
    assert failure.state is PipelineState.exhausted
    assert ledger.history()[0].label == "Acme (Business Model Canvas - failed)"
    assert ledger.history()[0].tokens == 700


def test_empty_then_valid(ledger, scripted_client, respond, canvas_payload) -> None:
    client = scripted_client([respond("   ", 40), respond(json.dumps(canvas_payload), 60)])
    result = _run(CanvasPipeline(client, ledger, ATTEMPTS))
    assert result.attempt == "compact"
    assert result.tokens_used == 100


def test_parse_failure_escalates(ledger, scripted_client, respond, canvas_payload) -> None:
    client = scripted_client(
        [
            respond('Intro {"a": 1} and then {"b": 2} end', 50),
            respond(json.dumps(canvas_payload), 70),
        ]
    )
    result = _run(CanvasPipeline(client, ledger, ATTEMPTS))
    assert result.attempt == "compact"
    assert result.tokens_used == 120


def test_invalid_json_on_last_attempt(ledger, scripted_client, respond) -> None:
    client = scripted_client([respond("{'single': 'quotes'}", 10), respond("{'single': 'quotes'}", 10)])
    with pytest.raises(CanvasGenerationFailed) as excinfo:
        _run(CanvasPipeline(client, ledger, ATTEMPTS))
    assert excinfo.value.message == "The AI response was still invalid JSON after retrying. Please try again."
    assert excinfo.value.snapshot.used == 20


def test_truncated_on_last_attempt(ledger, scripted_client, respond) -> None:
    client = scripted_client([respond("", 5), respond('{"keyPartners": "x"', 15)])
    with pytest.raises(CanvasGenerationFailed) as excinfo:
        _run(CanvasPipeline(client, ledger, ATTEMPTS))
    assert excinfo.value.message == "The AI response was incomplete even after retrying. Please try again."
    assert excinfo.value.status_code == 502
    assert excinfo.value.snapshot.used == 20


def test_structured_function_call_payload(ledger, scripted_client, canvas_payload) -> None:
    response = ModelResponse(
        function_calls=[FunctionCallFragment(name="canvas", args={"json": canvas_payload})],
        tokens_used=25,
    )
    result = _run(CanvasPipeline(scripted_client([response]), ledger, ATTEMPTS))
    assert result.attempt == "primary"
    assert result.canvas.revenue_model == "Delivery fees"


def test_ceiling_is_capped_by_remaining_allowance(make_ledger, scripted_client, respond) -> None:
    ledger = make_ledger(allowance=1000)
    client = scripted_client([respond('{"keyPartners": "cut', 1000)])
    pipeline = CanvasPipeline(client, ledger, ATTEMPTS)

    with pytest.raises(CanvasGenerationFailed) as excinfo:
        _run(pipeline)

    assert client.calls[0][1].max_output_tokens == 1000
    assert len(client.calls) == 1
    assert excinfo.value.status_code == 429
    assert excinfo.value.snapshot.used == 1000
    assert excinfo.value.snapshot.remaining == 0


def test_compact_ceiling_uses_what_is_left(make_ledger, scripted_client, respond, canvas_payload) -> None:
    ledger = make_ledger(allowance=2000)
    client = scripted_client([respond("", 1200), respond(json.dumps(canvas_payload), 300)])
    result = _run(CanvasPipeline(client, ledger, ATTEMPTS))
    assert [options.max_output_tokens for _, options in client.calls] == [2000, 800]
    assert result.snapshot.remaining == 500


def test_upstream_rejection_is_not_retried(ledger, scripted_client, respond) -> None:
    client = scripted_client([respond("", 30), UpstreamRejected("Provider rejected the request.")])
    with pytest.raises(CanvasGenerationFailed) as excinfo:
        _run(CanvasPipeline(client, ledger, ATTEMPTS))
    assert excinfo.value.message == "Provider rejected the request."
    assert excinfo.value.status_code == 502
    assert excinfo.value.snapshot.used == 30
    assert excinfo.value.state is PipelineState.rejected


def test_upstream_rejection_before_any_spend(ledger, scripted_client) -> None:
    client = scripted_client([UpstreamRejected("Provider rejected the request.")])
    with pytest.raises(CanvasGenerationFailed):
        _run(CanvasPipeline(client, ledger, ATTEMPTS))
    assert len(client.calls) == 1
    assert ledger.history() == []


def test_unexpected_error_commits_tokens(ledger, scripted_client, respond) -> None:
    client = scripted_client([respond("", 45), RuntimeError("connection reset")])
    with pytest.raises(CanvasGenerationFailed) as excinfo:
        _run(CanvasPipeline(client, ledger, ATTEMPTS))
    assert excinfo.value.status_code == 502
    assert excinfo.value.message == "Business Model Canvas generation failed. Please try again later."
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert ledger.snapshot().used == 45


def test_attempt_config_requires_positive_ceiling() -> None:
    with pytest.raises(ValueError):
        AttemptConfig("broken", False, 0)


def test_case_study_rejection_reports_rejected_state(ledger, scripted_client, respond) -> None:
    script = [respond("section text", 10) for _ in CASE_STUDY_SECTIONS[:-1]]
    script.append(UpstreamRejected("Provider rejected the request."))
    with pytest.raises(CanvasGenerationFailed) as excinfo:
        asyncio.run(generate_case_study("Acme", scripted_client(script), ledger))
    assert excinfo.value.state is PipelineState.rejected
    assert excinfo.value.status_code == 502
    assert excinfo.value.snapshot.used == 10 * (len(CASE_STUDY_SECTIONS) - 1)
