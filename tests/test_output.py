from __future__ import annotations

import allure
import pytest

from agent_dispatch.supervisor.output import EnvelopeError, parse_result_envelope, strip_ansi

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Output Handling"),
]


def test_strip_ansi_removes_color_and_cursor_sequences() -> None:
    assert strip_ansi("\x1b[1;32mgreen\x1b[0m plain \x1b[2K") == "green plain "


def test_strip_ansi_keeps_plain_text() -> None:
    assert strip_ansi("no escapes [here]") == "no escapes [here]"


def test_parse_envelope_with_session_id() -> None:
    envelope = parse_result_envelope('{"result": "All done", "session_id": "s-42"}\n')

    assert envelope.result == "All done"
    assert envelope.session_id == "s-42"


def test_parse_envelope_without_session_id() -> None:
    envelope = parse_result_envelope('{"type": "result", "result": ""}')

    assert envelope.result == ""
    assert envelope.session_id is None


def test_parse_envelope_accepts_pretty_printed_json() -> None:
    envelope = parse_result_envelope('{\n  "result": "multi\\nline",\n  "session_id": "s"\n}')

    assert envelope.result == "multi\nline"


def test_parse_envelope_skips_log_noise_before_last_json_line() -> None:
    stdout = 'booting\n{"partial": true}\n\x1b[33mwarn\x1b[0m\n{"result": "final"}\n'

    assert parse_result_envelope(stdout).result == "final"


def test_parse_envelope_strips_ansi_around_json() -> None:
    assert parse_result_envelope('\x1b[32m{"result": "ok"}\x1b[0m').result == "ok"


@pytest.mark.parametrize(
    ("stdout", "message"),
    [
        ("", "no output"),
        ("just some text", "no JSON object"),
        ('["result"]', "no JSON object"),
        ('{"result": 42}', "'result' must be a string"),
        ('{"session_id": "s"}', "'result' must be a string"),
        ('{"result": "ok", "session_id": 7}', "'session_id' must be a string"),
    ],
)
def test_parse_envelope_rejects_unusable_output(stdout: str, message: str) -> None:
    with pytest.raises(EnvelopeError, match=message):
        parse_result_envelope(stdout)
