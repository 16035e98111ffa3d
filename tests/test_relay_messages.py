"""Tests for wire message parsing and serialization."""

import pytest

from relay_messages import (
    CommandResponse,
    ConnectionEstablished,
    ExecuteCommand,
    ProtocolError,
    parse_message,
)


class TestParseMessage:
    def test_parses_object_with_type(self):
        assert parse_message('{"type": "COMMAND_RESPONSE", "commandId": "c1", "result": 3}') == {
            "type": "COMMAND_RESPONSE",
            "commandId": "c1",
            "result": 3,
        }

    def test_accepts_bytes(self):
        assert parse_message(b'{"type": "ping"}') == {"type": "ping"}

    @pytest.mark.parametrize(
        "raw",
        ["{oops", "[]", '"text"', "{}", '{"type": ""}', '{"type": 5}', b"\xff\xfe"],
    )
    def test_rejects_unusable_frames(self, raw):
        with pytest.raises(ProtocolError):
            parse_message(raw)


class TestWireModels:
    def test_execute_command_uses_camel_case(self):
        message = ExecuteCommand(command_id="cmd_1", command="createFrame", params={"width": 10})

        assert message.to_wire() == {
            "type": "EXECUTE_COMMAND",
            "commandId": "cmd_1",
            "command": "createFrame",
            "params": {"width": 10},
        }

    def test_connection_established(self):
        assert ConnectionEstablished(connection_id=4).to_wire() == {"type": "CONNECTION_ESTABLISHED", "connectionId": 4}
        assert ConnectionEstablished.model_validate({"type": "CONNECTION_ESTABLISHED"}).connection_id is None

    def test_command_response_error_detection(self):
        assert CommandResponse.model_validate({"commandId": "c", "error": "boom"}).is_error
        assert not CommandResponse.model_validate({"commandId": "c", "result": {"ok": True}}).is_error
        assert not CommandResponse.model_validate({"commandId": "c", "result": None, "error": None}).is_error

    @pytest.mark.parametrize(
        "model, message",
        [
            (ConnectionEstablished, {"type": "CONNECTION_ESTABLISHED", "connectionId": [1, 2]}),
            (CommandResponse, {"type": "COMMAND_RESPONSE", "commandId": {"id": "x"}}),
        ],
    )
    def test_from_wire_rejects_bad_field_shapes(self, model, message):
        with pytest.raises(ProtocolError) as excinfo:
            model.from_wire(message)
        assert excinfo.value.raw is message
