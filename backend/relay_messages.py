"""
Relay Messages - Wire Format

JSON message shapes exchanged between the relay and Figma plugin peers.
Keys are camelCase on the wire; the pydantic models expose snake_case
attributes and serialize back through their aliases.
"""

import json
import logging
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

# Message type constants to avoid stringly-typed conditionals
MESSAGE_TYPE_CONNECTION_ESTABLISHED = "CONNECTION_ESTABLISHED"
MESSAGE_TYPE_EXECUTE_COMMAND = "EXECUTE_COMMAND"
MESSAGE_TYPE_COMMAND_RESPONSE = "COMMAND_RESPONSE"

# Plugin-initiated requests and the relay's replies to them
MESSAGE_TYPE_COMMAND = "command"
MESSAGE_TYPE_PROCESS_PROMPT = "PROCESS_PROMPT"
MESSAGE_TYPE_COMMAND_RESULT = "commandResult"
MESSAGE_TYPE_ERROR = "error"


class ProtocolError(Exception):
    """An inbound frame that is not a usable relay message.

    Raised by parse_message and always caught by the reader: malformed
    frames are logged and dropped, never surfaced to command callers.
    """

    def __init__(self, reason: str, raw: Any = None):
        self.reason = reason
        self.raw = raw
        super().__init__(reason)


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @classmethod
    def from_wire(cls, message: Dict[str, Any]):
        """Validate an inbound message dict. Bad field shapes raise ProtocolError."""
        try:
            return cls.model_validate(message)
        except ValidationError as e:
            raise ProtocolError(f"Invalid {cls.__name__}: {e.error_count()} field error(s)", message) from e

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ConnectionEstablished(_WireModel):
    type: str = MESSAGE_TYPE_CONNECTION_ESTABLISHED
    connection_id: Optional[Union[int, str]] = Field(default=None, alias="connectionId")


class ExecuteCommand(_WireModel):
    type: str = MESSAGE_TYPE_EXECUTE_COMMAND
    command_id: str = Field(alias="commandId")
    command: str
    params: Dict[str, Any] = Field(default_factory=dict)


class CommandResponse(_WireModel):
    """Dispatcher reply. Exactly one of result/error is meaningful."""

    type: str = MESSAGE_TYPE_COMMAND_RESPONSE
    command_id: Optional[Union[int, str]] = Field(default=None, alias="commandId")
    result: Any = None
    error: Any = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


def parse_message(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Decode one inbound frame into a message dict with a string `type`.

    Raises:
        ProtocolError: invalid JSON, a non-object payload or a missing type
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Frame is not valid UTF-8: {e}", raw) from e

    try:
        message = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Failed to decode message: {e}", raw) from e

    if not isinstance(message, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(message).__name__}", raw)

    msg_type = message.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("Message has no type", raw)

    return message
