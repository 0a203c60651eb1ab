"""
Typed output messages for the Agora connector.

Every sync pass writes three kinds of messages through a MessageEmitter:
RECORD (one replicated row), STATE (the updated cursor of one stream) and LOG (a diagnostic).
Where the messages land is decided by the sink the emitter is built with:
- NdjsonSink writes one JSON document per line to a text stream (stdout by default).
- FivetranSink hands the messages to the Fivetran Connector SDK as upsert/checkpoint operations and log lines.
"""

import copy
import json
import sys
import time
from typing import Any, Dict, Optional, TextIO

# For enabling Logs in your connector code
from fivetran_connector_sdk import Logging as log

# For supporting Data operations like upsert() and checkpoint()
from fivetran_connector_sdk import Operations as op

RECORD = "RECORD"
STATE = "STATE"
LOG = "LOG"

INFO = "INFO"
WARN = "WARN"
ERROR = "ERROR"
LOG_LEVELS = (INFO, WARN, ERROR)


def current_millis() -> int:
    return int(time.time() * 1000)


class NdjsonSink:
    """Writes each message as a single line of JSON. Nothing is buffered between writes."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self._stream = stream

    def write(self, message: Dict[str, Any]) -> None:
        stream = self._stream if self._stream is not None else sys.stdout
        stream.write(json.dumps(message, default=str) + "\n")
        stream.flush()


class FivetranSink:
    """
    Maps messages onto the Fivetran Connector SDK.
    RECORD messages become upserts into the table named after the stream.
    STATE messages are merged into the connector-wide state, which is then checkpointed as a whole,
    because Fivetran keeps a single state document per connection.
    LOG messages are forwarded to the SDK logger at the matching level.
    """

    def __init__(self, state: Optional[Dict[str, Any]] = None) -> None:
        self.state: Dict[str, Any] = copy.deepcopy(state) if state else {}

    def write(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")

        if message_type == RECORD:
            record = message["record"]
            # The 'upsert' operation is used to insert or update data in the destination table.
            # The first argument is the name of the destination table.
            # The second argument is a dictionary containing the record to be upserted.
            op.upsert(table=record["stream"], data=record["data"])

        elif message_type == STATE:
            self.state.update(message["state"]["data"])
            # Save the progress by checkpointing the state. This is important for ensuring that the sync process can resume
            # from the correct position in case of next sync or interruptions.
            op.checkpoint(state=copy.deepcopy(self.state))

        elif message_type == LOG:
            level = message.get("level")
            if level == ERROR:
                log.severe(message["message"])
            elif level == WARN:
                log.warning(message["message"])
            else:
                log.info(message["message"])

        else:
            raise ValueError(f"Unknown message type: {message_type}")


class MessageEmitter:
    """Frames records, checkpoints and diagnostics as discrete messages and writes them to a sink."""

    def __init__(self, sink) -> None:
        self.sink = sink

    def emit_record(self, stream: str, data: Dict[str, Any]) -> None:
        self.sink.write(
            {
                "type": RECORD,
                "record": {"stream": stream, "data": data, "emitted_at": current_millis()},
            }
        )

    def emit_state(self, stream: str, stream_state: Dict[str, Any]) -> None:
        self.sink.write({"type": STATE, "state": {"data": {stream: dict(stream_state)}}})

    def emit_log(self, level: str, message: str) -> None:
        if level not in LOG_LEVELS:
            raise ValueError(f"Log level must be one of {LOG_LEVELS}, got {level!r}")
        self.sink.write({"type": LOG, "level": level, "message": message})

    def info(self, message: str) -> None:
        self.emit_log(INFO, message)

    def warn(self, message: str) -> None:
        self.emit_log(WARN, message)

    def error(self, message: str) -> None:
        self.emit_log(ERROR, message)
