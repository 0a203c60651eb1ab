"""
Command line runner that writes the connector output as newline-delimited JSON.

    python agora_cli.py check --config configuration.json
    python agora_cli.py discover --config configuration.json
    python agora_cli.py read --config configuration.json [--state state.json]

Every line written by `read` is one RECORD, STATE or LOG message. `--state` takes either a STATE message body
({"data": {...}}) or the bare per-stream mapping, as a JSON string or a path to a JSON file.
"""

import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional

from agora_client import AgoraClient
from agora_config import parse_configuration
from agora_streams import STREAMS, table_definition
from connector import run_streams
from message_emitter import MessageEmitter, NdjsonSink

VALID_COMMANDS = ["check", "discover", "read"]


def _load_json(value: str) -> Any:
    """Load JSON from a file path, or parse the value itself when no such file exists."""
    if os.path.isfile(value):
        with open(value, "r") as f:
            return json.load(f)
    return json.loads(value)


def load_state(value: Optional[str]) -> Dict[str, Any]:
    """
    Read the incoming state passed on the command line.
    Raises:
        ValueError: if the state is not a JSON object.
    """
    if not value:
        return {}
    state = _load_json(value)
    if not isinstance(state, dict):
        raise ValueError("State must be a JSON object")
    if isinstance(state.get("data"), dict):
        return state["data"]
    return state


def check(configuration: dict, emitter: MessageEmitter) -> int:
    try:
        config = parse_configuration(configuration)
        AgoraClient(config, emitter=emitter).check_connection()
    except Exception as e:
        emitter.error(f"Connection check failed: {str(e)}")
        return 1
    emitter.info("Connection check succeeded")
    return 0


def discover(configuration: dict, out) -> int:
    config = parse_configuration(configuration)
    tables = [table_definition(STREAMS[name]) for name in config.streams]
    out.write(json.dumps({"streams": tables}) + "\n")
    out.flush()
    return 0


def read(configuration: dict, state: Dict[str, Any], emitter: MessageEmitter) -> int:
    config = parse_configuration(configuration)
    client = AgoraClient(config, emitter=emitter)
    try:
        run_streams(config, state, client, emitter)
    except RuntimeError as e:
        emitter.error(str(e))
        return 1
    return 0


def main(argv: Optional[List[str]] = None, out=None) -> int:
    parser = argparse.ArgumentParser(allow_abbrev=False, add_help=True, description="Agora connector NDJSON runner")
    parser.add_argument("command", choices=VALID_COMMANDS, help="|".join(VALID_COMMANDS))
    parser.add_argument("--config", type=str, required=True, help="Path to the configuration JSON file")
    parser.add_argument("--state", type=str, default=None, help="Provide state as JSON string or file")
    args = parser.parse_args(argv)

    out = out if out is not None else sys.stdout
    emitter = MessageEmitter(NdjsonSink(out))

    try:
        configuration = _load_json(args.config)
        if args.command == "check":
            return check(configuration, emitter)
        if args.command == "discover":
            return discover(configuration, out)
        return read(configuration, load_state(args.state), emitter)
    except (ValueError, OSError) as e:
        # ConfigurationError and malformed JSON are both ValueErrors
        emitter.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
