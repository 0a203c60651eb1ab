"""Agora Connector

This connector uses the Fivetran Connector SDK to incrementally replicate data from the Agora REST API.

It syncs:
  • usage (daily usage per resource type and region)
  • call_quality (per-user quality metrics of every call)
  • recordings (cloud recordings)
  • channels (paged)
  • events (paged)

Each stream keeps its own checkpoint, {"<stream>": {"timestamp": <epoch ms>}}, so an interrupted sync resumes per stream.
See the Technical Reference documentation (https://fivetran.com/docs/connectors/connector-sdk/technical-reference#update)
and the Best Practices documentation (https://fivetran.com/docs/connectors/connector-sdk/best-practices) for details.
"""

# For reading configuration from a JSON file
import json
from typing import Any, Dict, List, Optional

# Import required classes from fivetran_connector_sdk
from fivetran_connector_sdk import Connector

# For enabling Logs in your connector code
from fivetran_connector_sdk import Logging as log

from agora_client import AgoraClient
from agora_config import AgoraConfig, parse_configuration
from agora_streams import STREAMS, table_definition
from message_emitter import FivetranSink, MessageEmitter
from sync_engine import run_pass


def validate_configuration(configuration: dict) -> AgoraConfig:
    """
    Validate the configuration dictionary to ensure it contains all required parameters.
    This function is called at the start of the update method to ensure that the connector has all necessary configuration values.
    Args:
        configuration: a dictionary that holds the configuration settings for the connector.
    Returns:
        The parsed AgoraConfig.
    Raises:
        ConfigurationError: if any required configuration parameter is missing or invalid.
    """
    return parse_configuration(configuration)


def schema(configuration: dict) -> List[Dict[str, Any]]:
    """
    Define the schema function which lets you configure the schema your connector delivers.
    See the technical reference documentation for more details on the schema function:
    https://fivetran.com/docs/connectors/connector-sdk/technical-reference#schema
    Args:
        configuration: a dictionary that holds the configuration settings for the connector.
    """
    config = validate_configuration(configuration)
    return [table_definition(STREAMS[name]) for name in config.streams]


def run_streams(
    config: AgoraConfig, state: Optional[Dict[str, Any]], client, emitter: MessageEmitter, now=None
) -> Dict[str, Any]:
    """
    Run one pass for every selected stream, in order.
    A failing stream does not stop the others. Once every stream has run, a RuntimeError names the failed ones.
    Args:
        config: validated connector configuration.
        state: the connector-wide state, keyed by stream name.
        client: the API client shared by every stream.
        emitter: receives the RECORD, STATE and LOG messages of every stream.
        now: clock override used by tests.
    Returns:
        The connector-wide state after the successful passes.
    """
    state = dict(state or {})
    failed = []

    for name in config.streams:
        stream_state = state.get(name)
        if stream_state is not None and not isinstance(stream_state, dict):
            emitter.warn(f"Ignoring stored state of {name}, expected an object but got {stream_state!r}")
            stream_state = None
        try:
            state[name] = run_pass(STREAMS[name], client, config, stream_state, emitter, now=now)
        except Exception:
            # run_pass has already reported the cause
            failed.append(name)

    if failed:
        raise RuntimeError(f"Failed to sync stream(s): {', '.join(failed)}")
    return state


def update(configuration: dict, state: dict):
    """
    Define the update function, which is a required function, and is called by Fivetran during each sync.
    See the technical reference documentation for more details on the update function
    https://fivetran.com/docs/connectors/connector-sdk/technical-reference#update
    Args:
        configuration: A dictionary containing connection details
        state: A dictionary containing state information from previous runs
        The state dictionary is empty for the first sync or for any full re-sync
    """
    log.info("Starting Agora sync")

    config = validate_configuration(configuration)
    log.info(f"Syncing streams: {', '.join(config.streams)}")

    sink = FivetranSink(state)
    emitter = MessageEmitter(sink)
    client = AgoraClient(config, emitter=emitter)

    run_streams(config, sink.state, client, emitter)
    log.info("Agora sync completed")


# Create the connector object using the schema and update functions
connector = Connector(update=update, schema=schema)

# Check if the script is being run as the main module.
# This is Python's standard entry method allowing your script to be run directly from the command line or IDE 'run' button.
# This is useful for debugging while you write your code. Note this method is not called by Fivetran when executing your connector in production.
# Please test using the Fivetran debug command prior to finalizing and deploying your connector.
if __name__ == "__main__":
    # Open the configuration.json file and load its contents into a dictionary.
    with open("configuration.json", "r") as f:
        configuration = json.load(f)

    # Adding this code to your `connector.py` allows you to test your connector by running your file directly from your IDE:
    connector.debug(configuration=configuration)
