"""Turn pipeline, adapter, connector, storage and streaming for the agent host."""
