"""Replay engine: request parsing, step execution and the invocation driver."""
