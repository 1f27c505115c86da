"""Streaming chat relay between HTTP clients and a local model server.

This package accepts one user message per request and rebuilds the
conversation context from a conversation store. It streams the model
server's newline-delimited JSON reply back to the client as plain bytes,
then persists the reply and titles new conversations. The primary entry
points are ``chat_relay.api.create_app`` for running the HTTP service and
``chat_relay.service.ChatRelayService`` for embedding the relay directly
into Python code.
"""

from .config import RelayConfig, SamplingOptions, UpstreamConfig
from .service import ChatRelayService, RelaySession, RelayState

__all__ = [
    "ChatRelayService",
    "RelayConfig",
    "RelaySession",
    "RelayState",
    "SamplingOptions",
    "UpstreamConfig",
]
