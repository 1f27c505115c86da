"""Configuration objects for the chat relay."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Dict, Optional


@dataclass
class SamplingOptions:
    """Sampling options forwarded verbatim to the model server."""

    temperature: float = 0.4
    top_p: float = 0.9
    repeat_penalty: float = 1.2
    presence_penalty: float = 0.6

    def as_payload(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class UpstreamConfig:
    """Model server connection details."""

    base_url: str = "http://localhost:11434"
    default_model: str = "llama3.1:8b"
    connect_timeout: float = 10.0
    read_timeout: float = 120.0
    options: SamplingOptions = field(default_factory=SamplingOptions)

    @property
    def chat_endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/chat"

    @property
    def tags_endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/api/tags"


@dataclass
class RelayConfig:
    """Runtime controls for relay sessions."""

    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    max_stream_seconds: float = 600.0
    persistence_workers: int = 4
    identity_header: str = "X-User-Id"
    conversation_header: str = "X-Conversation-Id"
    store_path: Optional[str] = None
