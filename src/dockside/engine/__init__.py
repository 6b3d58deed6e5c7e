"""Engine client: remote exec calls against the container engine.

  client    EngineClient contract and the aiohttp-backed DockerEngineClient
  _hijack   upgraded exec connections (ExecStream) over the engine socket
"""

from dockside.engine._hijack import EngineAddress, ExecStream
from dockside.engine.client import DockerEngineClient, DuplexStream, EngineClient

__all__ = [
    "DockerEngineClient",
    "DuplexStream",
    "EngineAddress",
    "EngineClient",
    "ExecStream",
]
