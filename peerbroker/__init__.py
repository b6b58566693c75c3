"""peerbroker pairs two peers by a shared connect ID and relays messages."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('peerbroker')
