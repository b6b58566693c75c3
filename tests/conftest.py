from __future__ import annotations

# Import fixtures from testing/ so they are known by pytest
# and can be used with
from testing.broker_server import broker_server
from testing.ssl import ssl_context
