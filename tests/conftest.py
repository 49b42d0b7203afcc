"""Shared test configuration for agent gateway tests.

Sets required environment variables before any module that reads
GatewaySettings gets imported.
"""

import os

# Must be set before GatewaySettings() is constructed anywhere.
os.environ.setdefault("JWT_SECRET", "test-secret")
