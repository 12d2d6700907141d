"""gateway configuration.

The gateway is the public-facing service:
- It accepts movie writes over HTTP and publishes them to RabbitMQ.
- It proxies reads to the movies service.

Broker settings (RABBITMQ_*) live in `movie_events.config.BrokerSettings`
because the movies service reads the same variables.
"""

from __future__ import annotations

import os

# movies service base URL (docker-compose service name or internal DNS)
MOVIES_SERVICE_URL: str = os.getenv("MOVIES_SERVICE_URL", "http://movies_service:8000")

# Seconds to wait for the movies service on read requests.
MOVIES_SERVICE_TIMEOUT: float = float(os.getenv("MOVIES_SERVICE_TIMEOUT", "10"))

# Default page size for GET /movies.
DEFAULT_PAGE_SIZE: int = 20
