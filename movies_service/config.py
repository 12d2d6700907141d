"""movies service configuration.

This module only reads environment variables. Broker settings (RABBITMQ_*)
are in `movie_events.config.BrokerSettings`, shared with the gateway.

All defaults match the docker-compose setup.
"""

from __future__ import annotations

import os

# --- MongoDB -----------------------------------------------------------------
MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://mongodb:27017")
MONGO_DB: str = os.getenv("MONGO_DB", "moviedb")
MONGO_COLLECTION: str = os.getenv("MONGO_COLLECTION", "movies")

# JSON list of {"title", "year"} inserted when the collection is empty.
MOVIES_SEED_FILE: str = os.getenv("MOVIES_SEED_FILE", "/app/data/movies.json")

# --- Consumer ------------------------------------------------------------------
# Set to "false" to serve reads only and run consumers as separate workers
# (`python -m movies_service.worker`).
CONSUMER_ENABLED: bool = os.getenv("CONSUMER_ENABLED", "true").strip().lower() in {
    "1",
    "true",
    "yes",
    "on",
}

# --- Read API ------------------------------------------------------------------
DEFAULT_PAGE_SIZE: int = 20
