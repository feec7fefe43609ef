import os

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DATABASE_PATH = os.getenv("DATABASE_PATH", "dispatch.db")

DATABASE_URL = os.getenv("DATABASE_URL", "")
DATABASE_MAX_CONNECTIONS = int(os.getenv("DATABASE_MAX_CONNECTIONS", "5"))
SEED_DEMO_REQUESTS = os.getenv("SEED_DEMO_REQUESTS", "false").lower() in ("1", "true", "yes", "on")

# OpenRouteService (distance/ETA estimation)
ORS_API_KEY = os.getenv("ORS_API_KEY", "")
ORS_BASE_URL = os.getenv("ORS_BASE_URL", "https://api.openrouteservice.org")
ORS_PROFILE = os.getenv("ORS_PROFILE", "driving-car")
ESTIMATOR_TIMEOUT_SECONDS = float(os.getenv("ESTIMATOR_TIMEOUT_SECONDS", "5"))
ESTIMATOR_FALLBACK_ENABLED = os.getenv("ESTIMATOR_FALLBACK_ENABLED", "true").lower() in ("1", "true", "yes", "on")
ESTIMATOR_FALLBACK_SPEED_KMH = float(os.getenv("ESTIMATOR_FALLBACK_SPEED_KMH", "50"))

# Geolocation source (last-known position lookups)
GEOLOCATION_TIMEOUT_SECONDS = float(os.getenv("GEOLOCATION_TIMEOUT_SECONDS", "2"))

# Event stream
EVENT_REPLAY_BUFFER = int(os.getenv("EVENT_REPLAY_BUFFER", "100"))
WS_PING_INTERVAL_SECONDS = float(os.getenv("WS_PING_INTERVAL_SECONDS", "10"))

# GCP (optional)
GCP_PROJECT_ID = os.getenv("GCP_PROJECT_ID", "")
GCP_PUBSUB_TOPIC = os.getenv("GCP_PUBSUB_TOPIC", "")
GCP_PUBSUB_SUBSCRIPTION_PREFIX = os.getenv("GCP_PUBSUB_SUBSCRIPTION_PREFIX", "dispatch-events")
