import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

# Order lifecycle
ORDER_ACK_WINDOW_SECONDS = float(os.getenv("ORDER_ACK_WINDOW_SECONDS", "120"))
ORDER_NUDGE_COOLDOWN_SECONDS = float(os.getenv("ORDER_NUDGE_COOLDOWN_SECONDS", "20"))
ORDER_SERVICE_FEE = Decimal(os.getenv("ORDER_SERVICE_FEE", "2.00"))
ORDER_PREP_ESTIMATE_MINUTES = int(os.getenv("ORDER_PREP_ESTIMATE_MINUTES", "25"))
ORDER_CREATE_RATE_LIMIT = os.getenv("ORDER_CREATE_RATE_LIMIT", "30/minute")

# External collaborators
CATALOG_URL = os.getenv("CATALOG_URL", "http://localhost:8001")
ADDRESS_URL = os.getenv("ADDRESS_URL", "http://localhost:8005")
PAYMENT_URL = os.getenv("PAYMENT_URL", "http://localhost:8003")
NOTIFICATION_URL = os.getenv("NOTIFICATION_URL", "http://localhost:8006")
COLLABORATOR_TIMEOUT_SECONDS = float(os.getenv("COLLABORATOR_TIMEOUT_SECONDS", "5"))

# Observability
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
OTEL_TRACING_ENABLED = os.getenv("OTEL_TRACING_ENABLED", "true").lower() in ("1", "true", "yes")
