"""
Runtime settings, read from the environment.
"""

import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "craftnest")

PORT = int(os.getenv("PORT", 8000))
ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower()
LOG_LEVEL = os.getenv("LOG_LEVEL")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Reviews shorter than this are rejected
REVIEW_MIN_COMMENT_LENGTH = int(os.getenv("REVIEW_MIN_COMMENT_LENGTH", 5))

# Compare-and-swap attempts when writing a product's rating aggregate
AGGREGATE_MAX_ATTEMPTS = int(os.getenv("AGGREGATE_MAX_ATTEMPTS", 5))
