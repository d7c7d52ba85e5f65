"""
Environment Configuration Utility

ENVIRONMENT values:
- production: background sweep runs
- development: default
- test: background scheduler is not started
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_test() -> bool:
    """Check if running in test environment."""
    return ENVIRONMENT == "test"
