"""
Application-wide settings and environment configuration
"""

from __future__ import annotations

import os

# Environment
ENV = os.getenv("BRAINBITS_ENV", "development")

# API Configuration
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("API_PORT", "8000"))

# Email provider (Resend)
RESEND_API_URL = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
RESEND_DEFAULT_FROM = "Brain Bits <digest@brainbits.app>"

# Links rendered into emails
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

# Deployment modes
DEPLOYMENT_MODE_CLOUD = "cloud"
DEPLOYMENT_MODE_SELF_HOSTED = "self-hosted"


def get_deployment_mode() -> str:
    """Deployment mode, read at call time so jobs pick up .env changes."""
    mode = os.getenv("DEPLOYMENT_MODE", DEPLOYMENT_MODE_CLOUD).strip().lower()
    if mode == DEPLOYMENT_MODE_SELF_HOSTED:
        return DEPLOYMENT_MODE_SELF_HOSTED
    return DEPLOYMENT_MODE_CLOUD


def is_flag_enabled(key: str) -> bool:
    """True for "true"/"1"/"yes" (case-insensitive)."""
    return os.getenv(key, "false").strip().lower() in ("true", "1", "yes")
