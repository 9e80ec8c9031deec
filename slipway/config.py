"""
Operator configuration.

Everything is read from the environment once, at import time, after ``.env`` has
been loaded so local development works without exporting variables by hand.
"""
from __future__ import annotations

import os

from dotenv import load_dotenv

# Ensure ENV is loaded *early* so everything that relies on os.getenv works.
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {raw!r}")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# CRD coordinates ------------------------------------------------------------
# ---------------------------------------------------------------------------
SLIPWAY_GROUP = "slipway.k8s.facebook.com"
SLIPWAY_VERSION = "v1"
IMAGEMIRROR_PLURAL = "imagemirrors"
IMAGEMIRROR_KIND = "ImageMirror"

# ---------------------------------------------------------------------------
# Reconcile tuning -----------------------------------------------------------
# ---------------------------------------------------------------------------
RETRY_DELAY_S: float = _env_float("SLIPWAY_RETRY_DELAY_S", 60.0)
RECONCILE_TIMEOUT_S: float = _env_float("SLIPWAY_RECONCILE_TIMEOUT_S", 300.0)
REGISTRY_TIMEOUT_S: float = _env_float("SLIPWAY_REGISTRY_TIMEOUT_S", 30.0)
# controller-runtime resyncs every 10h by default; 0 disables the timer.
RESYNC_INTERVAL_S: float = _env_float("SLIPWAY_RESYNC_INTERVAL_S", 36000.0)

SECRET_TOKEN_KEY = os.getenv("SLIPWAY_SECRET_TOKEN_KEY", "token")
ENSURE_CRD: bool = _env_bool("SLIPWAY_ENSURE_CRD", True)

# ---------------------------------------------------------------------------
# Process ---------------------------------------------------------------------
# ---------------------------------------------------------------------------
SLIPWAY_NAMESPACE = os.getenv("SLIPWAY_NAMESPACE", "slipway-system")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
KOPF_PEERING = os.getenv("KOPF_PEERING", "slipway-operator")
POD_NAME = os.getenv("POD_NAME")
