"""slipway: a kopf operator that mirrors container image tags between registries."""

__version__ = "0.1.0"
