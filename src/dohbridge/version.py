"""Installed distribution version, reported in the User-Agent and stats."""

import importlib.metadata

try:
    DOHBRIDGE_VERSION = importlib.metadata.version("dohbridge")
except importlib.metadata.PackageNotFoundError:  # pragma: no cover - source checkout
    DOHBRIDGE_VERSION = "unknown"
