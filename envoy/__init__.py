"""Envoy: local and remote CLI agent sessions."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("envoy-sessions")
except PackageNotFoundError:  # running from a checkout without `pip install`
    __version__ = "0.0.0+unknown"

__all__ = ["__version__"]
