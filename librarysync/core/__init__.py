"""Upstream-facing components: credential vault, API client and token refresher."""
