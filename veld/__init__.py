"""Run state, URL templates, a DNS/Caddy helper and a monitoring daemon for local development."""

__version__ = "1.0.0"