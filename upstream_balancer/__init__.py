"""Load-balanced dispatch of requests across static or DNS-discovered upstream services."""

__version__ = "1.0.3"

__all__ = ["balanced_proxy", "danger", "dns_discovery", "messages"]