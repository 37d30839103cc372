"""Composable asyncio middleware for HTTP proxies: core types, fixed responses,
URL rewriting, traffic logging, routing, sliding-window rate limiting and retries."""

__version__ = "0.0.5"

__all__ = [
    "core",
    "set_response",
    "url_rewrite",
    "traffic_logger",
    "router",
    "sliding_window",
    "retry_support",
    "retry",
]