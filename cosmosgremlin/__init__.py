"""Building blocks for a Cosmos DB Gremlin client: websocket connection, response headers, retries and metrics."""

__version__ = "0.1.0"
__all__ = ["connection", "cosmos", "metrics", "response"]