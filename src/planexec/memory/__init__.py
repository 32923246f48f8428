"""Plan records and durable snapshot storage."""
