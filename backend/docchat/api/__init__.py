"""HTTP API layer: routers and request/response schemas."""
