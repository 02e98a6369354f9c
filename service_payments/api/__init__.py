"""HTTP API for service payments."""
