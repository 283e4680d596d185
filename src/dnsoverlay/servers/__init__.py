"""DNS listener, query handling and admin HTTP API."""
