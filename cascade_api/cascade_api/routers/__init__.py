"""HTTP routers for the Cadenza API."""
