"""Application services: audit recording, alerting, and the deletion facade."""
