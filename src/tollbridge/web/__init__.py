"""JSON HTTP API for the toll engine (Django)."""
