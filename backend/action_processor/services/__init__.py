"""Core services: rate-limit oracle, follow-on publishing, error classification and delivery resolution."""
