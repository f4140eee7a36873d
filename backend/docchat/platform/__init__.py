"""Cross-cutting platform services: errors, redaction, health, identity provider."""
