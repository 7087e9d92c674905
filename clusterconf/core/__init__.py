"""Core config subsystem: errors, settings and the config pipeline."""
