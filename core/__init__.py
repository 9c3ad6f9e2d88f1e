"""Aether governance core - quorum-gated proposals, admissions and deployments."""
