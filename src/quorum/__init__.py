"""Quorum: multi-provider deliberation engine."""
